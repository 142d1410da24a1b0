"""Data models for K3s node bootstrap and teardown."""

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import ValidationError

DEFAULT_API_PORT = 6443
FULL_TOKEN_PREFIX = 'K10'


class NodeRole(str, Enum):
    """Roles a node can be brought into."""
    FIRST_MASTER = 'master'
    ADDITIONAL_MASTER = 'master-ha'
    WORKER = 'worker'
    TEARDOWN = 'cleanup'

    @property
    def is_master(self) -> bool:
        return self in (NodeRole.FIRST_MASTER, NodeRole.ADDITIONAL_MASTER)

    @property
    def service_name(self) -> str:
        """The systemd unit the K3s installer creates for this role."""
        return 'k3s-agent' if self is NodeRole.WORKER else 'k3s'


class OSFamily(str, Enum):
    DEBIAN_LIKE = 'debian'
    RHEL_LIKE = 'rhel'
    UNKNOWN = 'unknown'


class PackageManager(str, Enum):
    APT = 'apt'
    DNF = 'dnf'
    YUM = 'yum'


class FirewallBackend(str, Enum):
    UFW = 'ufw'
    FIREWALLD = 'firewalld'
    NONE = 'none'


class BootstrapState(str, Enum):
    """States of the bootstrap state machine."""
    IDLE = 'idle'
    CONFIGURING = 'configuring'
    INSTALLING = 'installing'
    AWAITING_READY = 'awaiting_ready'
    READY = 'ready'
    JOINED = 'joined'
    FAILED = 'failed'


class StepOutcome(str, Enum):
    """Outcome of a single teardown step."""
    SUCCESS = 'success'
    TARGET_ABSENT = 'target absent'
    FAILED = 'failed'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class OSProfile:
    """Detected operating system profile. Produced once per run."""
    family: OSFamily
    package_manager: PackageManager
    firewall_backend: FirewallBackend
    os_id: str = 'unknown'
    version: str = ''


@dataclass
class ClusterJoinInfo:
    """Credentials and address used to join an existing cluster."""
    token: str = ''
    secret: Optional[str] = None
    master_address: str = ''
    master_port: int = DEFAULT_API_PORT

    @property
    def server_url(self) -> str:
        return f"https://{self.master_address}:{self.master_port}"

    def validate(self, role: NodeRole) -> None:
        """Check that the fields required by ``role`` are present.

        Raises:
            ValidationError: If a required field is missing or inconsistent
        """
        if role not in (NodeRole.ADDITIONAL_MASTER, NodeRole.WORKER):
            return
        flag = '--master-ha' if role is NodeRole.ADDITIONAL_MASTER else '--worker'
        if not self.token:
            raise ValidationError(f"--token is required for {flag} mode")
        if not self.master_address:
            raise ValidationError(f"--master-ip is required for {flag} mode")
        if not 0 < self.master_port < 65536:
            raise ValidationError(f"Invalid master port: {self.master_port}")
        if role is NodeRole.ADDITIONAL_MASTER:
            if not self.secret:
                raise ValidationError("--secret is required for --master-ha mode")
            # A short token is the server password itself
            embedded = token_secret(self.token) or self.token
            if embedded != self.secret:
                raise ValidationError("--secret does not match the secret embedded in --token")


def token_secret(token: str) -> Optional[str]:
    """Return the server password embedded in a full-format node token.

    Full tokens look like ``K10<ca-hash>::server:<password>``; anything else
    yields ``None``.
    """
    if not token.startswith(FULL_TOKEN_PREFIX) or '::' not in token:
        return None
    _, _, creds = token.partition('::')
    _, sep, password = creds.partition(':')
    return password if sep else None


@dataclass
class ProxyConfig:
    """Proxy settings threaded through every component."""
    http_proxy: Optional[str] = None
    https_proxy: Optional[str] = None
    no_proxy: List[str] = field(default_factory=list)

    @classmethod
    def from_options(cls, http_proxy: Optional[str], https_proxy: Optional[str],
                     no_proxy: Optional[str]) -> 'ProxyConfig':
        """Build from CLI strings; ``no_proxy`` is comma separated."""
        entries: List[str] = []
        for item in (no_proxy or '').split(','):
            item = item.strip()
            if item and item not in entries:
                entries.append(item)
        return cls(http_proxy=http_proxy or None, https_proxy=https_proxy or None, no_proxy=entries)

    @property
    def enabled(self) -> bool:
        return bool(self.http_proxy or self.https_proxy)

    @property
    def no_proxy_value(self) -> str:
        return ','.join(self.no_proxy)

    def environ(self) -> Dict[str, str]:
        """Upper- and lower-case proxy variables for child processes."""
        if not self.enabled:
            return {}
        values = {
            'HTTP_PROXY': self.http_proxy or '',
            'HTTPS_PROXY': self.https_proxy or '',
            'NO_PROXY': self.no_proxy_value,
        }
        env = dict(values)
        env.update({k.lower(): v for k, v in values.items()})
        return env

    def requests_proxies(self) -> Optional[Dict[str, str]]:
        if not self.enabled:
            return None
        proxies = {}
        if self.http_proxy:
            proxies['http'] = self.http_proxy
        if self.https_proxy:
            proxies['https'] = self.https_proxy
        return proxies


@dataclass
class AddonConfig:
    """MetalLB add-on request."""
    enabled: bool = False
    ip_range: str = ''

    def validate(self) -> None:
        if self.enabled:
            parse_ip_range(self.ip_range)


def parse_ip_range(value: str) -> Tuple[ipaddress.IPv4Address, ipaddress.IPv4Address]:
    """Parse a ``start-end`` IPv4 range.

    Raises:
        ValidationError: If the range is empty, malformed or reversed
    """
    if not value:
        raise ValidationError("--metallb-range is required when MetalLB is enabled")
    start_str, sep, end_str = value.partition('-')
    if not sep:
        raise ValidationError(f"Invalid MetalLB range {value!r}: expected 'start-end'")
    try:
        start = ipaddress.IPv4Address(start_str.strip())
        end = ipaddress.IPv4Address(end_str.strip())
    except ipaddress.AddressValueError as e:
        raise ValidationError(f"Invalid MetalLB range {value!r}: {e}") from e
    if start > end:
        raise ValidationError(f"Invalid MetalLB range {value!r}: start is after end")
    return start, end


@dataclass
class InstallationRecord:
    """Mutations applied during a bootstrap run."""
    entries: List[Tuple[str, str]] = field(default_factory=list)

    def add(self, kind: str, target: str) -> None:
        self.entries.append((kind, target))

    def of_kind(self, kind: str) -> List[str]:
        return [target for k, target in self.entries if k == kind]


@dataclass
class FirewallReport:
    """Result of reconciling the firewall."""
    backend: FirewallBackend
    applied: List[str] = field(default_factory=list)
    skipped: bool = False
    reason: str = ''


@dataclass
class BootstrapResult:
    """Outcome of a bootstrap run."""
    role: NodeRole
    state: BootstrapState
    server_url: str = ''
    secret: Optional[str] = None
    join_token: Optional[str] = None
    kubeconfig: Optional[str] = None
    profile: Optional[OSProfile] = None
    firewall: Optional[FirewallReport] = None
    record: InstallationRecord = field(default_factory=InstallationRecord)


@dataclass
class StepResult:
    number: int
    name: str
    outcome: StepOutcome
    detail: str = ''


@dataclass
class TeardownReport:
    """Per-step report of a teardown run."""
    steps: List[StepResult] = field(default_factory=list)

    def add(self, result: StepResult) -> None:
        self.steps.append(result)

    @property
    def failed(self) -> List[StepResult]:
        return [s for s in self.steps if s.outcome is StepOutcome.FAILED]

    @property
    def ok(self) -> bool:
        return not self.failed
