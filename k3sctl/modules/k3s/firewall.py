"""Firewall port management.

One ``Firewall`` implementation per backend; the backend is chosen once from
the detected ``OSProfile``. Adding a rule that already exists is not an error
for either backend.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Set

from .host import Host
from .models import FirewallBackend, FirewallReport, NodeRole, OSProfile

logger = logging.getLogger("k3sctl.firewall")


@dataclass(frozen=True)
class Port:
    port: str
    protocol: str
    description: str = ''

    @property
    def spec(self) -> str:
        return f"{self.port}/{self.protocol}"


API_SERVER = Port('6443', 'tcp', 'K3s API server')
ETCD = Port('2379-2380', 'tcp', 'embedded etcd')
KUBELET = Port('10250', 'tcp', 'kubelet')
FLANNEL_VXLAN = Port('8472', 'udp', 'flannel VXLAN')


def metallb_ports(peer_port: int = 7946) -> List[Port]:
    return [
        Port(str(peer_port), 'tcp', 'MetalLB memberlist'),
        Port(str(peer_port), 'udp', 'MetalLB memberlist'),
    ]


def required_ports(role: NodeRole, addon_enabled: bool = False, peer_port: int = 7946) -> List[Port]:
    """Ports a node in ``role`` must accept."""
    ports: List[Port] = []
    if role.is_master:
        ports += [API_SERVER, ETCD]
    ports += [KUBELET, FLANNEL_VXLAN]
    if role.is_master and addon_enabled:
        ports += metallb_ports(peer_port)
    return ports


def all_managed_ports(peer_port: int = 7946) -> List[Port]:
    """Every port any role may have opened; used by teardown."""
    return [API_SERVER, ETCD, KUBELET, FLANNEL_VXLAN] + metallb_ports(peer_port)


class Firewall(ABC):
    """Port-level capability of a firewall backend."""

    backend: FirewallBackend
    needs_reload: bool = False

    def __init__(self, host: Host):
        self.host = host

    @abstractmethod
    def available(self) -> bool:
        """Whether the backend is installed and able to take rules."""

    @abstractmethod
    def allow(self, port: Port) -> None:
        pass

    @abstractmethod
    def remove(self, port: Port) -> None:
        pass

    @abstractmethod
    def present(self) -> Set[str]:
        """Port specs (``6443/tcp``) currently allowed."""

    def reload(self) -> None:
        pass


class UfwFirewall(Firewall):
    """UFW applies each rule immediately."""

    backend = FirewallBackend.UFW

    def available(self) -> bool:
        return self.host.which('ufw') is not None

    def allow(self, port: Port) -> None:
        self.host.run(['ufw', 'allow', port.spec.replace('-', ':')])

    def remove(self, port: Port) -> None:
        self.host.run(['ufw', 'delete', 'allow', port.spec.replace('-', ':')])

    def present(self) -> Set[str]:
        result = self.host.run(['ufw', 'show', 'added'], check=False)
        found = set()
        for match in re.finditer(r'ufw allow (\d+(?::\d+)?/(?:tcp|udp))', result.stdout):
            found.add(match.group(1).replace(':', '-'))
        return found


class FirewalldFirewall(Firewall):
    """Firewalld batches permanent rules until reloaded."""

    backend = FirewallBackend.FIREWALLD
    needs_reload = True

    def available(self) -> bool:
        if self.host.which('firewall-cmd') is None:
            return False
        return self.host.run(['firewall-cmd', '--state'], check=False).ok

    def allow(self, port: Port) -> None:
        self.host.run(['firewall-cmd', '--permanent', f'--add-port={port.spec}'])

    def remove(self, port: Port) -> None:
        self.host.run(['firewall-cmd', '--permanent', f'--remove-port={port.spec}'])

    def present(self) -> Set[str]:
        result = self.host.run(['firewall-cmd', '--permanent', '--list-ports'], check=False)
        return set(result.stdout.split())

    def reload(self) -> None:
        self.host.run(['firewall-cmd', '--reload'])


class NoFirewall(Firewall):
    backend = FirewallBackend.NONE

    def available(self) -> bool:
        return False

    def allow(self, port: Port) -> None:
        pass

    def remove(self, port: Port) -> None:
        pass

    def present(self) -> Set[str]:
        return set()


_BACKENDS = {
    FirewallBackend.UFW: UfwFirewall,
    FirewallBackend.FIREWALLD: FirewalldFirewall,
    FirewallBackend.NONE: NoFirewall,
}


def firewall_for(profile: OSProfile, host: Host) -> Firewall:
    return _BACKENDS[profile.firewall_backend](host)


def all_firewalls(host: Host) -> List[Firewall]:
    return [UfwFirewall(host), FirewalldFirewall(host)]


def reconcile(firewall: Firewall, ports: List[Port]) -> FirewallReport:
    """Allow every port in ``ports`` on ``firewall``.

    Raises:
        CommandError: If the backend rejects a rule or the reload
    """
    report = FirewallReport(backend=firewall.backend)
    if not firewall.available():
        report.skipped = True
        report.reason = f"{firewall.backend.value} not available"
        logger.info(f"ℹ️  No active firewall detected ({report.reason}), skipping port configuration")
        return report

    logger.info(f"🔥 Configuring {firewall.backend.value} firewall...")
    for port in ports:
        firewall.allow(port)
        report.applied.append(port.spec)
        logger.debug(f"Allowed {port.spec} ({port.description})")
    if firewall.needs_reload:
        firewall.reload()
    logger.info(f"✅ {firewall.backend.value} rules configured: {', '.join(report.applied)}")
    return report
