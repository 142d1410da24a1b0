"""K3s node bootstrap.

``ClusterBootstrapper.run`` drives one machine through

    IDLE -> CONFIGURING -> INSTALLING -> AWAITING_READY -> READY | JOINED

READY is terminal for both master roles and is followed by the MetalLB and
Helm add-ons; JOINED is terminal for workers. Every role finishes by opening
its firewall ports. Any failure moves the machine to FAILED and re-raises;
nothing is rolled back (teardown is the only cleanup path).
"""

import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional

import requests

from k3sctl.config import Settings, get_settings
from k3sctl.utils import redact_sensitive_data

from . import environment
from .addons import AddonInstaller, install_helm
from .configuration import (
    ALIASES_PATH,
    KUBECONFIG_PATH,
    NODE_TOKEN_PATH,
    build_installer_env,
    render_template,
    write_snapshot_config,
)
from .errors import InstallerError, ValidationError
from .firewall import firewall_for, reconcile, required_ports
from .host import Host
from .models import (
    AddonConfig,
    BootstrapResult,
    BootstrapState,
    ClusterJoinInfo,
    NodeRole,
    OSFamily,
    OSProfile,
    PackageManager,
    ProxyConfig,
)
from .proxy import ProxyConfigurator, dropin_path
from .readiness import Probe, ReadinessWaiter, build_probe

logger = logging.getLogger("k3sctl.bootstrap")

SECRET_BYTES = 32
FSTAB_PATH = '/etc/fstab'

PREREQUISITES = {
    PackageManager.APT: ['curl', 'apt-transport-https', 'openssl'],
    PackageManager.DNF: ['curl', 'openssl', 'wget', 'iptables', 'container-selinux'],
    PackageManager.YUM: ['curl', 'openssl', 'wget', 'iptables', 'container-selinux'],
}


def generate_secret(nbytes: int = SECRET_BYTES) -> str:
    """Generate a cluster secret from the OS CSPRNG (hex, 2 * nbytes chars)."""
    return secrets.token_hex(nbytes)


def validate_request(role: NodeRole, join: ClusterJoinInfo, addon: AddonConfig) -> None:
    """Reject a request before anything on the host changes.

    Raises:
        ValidationError: If the role cannot run with the given options
    """
    if role is NodeRole.TEARDOWN:
        raise ValidationError("Teardown is not a bootstrap role")
    join.validate(role)
    if role.is_master:
        addon.validate()


def strip_swap_entries(fstab: str) -> str:
    """Drop active swap entries from an fstab."""
    kept = []
    for line in fstab.splitlines(keepends=True):
        fields = line.split()
        if fields and not fields[0].startswith('#') and len(fields) >= 3 and fields[2] == 'swap':
            continue
        kept.append(line)
    return ''.join(kept)


class ClusterBootstrapper:
    """Brings the local machine into a cluster role."""

    def __init__(
        self,
        host: Host,
        settings: Optional[Settings] = None,
        probe: Optional[Probe] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.settings = settings or get_settings()
        self.probe = probe
        self.cancel = cancel or threading.Event()
        self.sleep = sleep
        self.state = BootstrapState.IDLE
        self.env: Dict[str, str] = {}
        self._result: Optional[BootstrapResult] = None

    def _transition(self, state: BootstrapState) -> None:
        logger.debug(f"State {self.state.value} -> {state.value}")
        self.state = state
        if self._result is not None:
            self._result.state = state

    def run(
        self,
        role: NodeRole,
        join: ClusterJoinInfo,
        proxy: Optional[ProxyConfig] = None,
        addon: Optional[AddonConfig] = None,
        install_helm_client: Optional[bool] = None,
    ) -> BootstrapResult:
        """Bootstrap this machine as ``role``.

        Raises:
            ValidationError: Before any change, if the options are invalid
            InstallerError: If the K3s installer (or a prerequisite step) fails
            ReadinessTimeoutError: If the control plane does not come up in time
            OperationCancelled: If the readiness wait is cancelled
            AddonError: If MetalLB cannot be installed
        """
        proxy = proxy or ProxyConfig()
        addon = addon or AddonConfig()
        validate_request(role, join, addon)
        if not role.is_master and addon.enabled:
            logger.warning("⚠️  MetalLB is only installed from master nodes, ignoring --metallb-range")
            addon = AddonConfig()
        if install_helm_client is None:
            install_helm_client = self.settings.installer.install_helm

        self.state = BootstrapState.IDLE
        result = BootstrapResult(role=role, state=self.state, secret=join.secret)
        if role is not NodeRole.FIRST_MASTER:
            result.server_url = join.server_url
        self._result = result

        try:
            self._configure(role, join, proxy, result)
            self._install(role, join, proxy, addon, result)
            self._await_ready(role, join, result)

            if role.is_master:
                self._transition(BootstrapState.READY)
                AddonInstaller(self.host, self.settings.addon, env=self.env, sleep=self.sleep).install(addon)
                if install_helm_client and install_helm(
                    self.host,
                    self.settings.installer.helm_script_url,
                    proxy=proxy,
                    env=self.env,
                    timeout=self.settings.installer.download_timeout,
                ):
                    result.record.add('binary', '/usr/local/bin/helm')
            else:
                self._transition(BootstrapState.JOINED)

            self._finalize(role, addon, result)
        except Exception:
            self._transition(BootstrapState.FAILED)
            raise
        finally:
            self._result = None

        logger.debug(f"Mutations applied: {result.record.entries}")
        return result

    # CONFIGURING

    def _configure(self, role: NodeRole, join: ClusterJoinInfo, proxy: ProxyConfig,
                   result: BootstrapResult) -> None:
        self._transition(BootstrapState.CONFIGURING)
        profile = environment.detect(self.host)
        result.profile = profile

        self.env = ProxyConfigurator(self.host).apply(proxy, profile, role)
        if self.env:
            result.record.add('file', dropin_path(role.service_name))

        self._prepare_system(profile, result)

        if role is NodeRole.FIRST_MASTER:
            if not result.secret:
                result.secret = generate_secret()
                logger.info("🔑 Generated a new cluster secret")
            snapshot = self.settings.snapshot
            result.record.add('file', write_snapshot_config(self.host, snapshot.cron, snapshot.retention))
            logger.info(f"🗓️  etcd snapshots scheduled '{snapshot.cron}', keeping {snapshot.retention}")

    def _prepare_system(self, profile: OSProfile, result: BootstrapResult) -> None:
        """Disable swap and install prerequisite packages."""
        logger.info("🛠️  Performing common system setup...")
        swapoff = self.host.run(['swapoff', '-a'], check=False)
        if not swapoff.ok:
            logger.warning(f"⚠️  swapoff failed: {swapoff.stderr.strip()}")

        fstab = self.host.read_text(FSTAB_PATH)
        if fstab is not None:
            stripped = strip_swap_entries(fstab)
            if stripped != fstab:
                self.host.write_text(FSTAB_PATH, stripped)
                result.record.add('file', FSTAB_PATH)
                logger.info("💾 Removed swap entries from /etc/fstab")

        if profile.family is not OSFamily.DEBIAN_LIKE:
            self.host.run(['systemctl', 'mask', 'swap.target'], check=False)

        if not self.settings.installer.update_packages:
            logger.debug("Package installation disabled, skipping")
            return

        manager = profile.package_manager.value
        logger.info("📦 Installing required packages...")
        env = dict(self.env)
        if profile.package_manager is PackageManager.APT:
            env['DEBIAN_FRONTEND'] = 'noninteractive'
            refresh = ['apt-get', 'update']
            install = ['apt-get', 'install', '-y']
        else:
            refresh = [manager, 'makecache']
            install = [manager, 'install', '-y']

        for cmd in (refresh, install + PREREQUISITES[profile.package_manager]):
            res = self.host.run(cmd, env=env, check=False)
            if not res.ok:
                raise InstallerError(
                    f"'{' '.join(cmd)}' failed with status {res.returncode}: {res.stderr.strip()}",
                    res.returncode
                )

    # INSTALLING

    def _install(self, role: NodeRole, join: ClusterJoinInfo, proxy: ProxyConfig,
                 addon: AddonConfig, result: BootstrapResult) -> None:
        self._transition(BootstrapState.INSTALLING)
        logger.info(f"🚀 Installing K3s as {role.value.upper()}...")

        script_url = self.settings.installer.script_url
        try:
            script = self.host.fetch(
                script_url,
                proxies=proxy.requests_proxies(),
                timeout=self.settings.installer.download_timeout
            )
        except requests.RequestException as e:
            raise InstallerError(f"Failed to download K3s installer from {script_url}: {e}") from e

        env = dict(self.env)
        env.update(build_installer_env(role, join, result.secret, disable_servicelb=addon.enabled))
        logger.debug(f"Installer environment: {redact_sensitive_data(env)}")

        res = self.host.run(['sh', '-s', '-'], input=script, env=env, check=False)
        if not res.ok:
            raise InstallerError(f"K3s installer exited with status {res.returncode}", res.returncode)

        result.record.add('service', role.service_name)
        result.record.add('binary', '/usr/local/bin/k3s')
        if role.is_master:
            result.kubeconfig = KUBECONFIG_PATH
        if role is NodeRole.FIRST_MASTER:
            result.join_token = self._read_join_token()

    def _read_join_token(self) -> Optional[str]:
        content = self.host.read_text(NODE_TOKEN_PATH)
        token = content.strip() if content else ''
        return token or None

    # AWAITING_READY

    def _await_ready(self, role: NodeRole, join: ClusterJoinInfo, result: BootstrapResult) -> None:
        self._transition(BootstrapState.AWAITING_READY)
        readiness = self.settings.readiness
        probe = self.probe or build_probe(role, join, self.host, readiness.request_timeout)
        waiter = ReadinessWaiter(
            interval=readiness.interval,
            timeout=readiness.timeout,
            max_attempts=readiness.max_attempts,
            cancel=self.cancel,
        )
        logger.info("⏳ Waiting for K3s to be ready...")
        waiter.wait(probe)

        if role is NodeRole.FIRST_MASTER and result.join_token is None:
            result.join_token = self._read_join_token()
            if result.join_token is None:
                logger.warning(f"⚠️  Join token not found at {NODE_TOKEN_PATH}")

    # Final configuration

    def _finalize(self, role: NodeRole, addon: AddonConfig, result: BootstrapResult) -> None:
        logger.info("🔧 Applying final configurations...")
        firewall = firewall_for(result.profile, self.host)
        ports = required_ports(role, addon.enabled, self.settings.addon.peer_port)
        result.firewall = reconcile(firewall, ports)
        for spec in result.firewall.applied:
            result.record.add('firewall', spec)

        if role.is_master:
            self.host.write_text(ALIASES_PATH, render_template('k3s-aliases.sh.j2', kubeconfig=KUBECONFIG_PATH))
            result.record.add('file', ALIASES_PATH)
