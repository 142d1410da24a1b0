"""K3s teardown.

Removes everything a bootstrap may have left on the machine, in a fixed
order. Each step is attempted whether or not its target exists; a step that
finds nothing reports ``TARGET_ABSENT`` and a step that fails is recorded as
``FAILED`` without stopping later steps. Only the initial confirmation can
abort the run.
"""

import logging
import os
import re
import shlex
from typing import Callable, List, Optional, Tuple

from k3sctl.config import Settings, get_settings

from .addons import HELM_PATH
from .configuration import ALIASES_PATH
from .errors import TeardownAborted, TeardownStepError
from .firewall import all_firewalls, all_managed_ports
from .host import CommandError, Host
from .models import StepOutcome, StepResult, TeardownReport
from .proxy import ProxyConfigurator

logger = logging.getLogger("k3sctl.teardown")

CONFIRM_PROMPT = "This will completely remove K3s and all associated data. Continue?"
HELM_PROMPT = "Remove Helm as well?"

SERVICES = ('k3s', 'k3s-agent')
UNINSTALL_SCRIPTS = ('/usr/local/bin/k3s-uninstall.sh', '/usr/local/bin/k3s-agent-uninstall.sh')
BINARIES = ('/usr/local/bin/k3s', '/usr/local/bin/crictl', '/usr/local/bin/ctr')
KUBECTL_LINK = '/usr/local/bin/kubectl'
DATA_DIRS = (
    '/etc/rancher/k3s',
    '/var/lib/rancher/k3s',
    '/var/lib/kubelet',
    '/var/lib/cni',
    '/var/log/pods',
    '/var/log/containers',
)
UNIT_FILES = (
    '/etc/systemd/system/k3s.service',
    '/etc/systemd/system/k3s-agent.service',
    '/etc/systemd/system/k3s.service.env',
    '/etc/systemd/system/k3s-agent.service.env',
    '/etc/systemd/system/k3s.service.d',
    '/etc/systemd/system/k3s-agent.service.d',
)
CNI_DIRS = ('/etc/cni/net.d', '/opt/cni/bin')
INTERFACE_RE = re.compile(r'^(cni|flannel|veth|kube-)|k3s')
IPTABLES_TABLES = ('filter', 'nat', 'mangle')
CHAIN_PREFIXES = ('KUBE-', 'K3S-', 'FLANNEL-', 'CNI-')
MOUNT_PREFIXES = (
    '/var/lib/kubelet',
    '/run/k3s',
    '/var/lib/rancher/k3s',
    '/run/containerd',
    '/var/log/pods',
    '/var/log/containers',
)
PROCESS_PATTERNS = ('k3s server', 'k3s agent', '/var/lib/rancher/k3s/data/', 'containerd-shim', 'kubelet')
HELM_DIRS = ('~/.helm', '~/.cache/helm', '~/.config/helm')

StepReturn = Tuple[StepOutcome, str]


def _finish(done: List[str], errors: List[str], absent: str) -> StepReturn:
    if errors:
        raise TeardownStepError('; '.join(errors))
    if done:
        return StepOutcome.SUCCESS, ', '.join(done)
    return StepOutcome.TARGET_ABSENT, absent


def _unescape_mount(path: str) -> str:
    return re.sub(r'\\([0-7]{3})', lambda m: chr(int(m.group(1), 8)), path)


class TeardownOrchestrator:
    """Reverses a K3s installation on the local machine."""

    def __init__(self, host: Host, confirm: Optional[Callable[[str], bool]] = None,
                 settings: Optional[Settings] = None):
        self.host = host
        self.confirm = confirm
        self.settings = settings or get_settings()
        self._remove_helm: Optional[bool] = None

    def steps(self) -> List[Tuple[str, Callable[[], StepReturn]]]:
        return [
            ("Stop K3s service", self.stop_service),
            ("Run uninstall script", self.run_uninstall_script),
            ("Remove binaries", self.remove_binaries),
            ("Remove data directories", self.remove_data_dirs),
            ("Remove systemd units", self.remove_units),
            ("Delete network interfaces", self.delete_interfaces),
            ("Remove CNI configuration", self.remove_cni_config),
            ("Clean iptables chains", self.clean_iptables),
            ("Remove proxy and alias files", self.remove_config_files),
            ("Unmount leftover mounts", self.unmount),
            ("Remove containers and images", self.remove_containers),
            ("Stop remaining processes", self.kill_processes),
            ("Remove firewall rules", self.remove_firewall_rules),
            ("Remove Helm", self.remove_helm),
        ]

    def run(self, force: bool = False, remove_helm: Optional[bool] = None) -> TeardownReport:
        """Run every teardown step.

        Args:
            force: Skip the confirmation prompt
            remove_helm: Remove Helm without asking (``None`` asks)

        Raises:
            TeardownAborted: If the run is not confirmed; nothing is touched
        """
        if not force:
            if self.confirm is None:
                raise TeardownAborted("Teardown needs confirmation; pass --yes to run non-interactively")
            if not self.confirm(CONFIRM_PROMPT):
                raise TeardownAborted("Cleanup cancelled.")

        self._remove_helm = remove_helm
        logger.info("🧹 Starting K3s cleanup and uninstallation...")
        report = TeardownReport()
        steps = self.steps()
        for number, (name, step) in enumerate(steps, 1):
            logger.info(f"[{number}/{len(steps)}] {name}...")
            try:
                outcome, detail = step()
            except Exception as e:
                logger.error(f"❌ {name} failed: {e}")
                outcome, detail = StepOutcome.FAILED, str(e)
            else:
                logger.debug(f"{name}: {outcome.value} {detail}")
            report.add(StepResult(number, name, outcome, detail))
        return report

    # 1
    def stop_service(self) -> StepReturn:
        if self.host.which('systemctl') is None:
            return StepOutcome.TARGET_ABSENT, "systemctl not found"
        done, errors = [], []
        for unit in SERVICES:
            if not self.host.run(['systemctl', 'is-active', '--quiet', unit], check=False).ok:
                continue
            res = self.host.run(['systemctl', 'stop', unit], check=False)
            if res.ok:
                done.append(unit)
            else:
                errors.append(f"stop {unit}: {res.stderr.strip()}")
        return _finish(done, errors, "K3s service not running")

    # 2
    def run_uninstall_script(self) -> StepReturn:
        for script in UNINSTALL_SCRIPTS:
            if not self.host.exists(script):
                continue
            res = self.host.run([script], check=False)
            if not res.ok:
                raise TeardownStepError(f"{script} exited with status {res.returncode}")
            return StepOutcome.SUCCESS, script
        return StepOutcome.TARGET_ABSENT, "No K3s uninstall script found"

    def _remove_paths(self, paths) -> Tuple[List[str], List[str]]:
        done, errors = [], []
        for path in paths:
            try:
                if self.host.remove(path):
                    done.append(path)
            except OSError as e:
                errors.append(f"{path}: {e}")
        return done, errors

    # 3
    def remove_binaries(self) -> StepReturn:
        paths = list(BINARIES)
        if self.host.is_symlink(KUBECTL_LINK):
            paths.append(KUBECTL_LINK)
        done, errors = self._remove_paths(paths)
        return _finish(done, errors, "No K3s binaries found")

    # 4
    def remove_data_dirs(self) -> StepReturn:
        done, errors = self._remove_paths(DATA_DIRS)
        return _finish(done, errors, "No K3s data directories found")

    # 5
    def remove_units(self) -> StepReturn:
        done, errors = self._remove_paths(UNIT_FILES)
        if done and self.host.which('systemctl') is not None:
            res = self.host.run(['systemctl', 'daemon-reload'], check=False)
            if not res.ok:
                errors.append(f"daemon-reload: {res.stderr.strip()}")
        return _finish(done, errors, "No K3s systemd units found")

    # 6
    def delete_interfaces(self) -> StepReturn:
        if self.host.which('ip') is None:
            return StepOutcome.TARGET_ABSENT, "ip not found"
        listing = self.host.run(['ip', '-o', 'link', 'show'], check=False)
        names = []
        for line in listing.stdout.splitlines():
            parts = line.split(':', 2)
            if len(parts) < 2:
                continue
            name = parts[1].strip().split('@')[0]
            if INTERFACE_RE.search(name) and name not in names:
                names.append(name)

        done, errors = [], []
        for name in names:
            res = self.host.run(['ip', 'link', 'delete', name], check=False)
            if res.ok:
                done.append(name)
            # veth peers disappear with their partner
            elif 'Cannot find device' not in res.stderr:
                errors.append(f"{name}: {res.stderr.strip()}")
        return _finish(done, errors, "No K3s network interfaces found")

    # 7
    def remove_cni_config(self) -> StepReturn:
        done, errors = self._remove_paths(CNI_DIRS)
        return _finish(done, errors, "No CNI configuration found")

    # 8
    def clean_iptables(self) -> StepReturn:
        if self.host.which('iptables') is None:
            return StepOutcome.TARGET_ABSENT, "iptables not found"
        done, errors = [], []
        for table in IPTABLES_TABLES:
            listing = self.host.run(['iptables', '-t', table, '-S'], check=False)
            if not listing.ok:
                errors.append(f"list {table}: {listing.stderr.strip()}")
                continue
            rules = listing.stdout.splitlines()
            chains = [
                line.split()[1] for line in rules
                if line.startswith('-N ') and line.split()[1].startswith(CHAIN_PREFIXES)
            ]
            if not chains:
                continue

            # Jumps from built-in chains keep custom chains referenced
            for line in rules:
                args = shlex.split(line)
                if len(args) < 2 or args[0] != '-A' or args[1] in chains:
                    continue
                if '-j' in args and args[args.index('-j') + 1] in chains:
                    self.host.run(['iptables', '-t', table, '-D'] + args[1:], check=False)

            for flag in ('-F', '-X'):
                for chain in chains:
                    res = self.host.run(['iptables', '-t', table, flag, chain], check=False)
                    if not res.ok:
                        errors.append(f"{table} {flag} {chain}: {res.stderr.strip()}")
            done.append(f"{table}: {len(chains)} chains")
        return _finish(done, errors, "No K3s iptables chains found")

    # 9
    def remove_config_files(self) -> StepReturn:
        done = ProxyConfigurator(self.host).remove()
        if self.host.remove(ALIASES_PATH):
            done.append(ALIASES_PATH)
        return _finish(done, [], "No proxy or alias files found")

    # 10
    def unmount(self) -> StepReturn:
        mounts = self.host.read_text('/proc/mounts')
        if not mounts:
            return StepOutcome.TARGET_ABSENT, "No mount table"
        targets = []
        for line in mounts.splitlines():
            fields = line.split()
            if len(fields) < 2:
                continue
            mountpoint = _unescape_mount(fields[1])
            if mountpoint.startswith(MOUNT_PREFIXES) and mountpoint not in targets:
                targets.append(mountpoint)
        if not targets:
            return StepOutcome.TARGET_ABSENT, "No leftover mounts"

        done, errors = [], []
        # Deepest first so nested mounts release their parents
        for mountpoint in sorted(targets, key=lambda m: m.count('/'), reverse=True):
            res = self.host.run(['umount', mountpoint], check=False)
            if res.ok:
                done.append(mountpoint)
            else:
                errors.append(f"{mountpoint}: {res.stderr.strip()}")
        return _finish(done, errors, "No leftover mounts")

    # 11
    def remove_containers(self) -> StepReturn:
        if self.host.which('crictl') is None:
            return StepOutcome.TARGET_ABSENT, "crictl not found"
        done, errors = [], []
        for args in (['crictl', 'rmi', '--all'], ['crictl', 'rm', '--all']):
            res = self.host.run(args, check=False)
            if res.ok:
                done.append(' '.join(args[1:]))
            else:
                errors.append(f"{' '.join(args)}: {res.stderr.strip()}")
        return _finish(done, errors, "crictl not found")

    # 12
    def kill_processes(self) -> StepReturn:
        if self.host.which('pgrep') is None:
            return StepOutcome.TARGET_ABSENT, "pgrep not found"
        done, errors = [], []
        for pattern in PROCESS_PATTERNS:
            if not self.host.run(['pgrep', '-f', pattern], check=False).ok:
                continue
            res = self.host.run(['pkill', '-f', pattern], check=False)
            if res.ok:
                done.append(pattern)
            else:
                errors.append(f"pkill {pattern}: status {res.returncode}")
        return _finish(done, errors, "No K3s processes running")

    # 13
    def remove_firewall_rules(self) -> StepReturn:
        firewalls = [fw for fw in all_firewalls(self.host) if fw.available()]
        if not firewalls:
            return StepOutcome.TARGET_ABSENT, "No active firewall"
        done, errors = [], []
        for fw in firewalls:
            present = fw.present()
            removed = 0
            for port in all_managed_ports(self.settings.addon.peer_port):
                if port.spec not in present:
                    continue
                try:
                    fw.remove(port)
                    removed += 1
                    done.append(f"{fw.backend.value} {port.spec}")
                except CommandError as e:
                    errors.append(f"{fw.backend.value} {port.spec}: {e}")
            if removed and fw.needs_reload:
                try:
                    fw.reload()
                except CommandError as e:
                    errors.append(f"{fw.backend.value} reload: {e}")
        return _finish(done, errors, "No K3s firewall rules found")

    # 14
    def remove_helm(self) -> StepReturn:
        choice = self._remove_helm
        if choice is None:
            choice = bool(self.confirm and self.confirm(HELM_PROMPT))
        if not choice:
            return StepOutcome.SKIPPED, "Keeping Helm installation"
        paths = [HELM_PATH] + [os.path.expanduser(p) for p in HELM_DIRS]
        done, errors = self._remove_paths(paths)
        return _finish(done, errors, "Helm not installed")
