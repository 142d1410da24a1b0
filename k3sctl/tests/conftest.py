import pytest

from k3sctl.config import Settings
from k3sctl.modules.k3s.host import CommandError, CommandResult, Host

UBUNTU_RELEASE = 'ID=ubuntu\nID_LIKE=debian\nVERSION_ID="22.04"\n'
ROCKY_RELEASE = 'ID="rocky"\nID_LIKE="rhel centos fedora"\nVERSION_ID="9.3"\n'


class FakeHost(Host):
    """Host rooted in a temporary directory that records commands instead of running them.

    ``results`` maps an argument prefix (tuple) to a ``CommandResult``, a
    return code, a callable taking the argument list, or a list of those
    consumed in order (the last one repeats). The longest matching prefix wins.
    """

    def __init__(self, root, tools=(), results=None, script='#!/bin/sh\necho k3s\n'):
        super().__init__(str(root))
        self.tools = set(tools)
        self.results = dict(results or {})
        self.script = script
        self.commands = []
        self.fetched = []
        self.root_user = True

    def which(self, name):
        return f'/usr/bin/{name}' if name in self.tools else None

    def is_root(self):
        return self.root_user

    def _lookup(self, args):
        matches = [p for p in self.results if tuple(args[:len(p)]) == p]
        if not matches:
            return CommandResult(args, 0)
        prefix = max(matches, key=len)
        value = self.results[prefix]
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if callable(value):
            value = value(args)
        if isinstance(value, int):
            value = CommandResult(args, value, '', 'error' if value else '')
        return CommandResult(args, value.returncode, value.stdout, value.stderr)

    def run(self, args, *, env=None, input=None, check=True, timeout=None):
        args = list(args)
        self.commands.append((args, dict(env or {}), input))
        result = self._lookup(args)
        if check and not result.ok:
            raise CommandError(result)
        return result

    def fetch(self, url, proxies=None, timeout=60):
        self.fetched.append((url, proxies))
        return self.script

    def ran(self, *prefix):
        """Commands whose arguments start with ``prefix``."""
        return [args for args, _, _ in self.commands if tuple(args[:len(prefix)]) == prefix]

    def env_of(self, *prefix):
        for args, env, _ in self.commands:
            if tuple(args[:len(prefix)]) == prefix:
                return env
        raise AssertionError(f"{' '.join(prefix)} was never run")

    def input_of(self, *prefix):
        for args, _, stdin in self.commands:
            if tuple(args[:len(prefix)]) == prefix:
                return stdin
        raise AssertionError(f"{' '.join(prefix)} was never run")


@pytest.fixture
def fake_host(tmp_path):
    return FakeHost(tmp_path)


@pytest.fixture
def ubuntu_host(tmp_path):
    host = FakeHost(tmp_path, tools={'systemctl', 'ufw'})
    host.write_text('/etc/os-release', UBUNTU_RELEASE)
    return host


@pytest.fixture
def rocky_host(tmp_path):
    host = FakeHost(tmp_path, tools={'systemctl', 'dnf', 'firewall-cmd'})
    host.write_text('/etc/os-release', ROCKY_RELEASE)
    return host


@pytest.fixture
def settings(monkeypatch):
    for name in ('K3SCTL_READY_TIMEOUT', 'K3SCTL_READY_INTERVAL', 'K3SCTL_INSTALL_HELM',
                 'K3SCTL_METALLB_TIMEOUT_FATAL', 'K3SCTL_UPDATE_PACKAGES', 'K3SCTL_LOG_FILE'):
        monkeypatch.delenv(name, raising=False)
    return Settings()
