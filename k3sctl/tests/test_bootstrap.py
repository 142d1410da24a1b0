import re

import pytest
import yaml

from k3sctl.modules.k3s.bootstrap import ClusterBootstrapper, generate_secret, strip_swap_entries
from k3sctl.modules.k3s.configuration import ALIASES_PATH, K3S_CONFIG_PATH, NODE_TOKEN_PATH
from k3sctl.modules.k3s.errors import (
    InstallerError,
    OperationCancelled,
    ReadinessTimeoutError,
    ValidationError,
)
from k3sctl.modules.k3s.host import CommandResult
from k3sctl.modules.k3s.models import (
    AddonConfig,
    BootstrapState,
    ClusterJoinInfo,
    NodeRole,
    ProxyConfig,
    token_secret,
)
from k3sctl.modules.k3s.proxy import APT_PROXY_PATH, dropin_path

RANGE = "10.0.1.100-10.0.1.110"


class RecordingBootstrapper(ClusterBootstrapper):
    def __init__(self, *args, **kwargs):
        kwargs.setdefault('probe', lambda: True)
        super().__init__(*args, **kwargs)
        self.states = []

    def _transition(self, state):
        self.states.append(state)
        super()._transition(state)


def write_token_on_install(host, token_for):
    """Installer stand-in that writes the node token like the K3s server does."""
    def installer(args):
        secret = host.env_of('sh', '-s', '-').get('K3S_TOKEN', 'generated')
        host.write_text(NODE_TOKEN_PATH, token_for(secret) + "\n", mode=0o600)
        return CommandResult(args, 0)
    return installer


def host_files(host):
    return sorted(str(p.relative_to(host.root)) for p in host.root.rglob('*') if p.is_file())


def test_generate_secret_is_64_hex():
    secret = generate_secret()
    assert re.fullmatch(r'[0-9a-f]{64}', secret)
    assert generate_secret() != secret


def test_strip_swap_entries():
    fstab = (
        "UUID=abc / ext4 defaults 0 1\n"
        "/swap.img none swap sw 0 0\n"
        "# /old none swap sw 0 0\n"
    )
    assert strip_swap_entries(fstab) == "UUID=abc / ext4 defaults 0 1\n# /old none swap sw 0 0\n"


@pytest.mark.parametrize("role", [NodeRole.WORKER, NodeRole.ADDITIONAL_MASTER])
def test_missing_token_changes_nothing(ubuntu_host, settings, role):
    before = host_files(ubuntu_host)
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)
    with pytest.raises(ValidationError, match="--token"):
        bootstrapper.run(role, ClusterJoinInfo(secret="s", master_address="10.0.0.5"))
    assert ubuntu_host.commands == []
    assert ubuntu_host.fetched == []
    assert host_files(ubuntu_host) == before
    assert bootstrapper.states == []


def test_invalid_metallb_range_changes_nothing(ubuntu_host, settings):
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)
    with pytest.raises(ValidationError):
        bootstrapper.run(NodeRole.FIRST_MASTER, ClusterJoinInfo(), addon=AddonConfig(True, "10.0.1.5"))
    assert ubuntu_host.commands == []


def test_teardown_is_not_a_bootstrap_role(ubuntu_host, settings):
    with pytest.raises(ValidationError):
        RecordingBootstrapper(ubuntu_host, settings).run(NodeRole.TEARDOWN, ClusterJoinInfo())


def test_first_master(ubuntu_host, settings):
    ubuntu_host.results[('sh',)] = write_token_on_install(
        ubuntu_host, lambda secret: f"K10deadbeef::server:{secret}")
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)

    result = bootstrapper.run(NodeRole.FIRST_MASTER, ClusterJoinInfo())

    assert bootstrapper.states == [
        BootstrapState.CONFIGURING,
        BootstrapState.INSTALLING,
        BootstrapState.AWAITING_READY,
        BootstrapState.READY,
    ]
    assert result.state is BootstrapState.READY
    assert re.fullmatch(r'[0-9a-f]{64}', result.secret)

    env = ubuntu_host.env_of('sh', '-s', '-')
    assert env['K3S_TOKEN'] == result.secret
    assert env['INSTALL_K3S_EXEC'] == 'server --cluster-init --disable=traefik --write-kubeconfig-mode=644'
    assert 'K3S_URL' not in env
    assert ubuntu_host.input_of('sh', '-s', '-') == ubuntu_host.script
    assert ubuntu_host.fetched[0] == (settings.installer.script_url, None)

    assert result.join_token == f"K10deadbeef::server:{result.secret}"
    assert result.kubeconfig == '/etc/rancher/k3s/k3s.yaml'

    snapshot = yaml.safe_load(ubuntu_host.read_text(K3S_CONFIG_PATH))
    assert snapshot == {'etcd-snapshot-schedule-cron': '0 */12 * * *', 'etcd-snapshot-retention': 5}
    assert 'export KUBECONFIG=/etc/rancher/k3s/k3s.yaml' in ubuntu_host.read_text(ALIASES_PATH)
    assert ['ufw', 'allow', '6443/tcp'] in ubuntu_host.ran('ufw', 'allow')
    assert result.record.of_kind('service') == ['k3s']


def test_secret_from_first_master_joins_additional_master(ubuntu_host, settings):
    ubuntu_host.results[('sh',)] = write_token_on_install(
        ubuntu_host, lambda secret: f"K10deadbeef::server:{secret}")
    first = RecordingBootstrapper(ubuntu_host, settings).run(NodeRole.FIRST_MASTER, ClusterJoinInfo())

    join = ClusterJoinInfo(token=first.join_token, secret=first.secret, master_address="10.0.0.5")
    join.validate(NodeRole.ADDITIONAL_MASTER)
    assert token_secret(join.token) == first.secret


def test_supplied_secret_is_kept(ubuntu_host, settings):
    result = RecordingBootstrapper(ubuntu_host, settings).run(
        NodeRole.FIRST_MASTER, ClusterJoinInfo(secret="mysecret"))
    assert result.secret == "mysecret"
    assert ubuntu_host.env_of('sh', '-s', '-')['K3S_TOKEN'] == "mysecret"
    assert result.join_token is None


def test_additional_master(ubuntu_host, settings):
    join = ClusterJoinInfo(token="s", secret="s", master_address="10.0.0.5")
    result = RecordingBootstrapper(ubuntu_host, settings).run(NodeRole.ADDITIONAL_MASTER, join)

    env = ubuntu_host.env_of('sh', '-s', '-')
    assert env['K3S_URL'] == 'https://10.0.0.5:6443'
    assert env['K3S_TOKEN'] == 's'
    assert env['INSTALL_K3S_EXEC'] == 'server --disable=traefik --write-kubeconfig-mode=644'
    assert result.state is BootstrapState.READY
    assert not ubuntu_host.exists(K3S_CONFIG_PATH)


def test_worker(ubuntu_host, settings):
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)
    result = bootstrapper.run(NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"))

    assert bootstrapper.states[-1] is BootstrapState.JOINED
    assert result.server_url == 'https://10.0.0.5:6443'
    env = ubuntu_host.env_of('sh', '-s', '-')
    assert env['K3S_URL'] == 'https://10.0.0.5:6443'
    assert env['K3S_TOKEN'] == 'T1'
    assert 'INSTALL_K3S_EXEC' not in env
    assert not ubuntu_host.ran('k3s', 'kubectl')
    assert not ubuntu_host.ran('bash')
    assert not ubuntu_host.exists(ALIASES_PATH)
    assert [args[2] for args in ubuntu_host.ran('ufw', 'allow')] == ['10250/tcp', '8472/udp']


def test_worker_ignores_metallb(ubuntu_host, settings, caplog):
    RecordingBootstrapper(ubuntu_host, settings).run(
        NodeRole.WORKER,
        ClusterJoinInfo(token="T1", master_address="10.0.0.5"),
        addon=AddonConfig(True, RANGE),
    )
    assert "only installed from master nodes" in caplog.text
    assert not ubuntu_host.ran('k3s', 'kubectl')


def test_master_with_metallb(ubuntu_host, settings):
    RecordingBootstrapper(ubuntu_host, settings).run(
        NodeRole.FIRST_MASTER, ClusterJoinInfo(), addon=AddonConfig(True, RANGE), install_helm_client=False)

    assert '--disable=servicelb' in ubuntu_host.env_of('sh', '-s', '-')['INSTALL_K3S_EXEC']
    assert ubuntu_host.ran('k3s', 'kubectl', 'apply', '-f', '-')
    assert ['ufw', 'allow', '7946/udp'] in ubuntu_host.ran('ufw', 'allow')
    assert not ubuntu_host.ran('bash')


def test_proxy_reaches_every_child(ubuntu_host, settings):
    proxy = ProxyConfig.from_options("http://proxy:3128", None, "localhost")
    RecordingBootstrapper(ubuntu_host, settings).run(
        NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"), proxy=proxy)

    assert ubuntu_host.env_of('apt-get', 'update')['HTTP_PROXY'] == "http://proxy:3128"
    assert ubuntu_host.env_of('sh', '-s', '-')['no_proxy'] == "localhost"
    assert ubuntu_host.fetched[0][1] == {'http': "http://proxy:3128"}
    assert ubuntu_host.exists(APT_PROXY_PATH)
    assert ubuntu_host.exists(dropin_path('k3s-agent'))


def test_system_preparation_on_rhel(rocky_host, settings):
    rocky_host.write_text('/etc/fstab', "/dev/sda1 / xfs defaults 0 0\n/dev/sda2 none swap defaults 0 0\n")
    RecordingBootstrapper(rocky_host, settings).run(
        NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"))

    assert rocky_host.ran('swapoff', '-a')
    assert rocky_host.ran('systemctl', 'mask', 'swap.target')
    assert rocky_host.ran('dnf', 'makecache')
    assert 'container-selinux' in rocky_host.ran('dnf', 'install')[0]
    assert 'swap' not in rocky_host.read_text('/etc/fstab')
    assert rocky_host.ran('firewall-cmd', '--reload')


def test_package_failure_raises_installer_error(ubuntu_host, settings):
    ubuntu_host.results[('apt-get', 'install')] = 100
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)
    with pytest.raises(InstallerError) as excinfo:
        bootstrapper.run(NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"))
    assert excinfo.value.returncode == 100
    assert bootstrapper.state is BootstrapState.FAILED


def test_installer_failure_moves_to_failed(ubuntu_host, settings):
    ubuntu_host.results[('sh',)] = 1
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings)
    with pytest.raises(InstallerError):
        bootstrapper.run(NodeRole.FIRST_MASTER, ClusterJoinInfo())
    assert bootstrapper.states == [
        BootstrapState.CONFIGURING,
        BootstrapState.INSTALLING,
        BootstrapState.FAILED,
    ]


def test_readiness_timeout_moves_to_failed(ubuntu_host, settings):
    settings.readiness.interval = 0.01
    settings.readiness.max_attempts = 2
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings, probe=lambda: False)
    with pytest.raises(ReadinessTimeoutError):
        bootstrapper.run(NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"))
    assert bootstrapper.states[-2:] == [BootstrapState.AWAITING_READY, BootstrapState.FAILED]


def test_cancel_interrupts_readiness(ubuntu_host, settings):
    bootstrapper = RecordingBootstrapper(ubuntu_host, settings, probe=lambda: False)
    bootstrapper.cancel.set()
    with pytest.raises(OperationCancelled):
        bootstrapper.run(NodeRole.WORKER, ClusterJoinInfo(token="T1", master_address="10.0.0.5"))
    assert bootstrapper.state is BootstrapState.FAILED
