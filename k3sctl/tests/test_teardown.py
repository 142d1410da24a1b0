import pytest

from conftest import FakeHost
from k3sctl.modules.k3s.configuration import ALIASES_PATH
from k3sctl.modules.k3s.errors import TeardownAborted
from k3sctl.modules.k3s.host import CommandResult
from k3sctl.modules.k3s.models import StepOutcome
from k3sctl.modules.k3s.proxy import APT_PROXY_PATH
from k3sctl.modules.k3s.teardown import CONFIRM_PROMPT, HELM_PROMPT, TeardownOrchestrator

IP_LINKS = (
    "1: lo: <LOOPBACK,UP,LOWER_UP> mtu 65536\n"
    "2: eth0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1500\n"
    "3: flannel.1: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1450\n"
    "4: cni0: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1450\n"
    "5: veth1234@if3: <BROADCAST,MULTICAST,UP,LOWER_UP> mtu 1450\n"
)
IPTABLES_NAT = (
    "-P PREROUTING ACCEPT\n"
    "-N KUBE-SERVICES\n"
    "-N KUBE-POSTROUTING\n"
    "-N DOCKER\n"
    '-A PREROUTING -m comment --comment "kubernetes service portals" -j KUBE-SERVICES\n'
    "-A POSTROUTING -j KUBE-POSTROUTING\n"
)
MOUNTS = (
    "proc /proc proc rw 0 0\n"
    "tmpfs /run/k3s/containerd/io.containerd.grpc.v1.cri/sandboxes/abc/shm tmpfs rw 0 0\n"
    "tmpfs /var/lib/kubelet/pods/xyz/volumes/kubernetes.io~projected/kube-api-access tmpfs rw 0 0\n"
    "/dev/sda1 /var/lib/kubelet ext4 rw 0 0\n"
)


def outcomes(report):
    return {step.name: step.outcome for step in report.steps}


def test_clean_machine_reports_target_absent(fake_host):
    report = TeardownOrchestrator(fake_host).run(force=True, remove_helm=True)
    assert len(report.steps) == 14
    assert [s.number for s in report.steps] == list(range(1, 15))
    assert all(s.outcome is StepOutcome.TARGET_ABSENT for s in report.steps)
    assert report.ok


def test_clean_machine_with_tools_reports_target_absent(tmp_path):
    host = FakeHost(tmp_path, tools={'systemctl', 'ip', 'iptables', 'pgrep'}, results={
        ('systemctl', 'is-active'): 3,
        ('pgrep',): 1,
    })
    report = TeardownOrchestrator(host).run(force=True, remove_helm=True)
    assert all(s.outcome is StepOutcome.TARGET_ABSENT for s in report.steps), report.steps


def test_requires_confirmation(fake_host):
    with pytest.raises(TeardownAborted):
        TeardownOrchestrator(fake_host).run()

    prompts = []
    orchestrator = TeardownOrchestrator(fake_host, confirm=lambda p: prompts.append(p) or False)
    with pytest.raises(TeardownAborted, match="cancelled"):
        orchestrator.run()
    assert prompts == [CONFIRM_PROMPT]
    assert fake_host.commands == []


def test_helm_prompt_declined_is_skipped(fake_host):
    fake_host.write_text('/usr/local/bin/helm', '')
    prompts = []
    report = TeardownOrchestrator(fake_host, confirm=lambda p: prompts.append(p) or p == CONFIRM_PROMPT).run()
    assert prompts == [CONFIRM_PROMPT, HELM_PROMPT]
    assert outcomes(report)["Remove Helm"] is StepOutcome.SKIPPED
    assert fake_host.exists('/usr/local/bin/helm')


def test_remove_helm(fake_host):
    fake_host.write_text('/usr/local/bin/helm', '')
    report = TeardownOrchestrator(fake_host).run(force=True, remove_helm=True)
    assert outcomes(report)["Remove Helm"] is StepOutcome.SUCCESS
    assert not fake_host.exists('/usr/local/bin/helm')


def test_removes_installed_files(fake_host):
    for path in ('/usr/local/bin/k3s', '/etc/rancher/k3s/k3s.yaml', '/var/lib/rancher/k3s/server/node-token',
                 '/etc/systemd/system/k3s.service', '/etc/cni/net.d/10-flannel.conflist',
                 APT_PROXY_PATH, ALIASES_PATH):
        fake_host.write_text(path, 'x')
    fake_host.path('/usr/local/bin/kubectl').symlink_to(fake_host.path('/usr/local/bin/k3s'))
    fake_host.tools.add('systemctl')
    fake_host.results[('systemctl', 'is-active')] = 3

    report = TeardownOrchestrator(fake_host).run(force=True, remove_helm=False)
    result = outcomes(report)

    for name in ("Remove binaries", "Remove data directories", "Remove systemd units",
                 "Remove CNI configuration", "Remove proxy and alias files"):
        assert result[name] is StepOutcome.SUCCESS, name
    assert not fake_host.exists('/usr/local/bin/kubectl')
    assert not fake_host.exists('/etc/rancher/k3s')
    assert not fake_host.exists(APT_PROXY_PATH)
    assert fake_host.ran('systemctl', 'daemon-reload')
    assert report.ok


def test_stops_running_service_and_runs_uninstall_script(tmp_path):
    host = FakeHost(tmp_path, tools={'systemctl'}, results={
        ('systemctl', 'is-active', '--quiet', 'k3s-agent'): 3,
    })
    host.write_text('/usr/local/bin/k3s-uninstall.sh', '#!/bin/sh\n', mode=0o755)
    report = TeardownOrchestrator(host).run(force=True, remove_helm=False)

    assert host.ran('systemctl', 'stop') == [['systemctl', 'stop', 'k3s']]
    assert host.ran('/usr/local/bin/k3s-uninstall.sh')
    assert outcomes(report)["Run uninstall script"] is StepOutcome.SUCCESS


def test_network_cleanup(tmp_path):
    host = FakeHost(tmp_path, tools={'ip', 'iptables'}, results={
        ('ip', '-o', 'link', 'show'): CommandResult([], 0, IP_LINKS),
        ('ip', 'link', 'delete', 'veth1234'): CommandResult([], 1, '', 'Cannot find device "veth1234"'),
        ('iptables', '-t', 'nat', '-S'): CommandResult([], 0, IPTABLES_NAT),
    })
    report = TeardownOrchestrator(host).run(force=True, remove_helm=False)
    result = outcomes(report)

    deleted = [args[3] for args in host.ran('ip', 'link', 'delete')]
    assert deleted == ['flannel.1', 'cni0', 'veth1234']
    assert result["Delete network interfaces"] is StepOutcome.SUCCESS

    assert ['iptables', '-t', 'nat', '-D', 'POSTROUTING', '-j', 'KUBE-POSTROUTING'] in host.ran('iptables')
    assert ['iptables', '-t', 'nat', '-X', 'KUBE-SERVICES'] in host.ran('iptables')
    assert ['iptables', '-t', 'nat', '-X', 'DOCKER'] not in host.ran('iptables')
    assert result["Clean iptables chains"] is StepOutcome.SUCCESS


def test_unmounts_deepest_first(fake_host):
    fake_host.write_text('/proc/mounts', MOUNTS)
    report = TeardownOrchestrator(fake_host).run(force=True, remove_helm=False)

    unmounted = [args[1] for args in fake_host.ran('umount')]
    assert unmounted[-1] == '/var/lib/kubelet'
    assert len(unmounted) == 3
    assert outcomes(report)["Unmount leftover mounts"] is StepOutcome.SUCCESS


def test_kills_k3s_processes_only(tmp_path):
    host = FakeHost(tmp_path, tools={'pgrep'}, results={
        ('pgrep', '-f', 'k3s server'): 0,
        ('pgrep',): 1,
    })
    TeardownOrchestrator(host).run(force=True, remove_helm=False)
    assert host.ran('pkill') == [['pkill', '-f', 'k3s server']]


def test_removes_managed_firewall_rules(tmp_path):
    host = FakeHost(tmp_path, tools={'firewall-cmd'}, results={
        ('firewall-cmd', '--permanent', '--list-ports'): CommandResult([], 0, "6443/tcp 22/tcp 8472/udp"),
    })
    report = TeardownOrchestrator(host).run(force=True, remove_helm=False)

    assert host.ran('firewall-cmd', '--permanent', '--remove-port=6443/tcp')
    assert host.ran('firewall-cmd', '--permanent', '--remove-port=8472/udp')
    assert not host.ran('firewall-cmd', '--permanent', '--remove-port=22/tcp')
    assert host.ran('firewall-cmd', '--reload')
    assert outcomes(report)["Remove firewall rules"] is StepOutcome.SUCCESS


def test_failed_step_does_not_stop_later_steps(tmp_path):
    host = FakeHost(tmp_path, tools={'systemctl'}, results={('systemctl', 'stop'): 1})
    host.write_text('/usr/local/bin/k3s', 'x')
    report = TeardownOrchestrator(host).run(force=True, remove_helm=False)

    assert outcomes(report)["Stop K3s service"] is StepOutcome.FAILED
    assert outcomes(report)["Remove binaries"] is StepOutcome.SUCCESS
    assert len(report.steps) == 14
    assert not report.ok


def test_removes_rules_for_configured_peer_port(tmp_path, settings):
    settings.addon.peer_port = 7947
    host = FakeHost(tmp_path, tools={'firewall-cmd'}, results={
        ('firewall-cmd', '--permanent', '--list-ports'): CommandResult([], 0, "6443/tcp 7947/tcp 7947/udp 7946/tcp"),
    })
    TeardownOrchestrator(host, settings=settings).run(force=True, remove_helm=False)

    removed = [args[2] for args in host.ran('firewall-cmd', '--permanent') if args[2].startswith('--remove-port')]
    assert removed == ['--remove-port=6443/tcp', '--remove-port=7947/tcp', '--remove-port=7947/udp']
