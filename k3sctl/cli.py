import logging
import signal
import sys
import threading
from contextlib import contextmanager
from typing import List, Optional

import typer
import yaml

from k3sctl.config import Settings, get_settings, set_settings
from k3sctl.logging import setup_logging
from k3sctl.modules.k3s import (
    AddonConfig,
    BootstrapResult,
    ClusterBootstrapper,
    ClusterJoinInfo,
    CommandError,
    Host,
    K3sctlError,
    NodeRole,
    ProxyConfig,
    StepOutcome,
    TeardownAborted,
    TeardownOrchestrator,
    TeardownReport,
    ValidationError,
    validate_request,
)
from k3sctl.modules.k3s.configuration import KUBECONFIG_PATH, NODE_TOKEN_PATH
from k3sctl.modules.k3s.models import DEFAULT_API_PORT
from k3sctl.utils import get_local_ip

app = typer.Typer(add_completion=False)

logger = logging.getLogger("k3sctl.cli")

USAGE_ERROR_EXIT_CODE = 2

OUTCOME_ICONS = {
    StepOutcome.SUCCESS: "✅",
    StepOutcome.TARGET_ABSENT: "ℹ️ ",
    StepOutcome.SKIPPED: "⏭️ ",
    StepOutcome.FAILED: "❌",
}


def get_host() -> Host:
    return Host(command_timeout=get_settings().installer.command_timeout)


def resolve_role(master: bool, master_ha: bool, worker: bool, cleanup: bool) -> NodeRole:
    selected = [
        role for flag, role in (
            (master, NodeRole.FIRST_MASTER),
            (master_ha, NodeRole.ADDITIONAL_MASTER),
            (worker, NodeRole.WORKER),
            (cleanup, NodeRole.TEARDOWN),
        ) if flag
    ]
    if not selected:
        raise ValidationError("No mode specified")
    if len(selected) > 1:
        raise ValidationError("Only one of --master, --master-ha, --worker or --cleanup may be given")
    return selected[0]


@contextmanager
def cancel_on_signals(cancel: threading.Event):
    """Set ``cancel`` on SIGINT/SIGTERM for the duration of the block."""
    def _handler(signum, frame):
        logger.warning(f"Received signal {signum}, cancelling...")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def print_summary(result: BootstrapResult, master_ip: str) -> None:
    typer.echo("")
    if result.role is NodeRole.WORKER:
        typer.echo(f"✅ Worker node joined cluster at {result.server_url}")
        return

    typer.echo("✅ Master node installed successfully!")
    typer.echo("=========================================")
    typer.echo(f"- Kubeconfig: {result.kubeconfig or KUBECONFIG_PATH}")
    if result.firewall is not None and not result.firewall.skipped:
        typer.echo(f"- Firewall ({result.firewall.backend.value}): {', '.join(result.firewall.applied)}")
    if result.role is NodeRole.FIRST_MASTER:
        token = result.join_token or f"$(sudo cat {NODE_TOKEN_PATH})"
        typer.echo("")
        typer.echo(f"Cluster secret: {result.secret}")
        typer.echo(f"Join token: {result.join_token or 'Run: sudo cat ' + NODE_TOKEN_PATH}")
        typer.echo("")
        typer.echo("To add WORKER nodes, use:")
        typer.echo(f"  k3sctl --worker --token {token} --master-ip {master_ip}")
        typer.echo("To add MASTER nodes, use:")
        typer.echo(f"  k3sctl --master-ha --token {token} --secret {result.secret} --master-ip {master_ip}")
    typer.echo("=========================================")
    typer.echo("Reload your shell or run: source /etc/profile.d/k3s-aliases.sh")


def print_report(report: TeardownReport) -> None:
    typer.echo("")
    for step in report.steps:
        icon = OUTCOME_ICONS[step.outcome]
        typer.echo(f"{icon} {step.number:>2}. {step.name}: {step.outcome.value}"
                   + (f" ({step.detail})" if step.detail else ""))
    typer.echo("")
    if report.ok:
        typer.echo("✅ K3s cleanup completed!")
        typer.echo("• A reboot is recommended to ensure all changes take effect")
    else:
        typer.echo(f"❌ K3s cleanup finished with {len(report.failed)} failed step(s)", err=True)


def run_bootstrap(host: Host, role: NodeRole, join: ClusterJoinInfo,
                  proxy: ProxyConfig, addon: AddonConfig, skip_helm: bool) -> int:
    cancel = threading.Event()
    bootstrapper = ClusterBootstrapper(host, cancel=cancel)
    try:
        with cancel_on_signals(cancel):
            result = bootstrapper.run(
                role, join, proxy, addon,
                install_helm_client=False if skip_helm else None,
            )
    except (K3sctlError, CommandError) as e:
        logger.debug("Bootstrap failed", exc_info=True)
        typer.echo(f"❌ {type(e).__name__}: {e}", err=True)
        return 1

    print_summary(result, join.master_address)
    return 0


def run_teardown(host: Host, yes: bool, remove_helm: Optional[bool]) -> int:
    interactive = sys.stdin.isatty()
    if not yes and not interactive:
        typer.echo("[ERROR] --cleanup needs --yes when not run interactively", err=True)
        return 1

    def confirm(prompt: str) -> bool:
        return typer.confirm(prompt, default=False)

    orchestrator = TeardownOrchestrator(host, confirm=confirm if interactive else None)
    try:
        report = orchestrator.run(force=yes, remove_helm=remove_helm)
    except TeardownAborted as e:
        typer.echo(f"ℹ️  {e}")
        return 0
    print_report(report)
    return 0 if report.ok else 1


@app.command()
def k3sctl(
    master: bool = typer.Option(False, "--master", help="Install as the first master node"),
    master_ha: bool = typer.Option(False, "--master-ha", help="Join as an additional master node (requires --token, --secret)"),
    worker: bool = typer.Option(False, "--worker", help="Install as worker node (requires --token)"),
    cleanup: bool = typer.Option(False, "--cleanup", help="Uninstall K3s and cleanup system"),
    master_ip: Optional[str] = typer.Option(None, "--master-ip", help="Master node IP address"),
    master_port: int = typer.Option(DEFAULT_API_PORT, "--master-port", help="Master API port"),
    token: Optional[str] = typer.Option(None, "--token", help="K3s join token"),
    secret: Optional[str] = typer.Option(None, "--secret", help="Cluster secret (generated for --master if omitted)"),
    metallb_range: Optional[str] = typer.Option(None, "--metallb-range", help="MetalLB IP range, e.g. 10.0.1.100-10.0.1.110"),
    skip_metallb: bool = typer.Option(False, "--skip-metallb", help="Skip MetalLB installation"),
    http_proxy: Optional[str] = typer.Option(None, "--http-proxy", help="HTTP proxy URL"),
    https_proxy: Optional[str] = typer.Option(None, "--https-proxy", help="HTTPS proxy URL"),
    no_proxy: Optional[str] = typer.Option(None, "--no-proxy", help="No proxy list (default: internal ranges)"),
    skip_helm: bool = typer.Option(False, "--skip-helm", help="Do not install Helm on master nodes"),
    ready_timeout: Optional[float] = typer.Option(None, "--ready-timeout", min=1, help="Seconds to wait for the control plane"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation (--cleanup)"),
    remove_helm: Optional[bool] = typer.Option(None, "--remove-helm/--keep-helm", help="Remove Helm during --cleanup"),
    config: Optional[str] = typer.Option(None, "--config", help="Path to a k3sctl settings file"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging"),
):
    """Install K3s as master, HA master or worker node, or clean it up."""
    try:
        settings = Settings.load(config)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.echo(f"[ERROR] Invalid configuration: {e}", err=True)
        raise typer.Exit(1)
    if ready_timeout is not None:
        settings.readiness.timeout = ready_timeout
    set_settings(settings)
    setup_logging(debug, settings.logging)

    try:
        role = resolve_role(master, master_ha, worker, cleanup)
        join = ClusterJoinInfo(
            token=token or '',
            secret=secret,
            master_address=master_ip or '',
            master_port=master_port,
        )
        addon = AddonConfig(enabled=bool(metallb_range) and not skip_metallb, ip_range=metallb_range or '')
        proxy = ProxyConfig.from_options(
            http_proxy, https_proxy,
            no_proxy if no_proxy is not None else settings.installer.default_no_proxy,
        )
        if role is not NodeRole.TEARDOWN:
            validate_request(role, join, addon)
    except ValidationError as e:
        typer.echo(f"[ERROR] {e}", err=True)
        typer.echo("Use --help for usage information", err=True)
        raise typer.Exit(1)

    host = get_host()
    if not host.is_root():
        typer.echo("[ERROR] k3sctl must be run as root", err=True)
        raise typer.Exit(1)

    if role is NodeRole.TEARDOWN:
        raise typer.Exit(run_teardown(host, yes, remove_helm))

    if role is NodeRole.FIRST_MASTER and not join.master_address:
        join.master_address = get_local_ip()
    raise typer.Exit(run_bootstrap(host, role, join, proxy, addon, skip_helm))


def main(argv: Optional[List[str]] = None) -> int:
    """Console entry point; usage errors exit with status 1."""
    try:
        app(args=argv, prog_name="k3sctl")
    except SystemExit as e:
        code = e.code if isinstance(e.code, int) else 1
        # Usage errors exit with 2
        return 1 if code == USAGE_ERROR_EXIT_CODE else code
    return 0


if __name__ == "__main__":
    sys.exit(main())
