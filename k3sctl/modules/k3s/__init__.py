"""
K3s Node Management Module

This package brings a single machine into a K3s cluster role, or removes K3s
from it again.

Key Features:
- First master, additional (HA) master and worker bootstrap
- OS, package manager and firewall detection (Debian and RHEL families)
- Idempotent proxy propagation to the package manager and K3s service
- Bounded, cancellable wait for the control plane
- MetalLB installation with an L2 address pool
- Ordered, best-effort teardown with a per-step report
"""

from .models import (
    AddonConfig,
    BootstrapResult,
    BootstrapState,
    ClusterJoinInfo,
    FirewallBackend,
    NodeRole,
    OSFamily,
    OSProfile,
    PackageManager,
    ProxyConfig,
    StepOutcome,
    TeardownReport,
)
from .errors import (
    AddonError,
    InstallerError,
    K3sctlError,
    OperationCancelled,
    ReadinessTimeoutError,
    TeardownAborted,
    ValidationError,
)
from .host import CommandError, Host
from .bootstrap import ClusterBootstrapper, validate_request
from .teardown import TeardownOrchestrator

__all__ = [
    # Models
    'AddonConfig',
    'BootstrapResult',
    'BootstrapState',
    'ClusterJoinInfo',
    'FirewallBackend',
    'NodeRole',
    'OSFamily',
    'OSProfile',
    'PackageManager',
    'ProxyConfig',
    'StepOutcome',
    'TeardownReport',

    # Errors
    'AddonError',
    'CommandError',
    'InstallerError',
    'K3sctlError',
    'OperationCancelled',
    'ReadinessTimeoutError',
    'TeardownAborted',
    'ValidationError',

    # Operations
    'Host',
    'ClusterBootstrapper',
    'TeardownOrchestrator',
    'validate_request',
]
