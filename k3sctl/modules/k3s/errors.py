"""Exceptions raised by the K3s node orchestrator."""
from typing import Optional


class K3sctlError(Exception):
    """Base class for all k3sctl errors."""
    pass


class ValidationError(K3sctlError):
    """Raised when options are invalid for the requested role.

    Always raised before anything on the host is modified.
    """
    pass


class EnvironmentDetectionError(K3sctlError):
    """Raised when the OS cannot be mapped to a known profile."""
    pass


class InstallerError(K3sctlError):
    """Raised when the delegated K3s installer fails."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ReadinessTimeoutError(K3sctlError):
    """Raised when the control plane does not answer within the bound."""

    def __init__(self, message: str, attempts: int = 0, last_error: Optional[str] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class OperationCancelled(K3sctlError):
    """Raised when a blocking wait is interrupted by a cancellation request."""
    pass


class AddonError(K3sctlError):
    """Raised when the MetalLB add-on cannot be installed."""
    pass


class TeardownStepError(K3sctlError):
    """Raised by a teardown step; recorded in the report, never propagated."""
    pass


class TeardownAborted(K3sctlError):
    """Raised when teardown is not confirmed."""
    pass
