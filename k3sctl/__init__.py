"""k3sctl - single-node K3s bootstrap and teardown."""

__version__ = "0.1.0"
