"""Control-plane readiness polling.

``ReadinessWaiter.wait`` polls a probe at a fixed interval until it succeeds,
the configured bound is exceeded, or the cancellation event is set. Sleeping
happens on the event, so a signal handler that sets it interrupts the wait
immediately.
"""

import logging
import threading
import warnings
from typing import Callable, Optional

import requests
from kubernetes import client, config
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)
from tenacity.stop import stop_base

from .configuration import KUBECONFIG_PATH
from .errors import OperationCancelled, ReadinessTimeoutError
from .host import Host
from .models import ClusterJoinInfo, NodeRole

logger = logging.getLogger("k3sctl.readiness")

Probe = Callable[[], bool]


class stop_when_set(stop_base):
    """Stop retrying once ``event`` is set."""

    def __init__(self, event: threading.Event):
        self.event = event

    def __call__(self, retry_state) -> bool:
        return self.event.is_set()


class KubeApiProbe:
    """Lists nodes through the Kubernetes API using the local kubeconfig."""

    def __init__(self, kubeconfig: str, request_timeout: int = 5):
        self.kubeconfig = kubeconfig
        self.request_timeout = request_timeout

    def __call__(self) -> bool:
        api_client = config.new_client_from_config(config_file=self.kubeconfig)
        try:
            client.CoreV1Api(api_client).list_node(_request_timeout=self.request_timeout)
        finally:
            api_client.close()
        return True


class HttpPingProbe:
    """Queries the K3s supervisor ``/ping`` endpoint of the master.

    Agents hold no credentials for listing nodes, so they use the
    unauthenticated liveness endpoint served on the API port.
    """

    def __init__(self, server_url: str, request_timeout: int = 5):
        self.url = f"{server_url.rstrip('/')}/ping"
        self.request_timeout = request_timeout

    def __call__(self) -> bool:
        with warnings.catch_warnings():
            # The supervisor serves a self-signed certificate
            warnings.simplefilter('ignore')
            response = requests.get(self.url, timeout=self.request_timeout, verify=False)
        return response.ok


def build_probe(role: NodeRole, join: ClusterJoinInfo, host: Host, request_timeout: int = 5) -> Probe:
    """Pick the readiness probe for a role."""
    if role.is_master:
        return KubeApiProbe(str(host.path(KUBECONFIG_PATH)), request_timeout)
    return HttpPingProbe(join.server_url, request_timeout)


class ReadinessWaiter:
    """Bounded, cancellable retry around a readiness probe."""

    def __init__(
        self,
        interval: float = 5.0,
        timeout: Optional[float] = 300.0,
        max_attempts: Optional[int] = None,
        sleep: Optional[Callable[[float], None]] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.interval = interval
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.cancel = cancel or threading.Event()
        self._sleep = sleep or self._interruptible_sleep
        self.attempts = 0

    def _interruptible_sleep(self, seconds: float) -> None:
        self.cancel.wait(seconds)

    def _stop(self):
        stop = stop_when_set(self.cancel)
        if self.timeout:
            stop = stop | stop_after_delay(self.timeout)
        if self.max_attempts:
            stop = stop | stop_after_attempt(self.max_attempts)
        return stop

    def _attempt(self, probe: Probe) -> bool:
        if self.cancel.is_set():
            raise OperationCancelled("Wait for control plane cancelled")
        self.attempts += 1
        return bool(probe())

    def _log_retry(self, retry_state) -> None:
        outcome = retry_state.outcome
        reason = outcome.exception() if outcome.failed else "not ready"
        logger.info(f"⏳ Waiting for K3s API server... (attempt {self.attempts}: {reason})")

    def wait(self, probe: Probe) -> int:
        """Poll ``probe`` until it succeeds.

        A probe fails by returning a false value or raising.

        Returns:
            int: Number of attempts made

        Raises:
            ReadinessTimeoutError: If the bound is exceeded
            OperationCancelled: If the cancellation event is set
        """
        self.attempts = 0
        if not self.timeout and not self.max_attempts:
            raise ValueError("ReadinessWaiter needs a timeout or an attempt limit")

        retrying = Retrying(
            stop=self._stop(),
            wait=wait_fixed(self.interval),
            sleep=self._sleep,
            retry=(retry_if_result(lambda ready: not ready)
                   | retry_if_exception(lambda e: not isinstance(e, OperationCancelled))),
            before_sleep=self._log_retry,
        )
        try:
            retrying(self._attempt, probe)
        except RetryError as e:
            if self.cancel.is_set():
                raise OperationCancelled("Wait for control plane cancelled") from e
            last = e.last_attempt
            last_error = str(last.exception()) if last.failed else "probe reported not ready"
            raise ReadinessTimeoutError(
                f"Control plane not ready after {self.attempts} attempts: {last_error}",
                attempts=self.attempts,
                last_error=last_error,
            ) from e

        logger.info(f"✅ Control plane is ready after {self.attempts} attempt(s)")
        return self.attempts
