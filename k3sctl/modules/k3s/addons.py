"""Cluster add-ons: the MetalLB load balancer and the Helm client."""

import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests
import yaml
from tenacity import RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from k3sctl.config import AddonSettings

from .errors import AddonError, InstallerError
from .host import CommandResult, Host
from .models import AddonConfig, ProxyConfig

logger = logging.getLogger("k3sctl.addons")

METALLB_API_VERSION = 'metallb.io/v1beta1'
HELM_PATH = '/usr/local/bin/helm'


def build_pool_manifests(addon: AddonConfig, settings: AddonSettings) -> List[Dict[str, Any]]:
    """Build the IPAddressPool and L2Advertisement objects.

    The address range is passed through exactly as given.
    """
    pool = {
        'apiVersion': METALLB_API_VERSION,
        'kind': 'IPAddressPool',
        'metadata': {
            'name': settings.pool_name,
            'namespace': settings.namespace,
        },
        'spec': {
            'addresses': [addon.ip_range],
        },
    }
    advertisement = {
        'apiVersion': METALLB_API_VERSION,
        'kind': 'L2Advertisement',
        'metadata': {
            'name': settings.advertisement_name,
            'namespace': settings.namespace,
        },
        'spec': {
            'ipAddressPools': [settings.pool_name],
        },
    }
    return [pool, advertisement]


class AddonInstaller:
    """Installs MetalLB through the kubectl bundled with K3s."""

    def __init__(
        self,
        host: Host,
        settings: AddonSettings,
        env: Optional[Mapping[str, str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.settings = settings
        self.env = dict(env or {})
        self.sleep = sleep

    def _kubectl(self, args: List[str], input: Optional[str] = None) -> CommandResult:
        return self.host.run(['k3s', 'kubectl'] + args, env=self.env, input=input, check=False)

    def install(self, addon: AddonConfig) -> bool:
        """Apply MetalLB and its address pool.

        Returns:
            bool: Whether the MetalLB pods became ready within the timeout

        Raises:
            AddonError: If a manifest cannot be applied, or the pods are not
                ready and ``timeout_fatal`` is set
        """
        if not addon.enabled:
            logger.info("ℹ️  Skipping MetalLB installation (using K3s ServiceLB)")
            return False

        logger.info("⚖️  Installing MetalLB load balancer...")
        result = self._kubectl(['apply', '-f', self.settings.manifest_url])
        if not result.ok:
            raise AddonError(f"Failed to apply MetalLB manifests: {result.stderr.strip()}")

        ready = self.wait_until_ready()
        self.apply_pool(addon)
        logger.info(f"✅ MetalLB installed with IP range: {addon.ip_range}")
        return ready

    def wait_until_ready(self) -> bool:
        logger.info("⏳ Waiting for MetalLB to be ready...")
        result = self._kubectl([
            'wait',
            '--namespace', self.settings.namespace,
            '--for=condition=ready', 'pod',
            f'--selector={self.settings.selector}',
            f'--timeout={self.settings.wait_timeout}s',
        ])
        if result.ok:
            return True

        message = f"MetalLB pods not ready after {self.settings.wait_timeout}s"
        if self.settings.timeout_fatal:
            raise AddonError(message)
        logger.warning(f"⚠️  {message}, continuing anyway")
        return False

    def apply_pool(self, addon: AddonConfig) -> None:
        """Apply the address pool, retrying while the MetalLB webhook starts."""
        document = yaml.safe_dump_all(build_pool_manifests(addon, self.settings), sort_keys=False)
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.apply_attempts),
            wait=wait_fixed(self.settings.apply_interval),
            sleep=self.sleep,
            retry=retry_if_result(lambda r: not r.ok),
        )
        try:
            retrying(self._kubectl, ['apply', '-f', '-'], input=document)
        except RetryError as e:
            stderr = e.last_attempt.result().stderr.strip()
            raise AddonError(f"Failed to create MetalLB address pool: {stderr}") from e


def install_helm(host: Host, script_url: str, proxy: Optional[ProxyConfig] = None,
                 env: Optional[Mapping[str, str]] = None, timeout: float = 60) -> bool:
    """Install the Helm client unless it is already present.

    Returns:
        bool: True when Helm was installed by this call
    """
    if host.which('helm'):
        logger.info("ℹ️  Helm already installed")
        return False

    logger.info("⎈ Installing Helm...")
    try:
        script = host.fetch(script_url, proxies=proxy.requests_proxies() if proxy else None, timeout=timeout)
    except requests.RequestException as e:
        raise InstallerError(f"Failed to download Helm installer from {script_url}: {e}") from e

    result = host.run(['bash', '-s', '--'], input=script, env=env, check=False)
    if not result.ok:
        raise InstallerError(f"Helm installer exited with status {result.returncode}", result.returncode)
    logger.info("✅ Helm installed successfully")
    return True
