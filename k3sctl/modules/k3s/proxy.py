"""Proxy propagation into child processes, the package manager and K3s."""

import logging
import re
from typing import Dict, List

from .configuration import render_template
from .host import Host
from .models import NodeRole, OSProfile, PackageManager, ProxyConfig

logger = logging.getLogger("k3sctl.proxy")

APT_PROXY_PATH = '/etc/apt/apt.conf.d/01proxy'
DNF_CONF_PATH = '/etc/dnf/dnf.conf'
YUM_CONF_PATH = '/etc/yum.conf'
DROPIN_NAME = 'http-proxy.conf'

BLOCK_BEGIN = '# BEGIN k3sctl proxy'
BLOCK_END = '# END k3sctl proxy'
_BLOCK_RE = re.compile(
    r'^' + re.escape(BLOCK_BEGIN) + r'\n.*?^' + re.escape(BLOCK_END) + r'\n?',
    re.MULTILINE | re.DOTALL
)


def dropin_path(service_name: str) -> str:
    return f'/etc/systemd/system/{service_name}.service.d/{DROPIN_NAME}'


def upsert_block(content: str, body: str) -> str:
    """Replace the k3sctl block in ``content`` (or append one)."""
    block = f"{BLOCK_BEGIN}\n{body.rstrip()}\n{BLOCK_END}\n"
    if _BLOCK_RE.search(content):
        return _BLOCK_RE.sub(lambda _: block, content, count=1)
    if content and not content.endswith('\n'):
        content += '\n'
    return content + block


def strip_block(content: str) -> str:
    return _BLOCK_RE.sub('', content)


def _package_manager_files(profile: OSProfile) -> List[str]:
    if profile.package_manager is PackageManager.APT:
        return [APT_PROXY_PATH]
    if profile.package_manager is PackageManager.DNF:
        return [DNF_CONF_PATH]
    return [YUM_CONF_PATH]


class ProxyConfigurator:
    """Writes proxy settings into every scope that needs them."""

    def __init__(self, host: Host):
        self.host = host

    def apply(self, proxy: ProxyConfig, profile: OSProfile, role: NodeRole) -> Dict[str, str]:
        """Configure the package manager and the K3s unit for ``proxy``.

        Safe to run repeatedly: each file ends up with a single proxy entry.

        Returns:
            dict: Environment overlay for child processes (empty when no proxy)
        """
        if not proxy.enabled:
            logger.debug("No proxy configured, skipping")
            return {}

        logger.info("🌐 Configuring proxy settings...")
        self._configure_package_manager(proxy, profile)
        self._configure_service(proxy, role)
        return proxy.environ()

    def _configure_package_manager(self, proxy: ProxyConfig, profile: OSProfile) -> None:
        if profile.package_manager is PackageManager.APT:
            self.host.write_text(APT_PROXY_PATH, render_template('apt-proxy.conf.j2', proxy=proxy))
            logger.debug(f"Wrote apt proxy to {APT_PROXY_PATH}")
            return

        # dnf and yum accept a single proxy for both schemes
        url = proxy.http_proxy or proxy.https_proxy
        path = _package_manager_files(profile)[0]
        current = self.host.read_text(path) or '[main]\n'
        self.host.write_text(path, upsert_block(current, f"proxy={url}"))
        logger.debug(f"Updated proxy block in {path}")

    def _configure_service(self, proxy: ProxyConfig, role: NodeRole) -> None:
        path = dropin_path(role.service_name)
        self.host.write_text(path, render_template('http-proxy.conf.j2', proxy=proxy))
        logger.debug(f"Wrote {role.service_name} proxy drop-in to {path}")

    def remove(self) -> List[str]:
        """Remove proxy configuration written by ``apply``.

        Returns:
            list: Files that were changed or removed
        """
        changed = []
        if self.host.remove(APT_PROXY_PATH):
            changed.append(APT_PROXY_PATH)
        for path in (DNF_CONF_PATH, YUM_CONF_PATH):
            content = self.host.read_text(path)
            if content is None:
                continue
            stripped = strip_block(content)
            if stripped != content:
                self.host.write_text(path, stripped)
                changed.append(path)
        return changed
