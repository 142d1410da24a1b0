"""Operating system detection."""

import logging

from k3sctl.utils import parse_env_file

from .errors import EnvironmentDetectionError
from .host import Host
from .models import FirewallBackend, OSFamily, OSProfile, PackageManager

logger = logging.getLogger("k3sctl.environment")

OS_RELEASE_PATH = '/etc/os-release'

DEBIAN_IDS = ('ubuntu', 'debian')
RHEL_IDS = ('rhel', 'centos', 'rocky', 'almalinux', 'fedora')


def _family_for(os_id: str, id_like: str) -> OSFamily:
    if os_id in DEBIAN_IDS:
        return OSFamily.DEBIAN_LIKE
    if os_id in RHEL_IDS:
        return OSFamily.RHEL_LIKE
    like = id_like.split()
    if 'debian' in like or 'ubuntu' in like:
        return OSFamily.DEBIAN_LIKE
    if any(name in like for name in ('rhel', 'fedora', 'centos')):
        return OSFamily.RHEL_LIKE
    raise EnvironmentDetectionError(f"Unsupported OS: {os_id or 'unknown'}")


def _rhel_package_manager(host: Host) -> PackageManager:
    return PackageManager.DNF if host.which('dnf') else PackageManager.YUM


def detect(host: Host) -> OSProfile:
    """Detect the OS family, package manager and firewall backend.

    Unknown distributions fall back to dnf + firewalld with a warning; this
    never fails.
    """
    content = host.read_text(OS_RELEASE_PATH)
    release = parse_env_file(content) if content else {}
    os_id = release.get('ID', '').lower()
    version = release.get('VERSION_ID', '')

    try:
        if not release:
            raise EnvironmentDetectionError(f"Cannot read {OS_RELEASE_PATH}")
        family = _family_for(os_id, release.get('ID_LIKE', '').lower())
    except EnvironmentDetectionError as e:
        logger.warning(f"⚠️  {e}. Attempting with dnf/firewalld...")
        profile = OSProfile(
            family=OSFamily.UNKNOWN,
            package_manager=PackageManager.DNF,
            firewall_backend=FirewallBackend.FIREWALLD,
            os_id=os_id or 'unknown',
            version=version,
        )
    else:
        if family is OSFamily.DEBIAN_LIKE:
            profile = OSProfile(family, PackageManager.APT, FirewallBackend.UFW, os_id, version)
        else:
            profile = OSProfile(family, _rhel_package_manager(host), FirewallBackend.FIREWALLD, os_id, version)

    logger.info(f"🖥️  Detected OS: {profile.os_id} {profile.version}".rstrip())
    logger.info(f"📦 Using package manager: {profile.package_manager.value}")
    return profile
