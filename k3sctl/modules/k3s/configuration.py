"""K3s configuration rendering.

This module builds everything handed to the delegated K3s installer (the
``INSTALL_K3S_EXEC`` flags and join variables) and renders the files the
orchestrator writes on the host. File templates live in ``templates/`` and
are rendered with Jinja2 using strict undefined handling.
"""

import logging
import os
from typing import Any, Dict, Optional

import yaml
from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, UndefinedError

from .errors import K3sctlError
from .host import Host
from .models import ClusterJoinInfo, NodeRole

logger = logging.getLogger("k3sctl.configuration")

K3S_CONFIG_PATH = '/etc/rancher/k3s/config.yaml'
KUBECONFIG_PATH = '/etc/rancher/k3s/k3s.yaml'
NODE_TOKEN_PATH = '/var/lib/rancher/k3s/server/node-token'
ALIASES_PATH = '/etc/profile.d/k3s-aliases.sh'


class ConfigurationError(K3sctlError):
    """Raised when there is an error rendering configuration."""
    pass


def get_template_path() -> str:
    """Get the absolute path to the templates directory."""
    return os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates')


def render_template(name: str, **context: Any) -> str:
    """Render one of the bundled templates.

    Raises:
        ConfigurationError: If the template is missing or a variable is undefined
    """
    env = Environment(
        loader=FileSystemLoader(get_template_path()),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
        undefined=StrictUndefined
    )
    try:
        return env.get_template(name).render(**context)
    except TemplateNotFound as e:
        raise ConfigurationError(f"Configuration template not found: {e}") from e
    except UndefinedError as e:
        raise ConfigurationError(f"Missing required template variable: {e}") from e


def build_install_exec(role: NodeRole, disable_servicelb: bool = False) -> str:
    """Build the ``INSTALL_K3S_EXEC`` value for a role.

    Workers run the installer in agent mode, which takes no exec flags.
    """
    if role is NodeRole.WORKER:
        return ''
    flags = ['server']
    if role is NodeRole.FIRST_MASTER:
        flags.append('--cluster-init')
    flags.append('--disable=traefik')
    if disable_servicelb:
        flags.append('--disable=servicelb')
    flags.append('--write-kubeconfig-mode=644')
    return ' '.join(flags)


def build_installer_env(
    role: NodeRole,
    join: ClusterJoinInfo,
    secret: Optional[str] = None,
    disable_servicelb: bool = False,
) -> Dict[str, str]:
    """Environment variables consumed by the K3s install script."""
    env: Dict[str, str] = {}
    install_exec = build_install_exec(role, disable_servicelb)
    if install_exec:
        env['INSTALL_K3S_EXEC'] = install_exec

    if role is NodeRole.FIRST_MASTER:
        if secret:
            env['K3S_TOKEN'] = secret
    elif role in (NodeRole.ADDITIONAL_MASTER, NodeRole.WORKER):
        env['K3S_URL'] = join.server_url
        env['K3S_TOKEN'] = join.token
    else:
        raise ConfigurationError(f"No installer environment for role {role.value}")
    return env


def merge_dicts(base: Dict[Any, Any], override: Dict[Any, Any]) -> Dict[Any, Any]:
    """Recursively merge two dictionaries, ``override`` taking precedence."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def write_snapshot_config(host: Host, cron: str, retention: int) -> str:
    """Merge the etcd snapshot schedule into the K3s config file.

    Keys already present in the file are kept unless they are the snapshot
    keys themselves, so repeated runs converge on the same file.

    Returns:
        str: The path written
    """
    existing: Dict[str, Any] = {}
    content = host.read_text(K3S_CONFIG_PATH)
    if content:
        try:
            existing = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {K3S_CONFIG_PATH}: {e}") from e
        if not isinstance(existing, dict):
            raise ConfigurationError(f"{K3S_CONFIG_PATH} does not contain a mapping")

    config = merge_dicts(existing, {
        'etcd-snapshot-schedule-cron': cron,
        'etcd-snapshot-retention': retention,
    })
    host.write_text(
        K3S_CONFIG_PATH,
        yaml.safe_dump(config, default_flow_style=False, sort_keys=False),
        mode=0o600
    )
    logger.debug(f"Snapshot schedule '{cron}' (keep {retention}) written to {K3S_CONFIG_PATH}")
    return K3S_CONFIG_PATH
