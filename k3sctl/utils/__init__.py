"""Utility functions and helpers for the k3sctl application."""
import io
import logging
import os
import socket
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from dotenv import dotenv_values

from ..config import REDACT_KEYS

logger = logging.getLogger("k3sctl.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


def run_command(
    cmd: List[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    cwd: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run a local command, logging it and any failure.

    ``env`` is an overlay merged on top of the current process environment.
    """
    cmd_str = ' '.join(cmd)
    logger.debug(f"💻 Running: {cmd_str}")
    if env:
        logger.debug(f"   with env: {redact_sensitive_data(dict(env))}")

    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    try:
        result = subprocess.run(
            cmd,
            check=check,
            text=True,
            cwd=cwd,
            env=full_env,
            input=input,
            timeout=timeout,
            stdout=subprocess.PIPE if capture_output else None,
            stderr=subprocess.PIPE if capture_output else None,
        )
        if capture_output:
            logger.debug(f"🟢 Output:\n{result.stdout}")
        return result
    except subprocess.CalledProcessError as e:
        msg = f"❌ Command failed: {cmd_str} (exit code: {e.returncode})"
        if capture_output:
            msg += f"\nStdout:\n{e.stdout}\nStderr:\n{e.stderr}"
        logger.error(msg)
        raise


def get_local_ip() -> str:
    """Get the IP address of the interface used for outbound traffic.

    Returns:
        str: The address, or '127.0.0.1' if detection fails
    """
    try:
        # No packet is sent for a UDP connect
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(("8.8.8.8", 80))
            return s.getsockname()[0]
        finally:
            s.close()
    except OSError as e:
        logger.warning(f"Failed to detect local IP: {e}")
        return '127.0.0.1'


def parse_env_file(content: str) -> Dict[str, str]:
    """Parse shell-style ``KEY=value`` lines such as ``/etc/os-release``."""
    values = dotenv_values(stream=io.StringIO(content), interpolate=False)
    return {key: value for key, value in values.items() if value is not None}
