"""Access to the machine being bootstrapped.

Every command, file and download the orchestrator touches goes through a
``Host``. Paths are given as they appear on the machine (``/etc/...``) and
are resolved under ``root``, which is ``/`` outside of tests.
"""

import glob
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional

import requests

from k3sctl.utils import run_command

logger = logging.getLogger("k3sctl.host")

SEARCH_PATH = (
    '/usr/local/sbin', '/usr/local/bin', '/usr/sbin', '/usr/bin', '/sbin', '/bin'
)


@dataclass
class CommandResult:
    """Exit status and output of a finished command."""
    args: List[str]
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandError(RuntimeError):
    """Raised when a checked command exits non-zero."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with status {result.returncode}: {' '.join(result.args)}"
        if result.stderr.strip():
            message += f"\n{result.stderr.strip()}"
        super().__init__(message)
        self.result = result


class Host:
    """The local machine, rooted at ``root``."""

    def __init__(self, root: str = '/', command_timeout: Optional[float] = 900):
        self.root = Path(root)
        self.command_timeout = command_timeout

    # Filesystem

    def path(self, path: str) -> Path:
        return self.root / path.lstrip('/')

    def exists(self, path: str) -> bool:
        p = self.path(path)
        return p.exists() or p.is_symlink()

    def is_symlink(self, path: str) -> bool:
        return self.path(path).is_symlink()

    def read_text(self, path: str) -> Optional[str]:
        """Return the file contents, or ``None`` when it does not exist."""
        try:
            return self.path(path).read_text(encoding='utf-8')
        except FileNotFoundError:
            return None

    def write_text(self, path: str, content: str, mode: int = 0o644) -> None:
        target = self.path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding='utf-8')
        os.chmod(target, mode)
        logger.debug(f"Wrote {path}")

    def remove(self, path: str) -> bool:
        """Remove a file, symlink or directory tree.

        Returns:
            bool: False when there was nothing to remove
        """
        target = self.path(path)
        if target.is_symlink() or target.is_file():
            target.unlink()
        elif target.is_dir():
            shutil.rmtree(target)
        elif not target.exists():
            return False
        else:
            target.unlink()
        logger.debug(f"Removed {path}")
        return True

    def glob(self, pattern: str) -> List[str]:
        """Expand ``pattern`` on the host, returning host paths."""
        root = str(self.root).rstrip('/')
        matches = glob.glob(str(self.path(pattern)))
        return sorted('/' + os.path.relpath(m, root or '/').lstrip('/') for m in matches)

    # Processes

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def which(self, name: str) -> Optional[str]:
        search = os.pathsep.join(str(self.path(p)) for p in SEARCH_PATH)
        found = shutil.which(name, path=search)
        if found is None:
            return None
        return '/' + os.path.relpath(found, str(self.root)).lstrip('/')

    def run(
        self,
        args: List[str],
        *,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
        check: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command, capturing its output.

        Raises:
            CommandError: If ``check`` is set and the command fails
        """
        try:
            proc = run_command(
                args,
                check=False,
                capture_output=True,
                env=env,
                input=input,
                timeout=timeout or self.command_timeout,
            )
            result = CommandResult(args, proc.returncode, proc.stdout or '', proc.stderr or '')
        except FileNotFoundError:
            result = CommandResult(args, 127, '', f"{args[0]}: command not found")
        except subprocess.TimeoutExpired:
            result = CommandResult(args, 124, '', f"{args[0]}: timed out")

        if check and not result.ok:
            raise CommandError(result)
        return result

    def fetch(self, url: str, proxies: Optional[Mapping[str, str]] = None, timeout: float = 60) -> str:
        """Download a text resource such as an installer script."""
        logger.debug(f"Downloading {url}")
        response = requests.get(url, proxies=dict(proxies) if proxies else None, timeout=timeout)
        response.raise_for_status()
        return response.text
