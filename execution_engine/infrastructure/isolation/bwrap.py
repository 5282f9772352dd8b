"""
Bubblewrap Isolation Backend

Runs each command inside a fresh set of Linux namespaces created by
Bubblewrap. The host toolchain is mounted read-only, the workspace is the
only writable bind mount and the network namespace is unshared unless the
run installs dependencies.
"""

import shutil
import subprocess
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Tuple

from execution_engine.infrastructure.isolation.local import (
    LocalIsolationBackend,
    LocalSandbox,
)
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

SANDBOX_WORKSPACE = "/workspace"
SANDBOX_PATH = "/usr/local/bin:/usr/bin:/bin"


def check_bwrap_available() -> bool:
    """Check if Bubblewrap is installed and in PATH."""
    return shutil.which("bwrap") is not None


def get_bwrap_version() -> Optional[str]:
    """
    Get the Bubblewrap version.

    Returns:
        Version string (e.g., "0.8.0"), None if it cannot be determined
    """
    try:
        result = subprocess.run(
            ["bwrap", "--version"],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0 or not result.stdout.strip():
        return None
    return result.stdout.strip().split()[-1]


class BubblewrapSandbox(LocalSandbox):
    """Workspace directory whose commands run under bwrap."""

    @property
    def workspace_path(self) -> str:
        return SANDBOX_WORKSPACE

    def base_args(self) -> List[str]:
        """
        Build base Bubblewrap arguments for isolation.

        Returns:
            List of bwrap command arguments
        """
        args = [
            "bwrap",
            # Filesystem isolation
            "--ro-bind", "/usr", "/usr",
            "--ro-bind-try", "/lib", "/lib",
            "--ro-bind-try", "/lib64", "/lib64",
            "--ro-bind-try", "/bin", "/bin",
            "--ro-bind-try", "/sbin", "/sbin",
            "--ro-bind", "/etc", "/etc",
            "--ro-bind-try", "/opt", "/opt",
            # Workspace (writable)
            "--bind", str(self.workspace), SANDBOX_WORKSPACE,
            # Temporary directory (tmpfs)
            "--tmpfs", "/tmp",
            # Minimal /proc and /dev
            "--proc", "/proc",
            "--dev", "/dev",
            # Namespace isolation
            "--unshare-all",
            # Process management
            "--die-with-parent",
            "--new-session",
            # Environment
            "--clearenv",
            "--setenv", "PATH", SANDBOX_PATH,
            "--setenv", "HOME", SANDBOX_WORKSPACE,
            "--setenv", "TMPDIR", "/tmp",
            # Security
            "--cap-drop", "ALL",
        ]
        if self.network:
            args.append("--share-net")
        return args

    def build_command(
        self,
        command: List[str],
        env: Dict[str, str],
        working_directory: str,
    ) -> Tuple[List[str], Dict[str, str], str]:
        argv = self.base_args()
        for key, value in env.items():
            argv.extend(["--setenv", key, value])
        chdir = PurePosixPath(SANDBOX_WORKSPACE, working_directory)
        argv.extend(["--chdir", str(chdir), "--", *command])
        return argv, {"PATH": SANDBOX_PATH}, str(self.workspace)


class BubblewrapIsolationBackend(LocalIsolationBackend):
    """
    Bubblewrap-based backend.

    Filesystem, PID, IPC, UTS and network namespaces are unshared per
    command. Memory is bounded with rlimits; process count and CPU share are
    not enforced.
    """

    name = "bwrap"
    sandbox_class = BubblewrapSandbox

    def is_available(self) -> bool:
        if not check_bwrap_available():
            return False
        logger.debug("Bubblewrap available", version=get_bwrap_version())
        return True
