"""
Simple subprocess isolation backend.

This is a fallback for development environments where neither Docker nor
Bubblewrap is available. Programs run as plain child processes in a
temporary workspace with rlimits only.

WARNING: This provides NO filesystem or network isolation and should ONLY be
used for development and tests.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from execution_engine.infrastructure.isolation.local import (
    LocalIsolationBackend,
    LocalSandbox,
)
from execution_engine.infrastructure.logging import get_logger

logger = get_logger(__name__)

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin"


class SubprocessSandbox(LocalSandbox):
    """Runs commands directly on the host inside the workspace directory."""

    def build_command(
        self,
        command: List[str],
        env: Dict[str, str],
        working_directory: str,
    ) -> Tuple[List[str], Dict[str, str], str]:
        process_env = {
            "PATH": os.environ.get("PATH", DEFAULT_PATH),
            "HOME": str(self.workspace),
            "TMPDIR": str(self.workspace),
        }
        process_env.update(env)
        cwd = Path(self.workspace, working_directory)
        return list(command), process_env, str(cwd)


class SubprocessIsolationBackend(LocalIsolationBackend):
    """
    Development-only backend.

    Enforces the memory ceiling only; process count and CPU share are not
    enforced.
    """

    name = "subprocess"
    sandbox_class = SubprocessSandbox

    def __init__(self, workspace_root: Optional[str] = None):
        super().__init__(workspace_root)
        logger.warning(
            "SubprocessIsolationBackend initialized - NO SECURITY ISOLATION",
            workspace_root=workspace_root,
        )

    def is_available(self) -> bool:
        return os.name == "posix"
