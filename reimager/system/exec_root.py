from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from ..core.utils import U

_SEARCH_PATH = ("usr/sbin", "usr/bin", "sbin", "bin", "usr/local/sbin", "usr/local/bin")


class IsolatedExecRoot:
    """Runs commands with a mounted tree as their filesystem root (chroot)."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def has(self, root: Path, prog: str) -> bool:
        return any((root / d / prog).exists() for d in _SEARCH_PATH)

    def run(self, root: Path, cmd: List[str], *, check: bool = True, capture: bool = True) -> subprocess.CompletedProcess:
        env: Dict[str, str] = {
            "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
            "LANG": "C.UTF-8",
            "HOME": "/root",
        }
        return U.run_cmd(self.logger, ["chroot", str(root)] + cmd, check=check, capture=capture, env=env)

    def first_available(self, root: Path, progs: List[str]) -> Optional[str]:
        for p in progs:
            if self.has(root, p):
                return p
        return None
