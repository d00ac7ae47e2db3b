from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

from ..core.utils import U


class MountTool:
    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def mount(
        self,
        dev: str,
        target: Path,
        *,
        fs_type: Optional[str] = None,
        read_only: bool = False,
        options: Optional[List[str]] = None,
    ) -> None:
        U.ensure_dir(target)
        cmd = ["mount"]
        if fs_type:
            cmd += ["-t", fs_type]
        opts = list(options or [])
        if read_only:
            opts.insert(0, "ro")
        if opts:
            cmd += ["-o", ",".join(opts)]
        cmd += [dev, str(target)]
        U.run_cmd(self.logger, cmd, check=True, capture=True)

    def bind(self, src: str, target: Path) -> None:
        U.ensure_dir(target)
        U.run_cmd(self.logger, ["mount", "--bind", src, str(target)], check=True, capture=True)

    def unmount(self, target: str, *, force: bool = False) -> None:
        """Unmount; falls back to a lazy unmount when the filesystem is busy."""
        cmd = ["umount"] + (["-f"] if force else []) + [str(target)]
        try:
            U.run_cmd(self.logger, cmd, check=True, capture=True)
        except subprocess.CalledProcessError as e:
            self.logger.debug(f"umount {target} failed ({U.cmd_error(e)}); trying lazy unmount")
            U.run_cmd(self.logger, ["umount", "-l", str(target)], check=True, capture=True)

    def is_mounted(self, target: Path) -> bool:
        return os.path.ismount(str(target))
