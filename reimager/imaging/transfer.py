from __future__ import annotations

import logging
import subprocess
from typing import List, Optional

from ..core.context import MountResult
from ..core.exceptions import TransferError
from ..core.utils import U, blinking_progress
from ..system.archiver import Archiver

# pseudo and volatile trees are never copied, only their mount points
EXCLUDES = ["/dev/*", "/proc/*", "/sys/*", "/tmp/*", "/run/*", "/mnt/*"]


class FilesystemTransfer:
    def __init__(self, logger: logging.Logger, archiver: Archiver, *, extra_excludes: Optional[List[str]] = None):
        self.logger = logger
        self.archiver = archiver
        self.excludes = EXCLUDES + list(extra_excludes or [])

    def transfer(self, result: MountResult) -> None:
        if not result.needs_transfer:
            self.logger.info(f"Mount method {result.method} wrote the root filesystem directly; no copy needed")
            return
        assert result.source_mount is not None
        U.banner(self.logger, "Copy root filesystem")
        self.logger.info(f"Copying {result.source_mount} -> {result.target_mount}")
        try:
            with blinking_progress(self.logger, "rsync root filesystem"):
                self.archiver.copy_tree(result.source_mount, result.target_mount, self.excludes)
        except (subprocess.CalledProcessError, OSError) as e:
            raise TransferError(msg=f"Copying the root filesystem failed: {U.cmd_error(e)}", cause=e)
        finally:
            if result.session is not None:
                result.session.close()
        self.logger.info("Root filesystem copied")
