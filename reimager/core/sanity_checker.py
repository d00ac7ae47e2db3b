from __future__ import annotations
import logging
import os
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from .context import TargetDisk
from .exceptions import ValidationError
from .utils import U

REQUIRED_TOOLS = [
    "findmnt", "lsblk", "blkid", "blockdev", "parted", "partprobe",
    "mkfs.vfat", "mkfs.ext4", "mount", "umount", "rsync", "dd", "chroot",
]
# at least one of each group
REQUIRED_ANY = [("sgdisk", "wipefs")]
OPTIONAL_TOOLS = ["qemu-img", "qemu-nbd", "modprobe", "losetup", "kpartx", "sfdisk", "e2fsck", "resize2fs", "xfs_growfs", "btrfs", "udevadm"]

# downloaded + converted image must fit
MIN_WORK_FREE = 8 * 1024 ** 3


class SanityChecker:
    def __init__(self, logger: logging.Logger, *, which: Callable[[str], Optional[str]] = U.which):
        self.logger = logger
        self.which = which

    def check_root(self) -> None:
        if os.geteuid() != 0:
            raise ValidationError(msg="reimager must run as root (re-run with sudo)")

    def check_tools(self) -> List[str]:
        """Raises on missing required tools; returns the missing optional ones."""
        missing = [t for t in REQUIRED_TOOLS if self.which(t) is None]
        for group in REQUIRED_ANY:
            if not any(self.which(t) for t in group):
                missing.append(" or ".join(group))
        if missing:
            raise ValidationError(msg=f"Missing required tools: {', '.join(missing)}", context={"missing": missing})
        optional = [t for t in OPTIONAL_TOOLS if self.which(t) is None]
        if optional:
            self.logger.warning(f"Missing optional tools: {', '.join(optional)} (some mount methods or formats will be unavailable)")
        self.logger.info("Tools sanity check passed.")
        return optional

    @staticmethod
    def _existing(path: Path) -> Path:
        while not path.exists() and path != path.parent:
            path = path.parent
        return path

    def check_off_target(self, label: str, option: str, path: Path, disk: TargetDisk, disk_of: Callable[[Optional[str]], Optional[str]], mount_source: Callable[[str], Optional[str]]) -> Optional[str]:
        """Anything that must outlive the wipe has to live on another disk or a tmpfs."""
        src = mount_source(str(self._existing(path)))
        if src and disk_of(src) == disk.device:
            raise ValidationError(
                msg=f"{label} {path} is on the target disk {disk.device}; use {option} on another disk or a tmpfs",
                context={"source": src},
            )
        return src

    def check_work_dir(self, work_dir: Path, disk: TargetDisk, disk_of: Callable[[Optional[str]], Optional[str]], mount_source: Callable[[str], Optional[str]]) -> None:
        """The image must not live on the disk that is about to be wiped."""
        src = self.check_off_target("Work directory", "--work-dir", work_dir, disk, disk_of, mount_source)
        probe = self._existing(work_dir)
        try:
            free = shutil.disk_usage(probe).free
        except OSError as e:
            self.logger.warning(f"Free space check for {probe} failed: {e}")
            return
        if free < MIN_WORK_FREE:
            self.logger.warning(f"Only {U.human_bytes(free)} free under {probe}; large images may not fit")
        else:
            self.logger.info(f"Work directory {work_dir}: {U.human_bytes(free)} free (on {src or 'unknown'})")
