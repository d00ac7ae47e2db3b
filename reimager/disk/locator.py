from __future__ import annotations

import logging
import re
from typing import Callable, List, Optional

from ..core.context import MIN_DISK_BYTES, TargetDisk
from ..core.exceptions import DiskNotFound, DiskTooSmall
from ..core.utils import U
from ..system.disk_tools import FilesystemInspector

FALLBACK_DISKS = ["/dev/sda", "/dev/nvme0n1", "/dev/vda", "/dev/xvda"]

RE_SUBVOL = re.compile(r"\[.*\]$")
RE_PART_P = re.compile(r"^(/dev/(?:nvme\d+n\d+|mmcblk\d+|loop\d+|nbd\d+))(?:p\d+)?$")
RE_PART_DIGITS = re.compile(r"^(/dev/(?:sd|vd|xvd|hd)[a-z]+)\d*$")


def parent_disk(source: str) -> Optional[str]:
    """
    Parent disk of a partition device path.

      /dev/nvme0n1p2 -> /dev/nvme0n1
      /dev/mmcblk0p1 -> /dev/mmcblk0
      /dev/sda1      -> /dev/sda
      /dev/vdb       -> /dev/vdb
      /dev/sda2[/@]  -> /dev/sda

    None when the name follows no known scheme.
    """
    s = RE_SUBVOL.sub("", (source or "").strip())
    for rx in (RE_PART_P, RE_PART_DIGITS):
        m = rx.match(s)
        if m:
            return m.group(1)
    return None


def is_mapper(source: str) -> bool:
    return source.startswith("/dev/mapper/") or source.startswith("/dev/dm-")


class DiskLocator:
    """Finds the disk that holds the running system's root filesystem."""

    def __init__(
        self,
        logger: logging.Logger,
        inspector: FilesystemInspector,
        *,
        fallbacks: Optional[List[str]] = None,
        min_bytes: int = MIN_DISK_BYTES,
    ):
        self.logger = logger
        self.inspector = inspector
        self.fallbacks = list(FALLBACK_DISKS if fallbacks is None else fallbacks)
        self.min_bytes = min_bytes

    def _resolve_mapper(self, source: str) -> Optional[str]:
        for e in self.inspector.slaves_of(source):
            if e.type in ("part", "disk"):
                disk = e.path if e.type == "disk" else parent_disk(e.path)
                if disk:
                    self.logger.debug(f"Mapper {source} sits on {e.path}")
                    return disk
        pv = self.inspector.first_pv()
        if pv:
            self.logger.debug(f"Mapper {source}: using first physical volume {pv}")
            return parent_disk(pv)
        return None

    def disk_of(self, source: Optional[str]) -> Optional[str]:
        if not source:
            return None
        return self._resolve_mapper(source) if is_mapper(source) else parent_disk(source)

    def candidate(self) -> Optional[str]:
        src = self.inspector.root_source()
        self.logger.info(f"Root filesystem source: {src or 'unknown'}")
        disk = self.disk_of(src)
        if disk:
            return disk
        for fb in self.fallbacks:
            if self.inspector.is_block_device(fb):
                self.logger.warning(f"Could not derive the boot disk from {src!r}; falling back to {fb}")
                return fb
        return None

    def locate(self) -> TargetDisk:
        U.banner(self.logger, "Locate boot disk")
        dev = self.candidate()
        if not dev:
            raise DiskNotFound(msg="Boot disk could not be determined from the root mount or the fallback list")
        if not self.inspector.is_block_device(dev):
            raise DiskNotFound(msg=f"{dev} is not a block device", context={"device": dev})
        size = self.inspector.disk_size(dev)
        disk = TargetDisk(device=dev, size_bytes=size, table_kind=self.inspector.table_kind(dev))
        self.logger.info(f"Boot disk: {dev} ({U.human_bytes(size)}, table={disk.table_kind or 'none'})")
        return disk

    def check_size(self, disk: TargetDisk, *, allow_small: bool = False, confirm: Optional[Callable[[str], bool]] = None) -> None:
        """Exactly the minimum is accepted; below it needs an explicit override."""
        if disk.size_bytes >= self.min_bytes:
            return
        msg = f"Disk {disk.device} is {U.human_bytes(disk.size_bytes)}, below the {U.human_bytes(self.min_bytes)} minimum"
        if allow_small:
            self.logger.warning(msg + " (continuing: override given)")
            return
        if confirm is not None and confirm(msg + ". Continue anyway?"):
            self.logger.warning(msg + " (continuing: operator confirmed)")
            return
        raise DiskTooSmall(msg=msg, context={"device": disk.device, "size": disk.size_bytes})
