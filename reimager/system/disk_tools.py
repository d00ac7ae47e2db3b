from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.utils import U


@dataclass
class BlockEntry:
    """One node of an lsblk tree."""
    path: str
    type: str
    fstype: Optional[str] = None
    mountpoint: Optional[str] = None
    size: int = 0
    children: List["BlockEntry"] = field(default_factory=list)

    @classmethod
    def from_lsblk(cls, d: Dict[str, Any]) -> "BlockEntry":
        mp = d.get("mountpoint")
        if mp is None and d.get("mountpoints"):
            mp = next((m for m in d["mountpoints"] if m), None)
        return cls(
            path=d.get("path") or d.get("name") or "",
            type=d.get("type") or "",
            fstype=d.get("fstype") or None,
            mountpoint=mp or None,
            size=int(d.get("size") or 0),
            children=[cls.from_lsblk(c) for c in d.get("children") or []],
        )

    def walk(self):
        yield self
        for ch in self.children:
            yield from ch.walk()


class FilesystemInspector:
    """Read-only queries: blkid, lsblk, blockdev, findmnt, pvs."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def root_source(self) -> Optional[str]:
        try:
            cp = U.run_cmd(self.logger, ["findmnt", "-n", "-o", "SOURCE", "/"], check=True, capture=True)
        except (subprocess.CalledProcessError, OSError):
            return None
        src = cp.stdout.strip().splitlines()
        return src[0].strip() if src else None

    def mount_source(self, path: str) -> Optional[str]:
        try:
            cp = U.run_cmd(self.logger, ["findmnt", "-n", "-o", "SOURCE", "--target", path], check=True, capture=True)
        except (subprocess.CalledProcessError, OSError):
            return None
        src = cp.stdout.strip().splitlines()
        return src[0].strip() if src else None

    def is_block_device(self, dev: str) -> bool:
        return U.is_block_device(dev)

    def disk_size(self, dev: str) -> int:
        cp = U.run_cmd(self.logger, ["blockdev", "--getsize64", dev], check=True, capture=True)
        return int(cp.stdout.strip())

    def _blkid_value(self, dev: str, tag: str) -> Optional[str]:
        cp = U.run_cmd(self.logger, ["blkid", "-o", "value", "-s", tag, dev], check=False, capture=True)
        val = (cp.stdout or "").strip()
        return val or None

    def table_kind(self, dev: str) -> Optional[str]:
        return self._blkid_value(dev, "PTTYPE")

    def fs_type(self, dev: str) -> Optional[str]:
        return self._blkid_value(dev, "TYPE")

    def uuid(self, dev: str) -> Optional[str]:
        return self._blkid_value(dev, "UUID")

    def tree(self, dev: str) -> Optional[BlockEntry]:
        cp = U.run_cmd(
            self.logger,
            ["lsblk", "-J", "-b", "-p", "-o", "NAME,PATH,TYPE,FSTYPE,MOUNTPOINT,SIZE", dev],
            check=False,
            capture=True,
        )
        if cp.returncode != 0 or not cp.stdout.strip():
            return None
        devs = json.loads(cp.stdout).get("blockdevices") or []
        return BlockEntry.from_lsblk(devs[0]) if devs else None

    def partitions(self, dev: str) -> List[BlockEntry]:
        """Partitions of dev in table order (device-mapper partitions included)."""
        t = self.tree(dev)
        if t is None:
            return []
        return [e for e in t.walk() if e is not t and e.type in ("part", "dm")]

    def mounted_under(self, dev: str) -> List[str]:
        t = self.tree(dev)
        if t is None:
            return []
        mps = [e.mountpoint for e in t.walk() if e.mountpoint and e.mountpoint != "[SWAP]"]
        # deepest first
        return sorted(mps, key=lambda m: m.count("/"), reverse=True)

    def slaves_of(self, dev: str) -> List[BlockEntry]:
        """Inverse dependencies of a mapper device, nearest first."""
        cp = U.run_cmd(self.logger, ["lsblk", "-s", "-J", "-p", "-o", "NAME,PATH,TYPE", dev], check=False, capture=True)
        if cp.returncode != 0 or not cp.stdout.strip():
            return []
        devs = json.loads(cp.stdout).get("blockdevices") or []
        if not devs:
            return []
        top = BlockEntry.from_lsblk(devs[0])
        return [e for e in top.walk() if e is not top]

    def first_pv(self) -> Optional[str]:
        cp = U.run_cmd(self.logger, ["pvs", "--noheadings", "-o", "pv_name"], check=False, capture=True)
        for line in (cp.stdout or "").splitlines():
            if line.strip():
                return line.strip()
        return None

    def node_exists(self, path: str) -> bool:
        return os.path.exists(path)


class PartitionTool:
    """Partition table writes: sgdisk, wipefs, parted, partprobe."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def wipe(self, disk: str) -> None:
        try:
            U.run_cmd(self.logger, ["sgdisk", "-Z", disk], check=True, capture=True)
        except (subprocess.CalledProcessError, OSError) as e:
            self.logger.warning(f"sgdisk -Z failed ({U.cmd_error(e)}); falling back to wipefs")
            U.run_cmd(self.logger, ["wipefs", "-a", disk], check=True, capture=True)

    def make_label(self, disk: str, label: str = "gpt") -> None:
        U.run_cmd(self.logger, ["parted", "-s", disk, "mklabel", label], check=True, capture=True)

    def make_partition(self, disk: str, fs_type: str, start: str, end: str) -> None:
        parted_fs = "fat32" if fs_type == "vfat" else fs_type
        U.run_cmd(self.logger, ["parted", "-s", disk, "mkpart", "primary", parted_fs, start, end], check=True, capture=True)

    def set_flag(self, disk: str, number: int, flag: str) -> None:
        U.run_cmd(self.logger, ["parted", "-s", disk, "set", str(number), flag, "on"], check=True, capture=True)

    def reread(self, disk: str) -> None:
        """Ask the kernel to re-read the table; never raises."""
        cp = U.run_cmd(self.logger, ["partprobe", disk], check=False, capture=True)
        if cp.returncode != 0:
            U.run_cmd(self.logger, ["blockdev", "--rereadpt", disk], check=False, capture=True)
        if U.which("udevadm"):
            U.run_cmd(self.logger, ["udevadm", "settle", "--timeout=5"], check=False, capture=True)

    def node_exists(self, path: str) -> bool:
        return os.path.exists(path)


class FormatTool:
    """mkfs and filesystem repair/grow tools."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def mkfs(self, dev: str, fs_type: str) -> None:
        if fs_type == "vfat":
            cmd = ["mkfs.vfat", "-F", "32", dev]
        elif fs_type in ("ext4", "ext3", "ext2"):
            cmd = [f"mkfs.{fs_type}", "-F", dev]
        else:
            cmd = [f"mkfs.{fs_type}", "-f", dev]
        U.run_cmd(self.logger, cmd, check=True, capture=True)

    def check_ext(self, dev: str) -> None:
        # e2fsck exit codes 1 and 2 mean "errors corrected"
        cp = U.run_cmd(self.logger, ["e2fsck", "-f", "-y", dev], check=False, capture=True)
        if cp.returncode not in (0, 1, 2):
            raise subprocess.CalledProcessError(cp.returncode, cp.args, cp.stdout, cp.stderr)

    def grow_ext(self, dev: str) -> None:
        U.run_cmd(self.logger, ["resize2fs", dev], check=True, capture=True)

    def grow_xfs(self, mountpoint: str) -> None:
        U.run_cmd(self.logger, ["xfs_growfs", mountpoint], check=True, capture=True)

    def grow_btrfs(self, mountpoint: str) -> None:
        U.run_cmd(self.logger, ["btrfs", "filesystem", "resize", "max", mountpoint], check=True, capture=True)
