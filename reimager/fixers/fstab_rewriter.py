from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from ..core.context import PartitionSpec
from ..core.exceptions import FstabError
from ..core.utils import U
from ..system.disk_tools import FilesystemInspector

HEADER = "# /etc/fstab: static file system information.\n# Written by reimager; filesystems are referenced by UUID.\n"


class Ident:
    @staticmethod
    def root_options(fs_type: str) -> str:
        return "errors=remount-ro" if fs_type.startswith("ext") else "defaults"


def render_fstab(root_uuid: str, efi_uuid: str, root_fs: str = "ext4") -> str:
    rows = [
        (f"UUID={root_uuid}", "/", root_fs, Ident.root_options(root_fs), "0", "1"),
        (f"UUID={efi_uuid}", "/boot/efi", "vfat", "umask=0077", "0", "1"),
    ]
    lines = [HEADER]
    lines.append("# <file system>\t<mount point>\t<type>\t<options>\t<dump>\t<pass>\n")
    for r in rows:
        lines.append("\t".join(r) + "\n")
    return "".join(lines)


def fstab_sources(text: str) -> List[str]:
    out = []
    for line in text.splitlines():
        s = line.strip()
        if s and not s.startswith("#"):
            out.append(s.split()[0])
    return out


class FstabWriter:
    def __init__(self, logger: logging.Logger, inspector: FilesystemInspector):
        self.logger = logger
        self.inspector = inspector

    def _uuid(self, dev: str) -> str:
        u: Optional[str] = self.inspector.uuid(dev)
        if not u:
            raise FstabError(msg=f"No filesystem UUID on {dev}; refusing to write a device-path fstab", context={"device": dev})
        return u

    def write(self, target_root: Path, spec: PartitionSpec) -> Path:
        root_fs = self.inspector.fs_type(spec.root.device) or spec.root.fs_type
        text = render_fstab(self._uuid(spec.root.device), self._uuid(spec.efi.device), root_fs)
        dst = Path(target_root) / "etc" / "fstab"
        U.write_file(dst, text, 0o644)
        self.logger.info(f"fstab written ({', '.join(fstab_sources(text))})")
        return dst
