from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Sequence

from ..core.utils import U


class Archiver:
    """Bulk data movers: rsync for trees, dd for block ranges."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def copy_tree(self, src: Path, dst: Path, excludes: Sequence[str] = ()) -> None:
        # trailing slash: copy the contents, not the directory itself
        cmd: List[str] = ["rsync", "-aAXH", "--numeric-ids"]
        for ex in excludes:
            cmd += ["--exclude", ex]
        cmd += [f"{str(src).rstrip('/')}/", f"{str(dst).rstrip('/')}/"]
        U.run_cmd(self.logger, cmd, check=True, capture=True)

    def block_copy(self, src: Path, dst: str, *, offset: int = 0, length: int = 0) -> None:
        cmd = ["dd", f"if={src}", f"of={dst}", "bs=4M", "conv=fsync", "status=none"]
        flags = []
        if offset:
            cmd.append(f"skip={offset}")
            flags.append("skip_bytes")
        if length:
            cmd.append(f"count={length}")
            flags.append("count_bytes")
        if flags:
            cmd.append(f"iflag={','.join(flags)}")
        U.run_cmd(self.logger, cmd, check=True, capture=True)
