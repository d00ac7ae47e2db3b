from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Optional

from rich.progress import Progress, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn, TransferSpeedColumn

from ..core.exceptions import ChecksumMismatch, ValidationError

RE_SHA256 = re.compile(r"^[0-9a-f]{64}$")
BLOCK = 1024 * 1024


class ChecksumVerifier:
    def __init__(self, logger: logging.Logger, *, show_progress: bool = True):
        self.logger = logger
        self.show_progress = show_progress

    @staticmethod
    def normalize(value: Optional[str]) -> Optional[str]:
        """
        Accepts "<hex>", "sha256:<hex>" and sha256sum output "<hex>  <file>".
        Empty input means "no checksum".
        """
        if value is None:
            return None
        s = value.strip().lower()
        if not s:
            return None
        if s.startswith("sha256:"):
            s = s[len("sha256:"):]
        s = s.split()[0]
        if not RE_SHA256.match(s):
            raise ValidationError(msg=f"Not a SHA-256 hex digest: {value!r}")
        return s

    def compute(self, path: Path) -> str:
        h = hashlib.sha256()
        total = path.stat().st_size
        with open(path, "rb") as f:
            if not self.show_progress:
                for blk in iter(lambda: f.read(BLOCK), b""):
                    h.update(blk)
                return h.hexdigest()
            with Progress(
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                TransferSpeedColumn(),
                TimeElapsedColumn(),
                TimeRemainingColumn(),
            ) as progress:
                task = progress.add_task("Computing SHA-256", total=total)
                for blk in iter(lambda: f.read(BLOCK), b""):
                    h.update(blk)
                    progress.update(task, advance=len(blk))
        return h.hexdigest()

    def verify(self, path: Path, expected: str) -> str:
        want = self.normalize(expected)
        got = self.compute(path)
        if got != want:
            raise ChecksumMismatch(
                msg=f"SHA-256 mismatch for {path.name}",
                context={"expected": want, "actual": got},
            )
        self.logger.info(f"SHA-256 verified: {got}")
        return got
