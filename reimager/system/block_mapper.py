from __future__ import annotations

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import List

from ..core.utils import U

# "add map loop0p1 (253:3): 0 2048 linear 7:0 2048"
RE_KPARTX_ADD = re.compile(r"^add map (\S+)\s")


class BlockMapper:
    """Exposes image files as block devices: qemu-nbd, losetup, kpartx."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    # --- nbd --------------------------------------------------------------------

    def load_nbd(self, max_part: int = 8) -> None:
        cp = U.run_cmd(self.logger, ["modprobe", "nbd", f"max_part={max_part}"], check=False, capture=True)
        if cp.returncode != 0:
            self.logger.debug(f"modprobe nbd failed: {cp.stderr.strip()}")

    def nbd_slot_free(self, dev: str) -> bool:
        """A slot is free when its node is missing or a disconnect on it succeeds."""
        if not os.path.exists(dev):
            return True
        sysfs_pid = Path("/sys/block") / Path(dev).name / "pid"
        if sysfs_pid.exists():
            return False
        cp = U.run_cmd(self.logger, ["qemu-nbd", "-d", dev], check=False, capture=True)
        return cp.returncode == 0

    def nbd_connect(self, dev: str, image: Path, fmt: str = "raw") -> None:
        U.run_cmd(self.logger, ["qemu-nbd", "-f", fmt, "-c", dev, str(image)], check=True, capture=True)

    def nbd_disconnect(self, dev: str) -> None:
        U.run_cmd(self.logger, ["qemu-nbd", "-d", dev], check=True, capture=True)

    # --- loop + kpartx ------------------------------------------------------------

    def loop_attach(self, image: Path) -> str:
        # --find --show attaches and names the device in one step
        cp = U.run_cmd(self.logger, ["losetup", "--find", "--show", str(image)], check=True, capture=True)
        dev = cp.stdout.strip()
        if not dev:
            raise subprocess.CalledProcessError(0, cp.args, cp.stdout, "losetup printed no device")
        return dev

    def loop_detach(self, dev: str) -> None:
        U.run_cmd(self.logger, ["losetup", "-d", dev], check=True, capture=True)

    def kpartx_add(self, dev: str) -> List[str]:
        cp = U.run_cmd(self.logger, ["kpartx", "-av", dev], check=True, capture=True)
        out: List[str] = []
        for line in cp.stdout.splitlines():
            m = RE_KPARTX_ADD.match(line.strip())
            if m:
                out.append(f"/dev/mapper/{m.group(1)}")
        return out

    def kpartx_delete(self, dev: str) -> None:
        U.run_cmd(self.logger, ["kpartx", "-d", dev], check=True, capture=True)

    def loops_backed_by(self, directory: Path) -> List[str]:
        """Loop devices whose backing file lives under directory."""
        cp = U.run_cmd(self.logger, ["losetup", "-J", "-l"], check=False, capture=True)
        if cp.returncode != 0 or not cp.stdout.strip():
            return []
        prefix = str(directory.resolve()).rstrip("/") + "/"
        out = []
        for d in json.loads(cp.stdout).get("loopdevices") or []:
            back = d.get("back-file") or ""
            if back.startswith(prefix):
                out.append(d.get("name"))
        return [d for d in out if d]
