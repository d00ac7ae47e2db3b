from __future__ import annotations
import json
import logging
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.progress import Progress, TextColumn, BarColumn, TimeElapsedColumn, TimeRemainingColumn

from ..core.utils import U

RE_QEMU_PROGRESS = re.compile(r"\((\d+\.\d+)/100\%\)")


class ImageConverter:
    """qemu-img and sfdisk queries against image files."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def available(self) -> bool:
        return U.which("qemu-img") is not None

    def info(self, path: Path) -> Dict[str, Any]:
        cp = U.run_cmd(self.logger, ["qemu-img", "info", "--output=json", str(path)], check=True, capture=True)
        return json.loads(cp.stdout)

    def disk_format(self, path: Path) -> str:
        return str(self.info(path).get("format") or "")

    def convert(self, src: Path, dst: Path, *, src_format: Optional[str] = None, out_format: str = "raw") -> None:
        U.ensure_dir(dst.parent)
        cmd = ["qemu-img", "convert", "-p"]
        if src_format:
            cmd += ["-f", src_format]
        cmd += ["-O", out_format, str(src), str(dst)]
        self.logger.info(f"Converting: {src} -> {dst} ({src_format or '?'} -> {out_format})")
        self.logger.debug(f"Executing conversion command: {' '.join(cmd)}")
        start = time.time()
        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, universal_newlines=True)
        assert process.stdout is not None
        assert process.stderr is not None
        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def read_stderr():
            for line in process.stderr:
                stderr_lines.append(line.strip())
        t = threading.Thread(target=read_stderr, daemon=True)
        t.start()
        with Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
        ) as progress:
            task = progress.add_task("Converting", total=100)
            # qemu-img -p writes "(NN.NN/100%)" with carriage returns to stdout
            buf = ""
            while True:
                ch = process.stdout.read(1)
                if not ch:
                    break
                if ch in "\r\n":
                    m = RE_QEMU_PROGRESS.search(buf)
                    if m:
                        progress.update(task, completed=float(m.group(1)))
                    elif buf.strip():
                        stdout_lines.append(buf.strip())
                    buf = ""
                else:
                    buf += ch
        process.wait()
        t.join(timeout=5)
        if process.returncode != 0:
            self.logger.error("stderr output:\n" + "\n".join(stderr_lines))
            raise subprocess.CalledProcessError(process.returncode, cmd, "\n".join(stdout_lines), "\n".join(stderr_lines))
        self.logger.info(f"Conversion finished in {time.time() - start:.1f}s: {dst} ({U.human_bytes(dst.stat().st_size)})")

    def partition_table(self, path: Path) -> Optional[Dict[str, Any]]:
        """sfdisk -J of an image file, None when it has no partition table."""
        cp = U.run_cmd(self.logger, ["sfdisk", "-J", str(path)], check=False, capture=True)
        if cp.returncode != 0 or not cp.stdout.strip():
            return None
        return json.loads(cp.stdout).get("partitiontable")
