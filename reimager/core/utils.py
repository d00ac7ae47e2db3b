from __future__ import annotations
import contextlib
import datetime as _dt
import json
import logging
import os
import shlex
import shutil
import stat
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from rich.console import Console

from .exceptions import Fatal


class U:
    @staticmethod
    def die(logger: logging.Logger, msg: str, code: int = 1) -> None:
        logger.error(msg)
        raise Fatal(code, msg)
    @staticmethod
    def ensure_dir(p: Path, mode: Optional[int] = None) -> None:
        p.mkdir(parents=True, exist_ok=True)
        if mode is not None:
            os.chmod(p, mode)
    @staticmethod
    def write_file(p: Path, text: str, mode: int = 0o644) -> Path:
        """Write through a sibling temp file so a crash never leaves half a config behind."""
        U.ensure_dir(p.parent)
        tmp = p.with_name(f".{p.name}.reimager-tmp")
        tmp.write_text(text, encoding="utf-8")
        os.chmod(tmp, mode)
        os.replace(tmp, p)
        return p
    @staticmethod
    def which(prog: str) -> Optional[str]:
        return shutil.which(prog)
    @staticmethod
    def now_ts() -> str:
        return _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
    @staticmethod
    def json_dump(obj: Any) -> str:
        return json.dumps(obj, indent=2, sort_keys=True, default=str)
    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ("B", "KiB", "MiB", "GiB"):
            if abs(x) < 1024:
                return f"{x:.1f} {unit}" if unit != "B" else f"{int(x)} B"
            x /= 1024
        return f"{x:.1f} TiB"
    @staticmethod
    def banner(logger: logging.Logger, title: str) -> None:
        logger.info(f"══ {title} " + "═" * max(4, 60 - len(title)))
    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        pretty = " ".join(shlex.quote(x) for x in cmd)
        logger.debug(f"$ {pretty}")
        try:
            cp = subprocess.run(cmd, check=check, capture_output=capture, text=True, env=env, timeout=timeout)
        except subprocess.CalledProcessError as e:
            logger.debug(f"exit {e.returncode}: {pretty}\nstdout: {e.stdout}\nstderr: {e.stderr}")
            raise
        except subprocess.TimeoutExpired:
            logger.debug(f"timed out after {timeout}s: {pretty}")
            raise
        except OSError as e:
            logger.debug(f"cannot execute {cmd[0]}: {e}")
            raise
        if cp.returncode != 0:
            logger.debug(f"exit {cp.returncode} (ignored): {pretty}")
        return cp
    @staticmethod
    def cmd_error(e: BaseException) -> str:
        """Short description of a failed command for error messages."""
        if isinstance(e, subprocess.CalledProcessError):
            tail = U.to_text(e.stderr or e.stdout).strip().splitlines()[-3:]
            return f"exit {e.returncode}: {' | '.join(tail)}" if tail else f"exit {e.returncode}"
        return f"{type(e).__name__}: {e}"
    @staticmethod
    def is_block_device(p: str) -> bool:
        try:
            return stat.S_ISBLK(os.stat(p).st_mode)
        except OSError:
            return False
    @staticmethod
    def safe_unlink(p: Path) -> None:
        try:
            p.unlink()
        except FileNotFoundError:
            pass
    @staticmethod
    def to_text(x: Any) -> str:
        if x is None:
            return ""
        if isinstance(x, bytes):
            return x.decode("utf-8", "replace")
        return str(x)


@contextlib.contextmanager
def blinking_progress(logger: logging.Logger, label: str) -> Iterator[None]:
    """Spinner on a terminal, a single log line otherwise; for quiet long-running commands."""
    if not sys.stderr.isatty():
        logger.info(f"{label} ...")
        yield
        return
    with Console(stderr=True).status(label, spinner="dots"):
        yield
    logger.info(f"✅ {label}")
