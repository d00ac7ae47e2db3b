from __future__ import annotations
import datetime as _dt
import logging
from typing import List, Optional

from pathlib import Path
from termcolor import colored as _colored

_LEVEL_EMOJI = {
    "DEBUG": "🔍",
    "INFO": "✅",
    "WARNING": "⚠️",
    "ERROR": "💥",
    "CRITICAL": "🧨",
}
_LEVEL_COLOR = {
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}
LOGGER_NAME = "reimager"


def c(text: str, color: Optional[str] = None, attrs: Optional[List[str]] = None) -> str:
    """Colorize text for the terminal."""
    if not color:
        return text
    try:
        return _colored(text, color=color, attrs=attrs or [])
    except Exception:
        return text


class EmojiFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = _dt.datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        emoji = _LEVEL_EMOJI.get(record.levelname, "•")
        lvl = c(record.levelname, _LEVEL_COLOR.get(record.levelname))
        msg = record.getMessage()
        if record.levelno >= logging.WARNING:
            msg = c(msg, _LEVEL_COLOR.get(record.levelname), attrs=["bold"])
        return f"{ts} {emoji} {lvl:<8} {msg}"


class PlainFileFormatter(logging.Formatter):
    """One timestamped line per record; the log outlives the terminal session."""

    def format(self, record: logging.LogRecord) -> str:
        ts = _dt.datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{ts}] {record.levelname:<8} {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class Log:
    @staticmethod
    def setup(verbose: int, log_file: Optional[str]) -> logging.Logger:
        logger = logging.getLogger(LOGGER_NAME)
        logger.handlers.clear()
        logger.propagate = False
        level = logging.DEBUG if verbose >= 2 else logging.INFO
        logger.setLevel(logging.DEBUG)
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(EmojiFormatter())
        logger.addHandler(sh)
        if log_file:
            fp = Path(log_file).expanduser().resolve()
            fp.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(fp, mode="a", encoding="utf-8")
            # the file keeps every external command even without -vv
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(PlainFileFormatter())
            logger.addHandler(fh)
        logger.debug("Logger initialized")
        return logger

    @staticmethod
    def log_file_of(logger: logging.Logger) -> Optional[Path]:
        for h in logger.handlers:
            if isinstance(h, logging.FileHandler):
                return Path(h.baseFilename)
        return None
