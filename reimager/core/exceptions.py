# reimager/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


@dataclass(eq=False)
class ReimageError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what operators see)
      - safe code handling (never crashes on int())
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _safe_int(self.code, default=1)
        self.msg = _one_line(self.msg)
        super().__init__(self.msg)

    def with_context(self, **ctx: Any) -> "ReimageError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        base = self.msg or self.__class__.__name__
        parts = [base]
        if include_context and self.context:
            kv = ", ".join(f"{k}={self.context[k]!r}" for k in sorted(self.context.keys()))
            parts.append(f"[{kv}]")
        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")
        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": self.context or {},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(ReimageError):
    """
    Stops the pipeline (exit code is honored by top-level main()).
    """
    pass


# --- pre-flight / selection -------------------------------------------------

@dataclass(eq=False)
class ValidationError(Fatal):
    code: int = 2
    msg: str = "validation failed"


@dataclass(eq=False)
class DiskNotFound(ValidationError):
    code: int = 3
    msg: str = "boot disk could not be determined"


@dataclass(eq=False)
class DiskTooSmall(ValidationError):
    code: int = 4
    msg: str = "boot disk is below the minimum size"


# --- image acquisition -------------------------------------------------------

@dataclass(eq=False)
class DownloadError(Fatal):
    code: int = 10
    msg: str = "image download failed"


@dataclass(eq=False)
class ChecksumMismatch(Fatal):
    code: int = 11
    msg: str = "image checksum mismatch"


@dataclass(eq=False)
class UnsupportedFormat(Fatal):
    code: int = 12
    msg: str = "unsupported image container format"


# --- disk layout -------------------------------------------------------------

@dataclass(eq=False)
class PartitionError(Fatal):
    code: int = 20
    msg: str = "partitioning failed"


@dataclass(eq=False)
class PartitionTimeout(PartitionError):
    code: int = 21
    msg: str = "partition device nodes did not appear"


# --- mount chain / transfer --------------------------------------------------

@dataclass(eq=False)
class MountStrategyFailure(ReimageError):
    """One mount method failed; the chain moves on to the next one."""
    code: int = 30
    msg: str = "mount method failed"


@dataclass(eq=False)
class NoMountStrategyAvailable(Fatal):
    code: int = 31
    msg: str = "every mount method failed"


@dataclass(eq=False)
class TransferError(Fatal):
    code: int = 40
    msg: str = "filesystem transfer failed"


# --- boot configuration ------------------------------------------------------

@dataclass(eq=False)
class FstabError(Fatal):
    code: int = 45
    msg: str = "cannot write UUID based fstab"


@dataclass(eq=False)
class BootloaderWarning(ReimageError):
    """Recorded in the bootloader report, never raised out of the installer."""
    code: int = 50
    msg: str = "bootloader step failed"


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, ReimageError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )
    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
