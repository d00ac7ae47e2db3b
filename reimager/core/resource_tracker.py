from __future__ import annotations

import atexit
import logging
import os
import shutil
import signal
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple


class ResourceKind(str, Enum):
    MOUNT = "mount"
    BIND = "bind"
    NBD = "nbd"
    LOOP = "loop"
    MAPPING = "mapping"
    TEMP_DIR = "temp_dir"
    MOUNT_POINT = "mount_point"


@dataclass(eq=False)
class Resource:
    kind: ResourceKind
    handle: str
    release: Callable[[], None]
    label: str = ""
    released: bool = False

    def describe(self) -> str:
        return f"{self.kind.value}:{self.handle}" + (f" ({self.label})" if self.label else "")


class MountSession:
    """
    A named group of resources acquired together.

    Used as a context manager it rolls back (reverse order) when the block
    raises, and keeps its resources when the block succeeds so later stages
    can use them. close() releases them explicitly; it is safe to call twice.
    """

    def __init__(self, tracker: "ResourceTracker", name: str):
        self.tracker = tracker
        self.name = name
        self.resources: List[Resource] = []

    def push(self, kind: ResourceKind, handle: str, release: Callable[[], None], label: str = "") -> Resource:
        r = self.tracker.push(kind, handle, release, label=label or self.name)
        self.resources.append(r)
        return r

    def push_mount_point(self, path: Path) -> Resource:
        r = self.tracker.push_mount_point(path)
        self.resources.append(r)
        return r

    @property
    def active(self) -> List[Resource]:
        return [r for r in self.resources if not r.released]

    def close(self) -> None:
        if not self.active:
            return
        self.tracker.logger.debug(f"Closing session {self.name} ({len(self.active)} resource(s))")
        for r in reversed(self.resources):
            self.tracker.release(r)

    def __enter__(self) -> "MountSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self.tracker.logger.debug(f"Rolling back session {self.name}: {exc_type.__name__}")
            self.close()
        return False


class ResourceTracker:
    """
    Ordered record of every system resource acquired during a run.

    release_all() is the single cleanup entry point. It may run from the
    normal exit path, an exception handler, a signal and atexit, in any
    combination: each resource is released at most once and every release
    action is guarded independently.
    """

    def __init__(self, logger: logging.Logger, protected: Iterable[Path] = ()):
        self.logger = logger
        self._stack: List[Resource] = []
        self._protected: List[Path] = [Path(p).resolve() for p in protected]
        self._sweepers: List[Tuple[str, Callable[[], None]]] = []
        self._lock = threading.RLock()
        self._releasing = False
        self._clean = True
        self._installed = False

    # --- registration ---------------------------------------------------------

    def push(self, kind: ResourceKind, handle: str, release: Callable[[], None], label: str = "") -> Resource:
        r = Resource(kind=kind, handle=handle, release=release, label=label)
        with self._lock:
            self._stack.append(r)
            self._clean = False
        self.logger.debug(f"Tracking {r.describe()}")
        return r

    def push_temp_dir(self, path: Path, label: str = "") -> Resource:
        p = Path(path)
        return self.push(ResourceKind.TEMP_DIR, str(p), lambda: self._remove_tree(p), label=label)

    def push_mount_point(self, path: Path, label: str = "") -> Resource:
        p = Path(path)
        return self.push(ResourceKind.MOUNT_POINT, str(p), lambda: self._remove_empty_dir(p), label=label)

    def session(self, name: str) -> MountSession:
        return MountSession(self, name)

    def protect(self, path: Path) -> None:
        with self._lock:
            self._protected.append(Path(path).resolve())

    def add_sweeper(self, name: str, fn: Callable[[], None]) -> None:
        with self._lock:
            self._sweepers.append((name, fn))
            self._clean = False

    @property
    def active(self) -> List[Resource]:
        with self._lock:
            return [r for r in self._stack if not r.released]

    def is_protected(self, path: Path) -> bool:
        t = Path(path).resolve()
        for p in self._protected:
            if t == p or t in p.parents or p in t.parents:
                return True
        return False

    # --- release ----------------------------------------------------------------

    def release(self, r: Resource) -> None:
        with self._lock:
            if r.released:
                return
            r.released = True
        try:
            r.release()
            self.logger.debug(f"Released {r.describe()}")
        except Exception as e:
            self.logger.warning(f"Cleanup of {r.describe()} failed: {e}")

    def release_handle(self, handle: str, kind: Optional[ResourceKind] = None) -> bool:
        with self._lock:
            matches = [
                r for r in self._stack
                if r.handle == handle and not r.released and (kind is None or r.kind == kind)
            ]
        for r in reversed(matches):
            self.release(r)
        return bool(matches)

    def release_all(self) -> None:
        with self._lock:
            if self._releasing or self._clean:
                return
            self._releasing = True
        saved = self._ignore_signals()
        try:
            pending = self.active
            if pending:
                self.logger.info(f"Releasing {len(pending)} tracked resource(s)")
            for r in reversed(pending):
                self.release(r)
            for name, fn in list(self._sweepers):
                try:
                    fn()
                except Exception as e:
                    self.logger.warning(f"Cleanup sweep {name} failed: {e}")
            with self._lock:
                self._clean = True
        finally:
            self._restore_signals(saved)
            with self._lock:
                self._releasing = False

    # --- process hooks ----------------------------------------------------------

    def install(self) -> None:
        """Hook atexit and turn SIGTERM/SIGHUP into KeyboardInterrupt."""
        if self._installed:
            return
        atexit.register(self.release_all)
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGTERM, signal.SIGHUP):
                signal.signal(sig, self._on_signal)
        self._installed = True

    def _on_signal(self, signum, _frame) -> None:
        self.logger.warning(f"Received signal {signum}; stopping")
        raise KeyboardInterrupt()

    @staticmethod
    def _ignore_signals() -> Optional[dict]:
        if threading.current_thread() is not threading.main_thread():
            return None
        saved = {}
        for sig in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            saved[sig] = signal.getsignal(sig)
            signal.signal(sig, signal.SIG_IGN)
        return saved

    @staticmethod
    def _restore_signals(saved: Optional[dict]) -> None:
        if not saved:
            return
        for sig, handler in saved.items():
            signal.signal(sig, handler if handler is not None else signal.SIG_DFL)

    # --- filesystem helpers -----------------------------------------------------

    def _remove_tree(self, p: Path) -> None:
        if self.is_protected(p):
            self.logger.info(f"Keeping {p} (holds the identity backup or log)")
            return
        if p.exists():
            shutil.rmtree(p)
            self.logger.debug(f"Removed {p}")

    def _remove_empty_dir(self, p: Path) -> None:
        try:
            os.rmdir(p)
        except FileNotFoundError:
            pass
