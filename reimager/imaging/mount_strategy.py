from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from ..core.context import ROOT_FS_TYPES, MountResult, PartitionSpec
from ..core.exceptions import MountStrategyFailure, NoMountStrategyAvailable
from ..core.resource_tracker import MountSession, Resource, ResourceKind, ResourceTracker
from ..core.utils import U, blinking_progress
from ..system.toolbox import SystemTools

ROOT_MARKERS = ("etc/os-release", "etc/fstab")

# GPT type GUIDs and MBR ids that hold a Linux filesystem
LINUX_PART_TYPES = {
    "0FC63DAF-8483-4772-8E79-3D69D8477DE4",  # linux filesystem data
    "4F68BCE3-E8CD-4DB1-96E7-FBCAF984B709",  # linux root x86-64
    "83",
}


@dataclass
class Attempting:
    method: str


@dataclass
class Succeeded:
    method: str
    source_mount: Optional[Path]


@dataclass
class ExhaustedFallbacks:
    failures: Dict[str, str] = field(default_factory=dict)


ChainState = Union[Attempting, Succeeded, ExhaustedFallbacks]


@dataclass
class MountRequest:
    raw_image: Path
    spec: PartitionSpec
    target_mount: Path
    source_mount: Path


class MountMethod:
    name = "base"
    needs_transfer = True

    def __init__(
        self,
        logger: logging.Logger,
        tools: SystemTools,
        *,
        settle_tries: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.tools = tools
        self.settle_tries = settle_tries
        self.sleep = sleep

    def attempt(self, req: MountRequest, session: MountSession) -> MountResult:
        raise NotImplementedError

    def fail(self, msg: str, cause: Optional[BaseException] = None) -> MountStrategyFailure:
        return MountStrategyFailure(msg=f"{self.name}: {msg}", cause=cause)

    # --- shared source scan ---------------------------------------------------------

    def wait_for_partitions(self, dev: str) -> List[str]:
        """Partition nodes of dev, re-reading the table every third try."""
        for i in range(self.settle_tries):
            if i % 3 == 0:
                self.tools.partition.reread(dev)
            parts = [e.path for e in self.tools.inspector.partitions(dev)]
            if parts:
                return parts
            self.sleep(1)
        return []

    def _has_root_markers(self, mountpoint: Path) -> bool:
        return any((mountpoint / m).exists() for m in ROOT_MARKERS)

    def mount_source_root(self, candidates: Sequence[str], req: MountRequest, session: MountSession) -> Path:
        """
        Mount the first candidate with a root filesystem read-only at the
        source mount point. A candidate with etc/os-release or etc/fstab wins
        over one without.
        """
        typed = []
        for dev in candidates:
            fs = self.tools.inspector.fs_type(dev)
            self.logger.debug(f"{self.name}: {dev} fs={fs}")
            if fs in ROOT_FS_TYPES:
                typed.append((dev, fs))
        if not typed:
            raise self.fail(f"no partition with a recognised filesystem among {', '.join(candidates) or 'none'}")
        U.ensure_dir(req.source_mount)
        session.push_mount_point(req.source_mount)
        fallback = None
        for dev, fs in typed:
            try:
                self.tools.mount.mount(dev, req.source_mount, fs_type=fs, read_only=True)
            except (subprocess.CalledProcessError, OSError) as e:
                self.logger.debug(f"{self.name}: mounting {dev} failed: {U.cmd_error(e)}")
                continue
            r = self._track_mount(req, session)
            if self._has_root_markers(req.source_mount):
                self.logger.info(f"{self.name}: source root {dev} ({fs}) mounted at {req.source_mount}")
                return req.source_mount
            try:
                self.tools.mount.unmount(str(req.source_mount))
            except (subprocess.CalledProcessError, OSError) as e:
                # still tracked; the session rollback retries the unmount
                raise self.fail(f"unmounting {dev} from {req.source_mount} failed: {U.cmd_error(e)}", e)
            r.released = True
            if fallback is None:
                fallback = (dev, fs)
        if fallback is None:
            raise self.fail("no candidate partition could be mounted")
        dev, fs = fallback
        self.logger.warning(f"{self.name}: no partition looks like a root filesystem; using {dev} ({fs})")
        try:
            self.tools.mount.mount(dev, req.source_mount, fs_type=fs, read_only=True)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"mounting {dev} failed: {U.cmd_error(e)}", e)
        self._track_mount(req, session)
        return req.source_mount

    def _track_mount(self, req: MountRequest, session: MountSession) -> Resource:
        return session.push(ResourceKind.MOUNT, str(req.source_mount), lambda: self.tools.mount.unmount(str(req.source_mount)))


class NbdMountMethod(MountMethod):
    name = "nbd"

    def __init__(self, logger: logging.Logger, tools: SystemTools, *, slots: int = 16, **kw):
        super().__init__(logger, tools, **kw)
        self.slots = slots
        self.attached: List[str] = []

    def find_slot(self) -> Optional[str]:
        for i in range(self.slots):
            dev = f"/dev/nbd{i}"
            if self.tools.mapper.nbd_slot_free(dev):
                return dev
        return None

    def attempt(self, req: MountRequest, session: MountSession) -> MountResult:
        self.tools.mapper.load_nbd(max_part=8)
        if not self.tools.inspector.node_exists("/dev/nbd0"):
            raise self.fail("nbd devices are not available (module not loaded?)")
        dev = self.find_slot()
        if dev is None:
            raise self.fail(f"no free nbd slot among /dev/nbd0..{self.slots - 1}")
        try:
            self.tools.mapper.nbd_connect(dev, req.raw_image, fmt="raw")
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"qemu-nbd could not attach {req.raw_image} to {dev}: {U.cmd_error(e)}", e)
        self.attached.append(dev)
        session.push(ResourceKind.NBD, dev, lambda: self.detach(dev))
        self.logger.info(f"nbd: attached {req.raw_image.name} to {dev}")
        parts = self.wait_for_partitions(dev) or [dev]
        src = self.mount_source_root(parts, req, session)
        return MountResult(method=self.name, target_mount=req.target_mount, source_mount=src)

    def detach(self, dev: str) -> None:
        self.tools.mapper.nbd_disconnect(dev)
        self.attached.remove(dev)

    def sweep(self) -> None:
        """Disconnect devices whose tracked release did not go through."""
        for dev in list(self.attached):
            try:
                self.detach(dev)
            except (subprocess.CalledProcessError, OSError) as e:
                self.logger.debug(f"nbd sweep: {dev}: {U.cmd_error(e)}")


class LoopMountMethod(MountMethod):
    name = "loop"

    def attempt(self, req: MountRequest, session: MountSession) -> MountResult:
        try:
            dev = self.tools.mapper.loop_attach(req.raw_image)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"losetup failed: {U.cmd_error(e)}", e)
        session.push(ResourceKind.LOOP, dev, lambda: self.tools.mapper.loop_detach(dev))
        self.logger.info(f"loop: attached {req.raw_image.name} to {dev}")
        try:
            mapped = self.tools.mapper.kpartx_add(dev)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"kpartx failed on {dev}: {U.cmd_error(e)}", e)
        session.push(ResourceKind.MAPPING, dev, lambda: self.tools.mapper.kpartx_delete(dev))
        for _ in range(self.settle_tries):
            if all(self.tools.inspector.node_exists(m) for m in mapped):
                break
            self.sleep(1)
        src = self.mount_source_root(mapped or [dev], req, session)
        return MountResult(method=self.name, target_mount=req.target_mount, source_mount=src)


class RawCopyMethod(MountMethod):
    """Block-copies the image's root filesystem straight onto the root partition."""
    name = "raw"
    needs_transfer = False

    def root_range(self, raw: Path) -> tuple:
        """(offset, length) in bytes of the root filesystem inside the image."""
        table = self.tools.converter.partition_table(raw)
        if not table or not table.get("partitions"):
            return 0, raw.stat().st_size
        ss = int(table.get("sectorsize") or 512)
        parts = table["partitions"]
        linux = [p for p in parts if str(p.get("type", "")).upper() in LINUX_PART_TYPES]
        best = max(linux or parts, key=lambda p: int(p.get("size") or 0))
        self.logger.info(f"raw: image root partition {best.get('node')} (type {best.get('type')})")
        return int(best["start"]) * ss, int(best["size"]) * ss

    def attempt(self, req: MountRequest, session: MountSession) -> MountResult:
        root_dev = req.spec.root.device
        released = session.tracker.release_handle(str(req.target_mount), kind=ResourceKind.MOUNT)
        if not released and self.tools.mount.is_mounted(req.target_mount):
            try:
                self.tools.mount.unmount(str(req.target_mount))
            except (subprocess.CalledProcessError, OSError) as e:
                raise self.fail(f"cannot release {req.target_mount}: {U.cmd_error(e)}", e)
        try:
            offset, length = self.root_range(req.raw_image)
            capacity = self.tools.inspector.disk_size(root_dev)
        except (subprocess.CalledProcessError, OSError, ValueError, KeyError) as e:
            raise self.fail(f"cannot size the copy: {e}", e)
        if length > capacity:
            raise self.fail(f"root filesystem ({U.human_bytes(length)}) does not fit {root_dev} ({U.human_bytes(capacity)})")
        self.logger.info(f"raw: copying {U.human_bytes(length)} from {req.raw_image.name} @ {offset} to {root_dev}")
        try:
            with blinking_progress(self.logger, f"Block copy to {root_dev}"):
                self.tools.archiver.block_copy(req.raw_image, root_dev, offset=offset, length=length)
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"dd failed: {U.cmd_error(e)}", e)
        fs = self.tools.inspector.fs_type(root_dev)
        if fs not in ROOT_FS_TYPES:
            raise self.fail(f"copied data on {root_dev} is not a supported filesystem ({fs})")
        try:
            if fs.startswith("ext"):
                self.tools.fmt.check_ext(root_dev)
                self.tools.fmt.grow_ext(root_dev)
            self.tools.mount.mount(root_dev, req.target_mount, fs_type=fs)
            session.push(ResourceKind.MOUNT, str(req.target_mount), lambda: self.tools.mount.unmount(str(req.target_mount)))
            if fs == "xfs":
                self.tools.fmt.grow_xfs(str(req.target_mount))
            elif fs == "btrfs":
                self.tools.fmt.grow_btrfs(str(req.target_mount))
        except (subprocess.CalledProcessError, OSError) as e:
            raise self.fail(f"growing/mounting {root_dev} failed: {U.cmd_error(e)}", e)
        req.spec.root.fs_type = fs
        return MountResult(method=self.name, target_mount=req.target_mount, source_mount=None)


METHODS = {"nbd": NbdMountMethod, "loop": LoopMountMethod, "raw": RawCopyMethod}
DEFAULT_ORDER = ("nbd", "loop", "raw")


def build_methods(
    logger: logging.Logger,
    tools: SystemTools,
    names: Sequence[str] = DEFAULT_ORDER,
    *,
    nbd_slots: int = 16,
    sleep: Callable[[float], None] = time.sleep,
) -> List[MountMethod]:
    """Instantiate methods in the given order; the raw copy is always last."""
    ordered = [n for n in names if n != "raw"] + (["raw"] if "raw" in names else [])
    out: List[MountMethod] = []
    for n in ordered:
        if n not in METHODS:
            raise ValueError(f"unknown mount method {n!r} (choose from {', '.join(DEFAULT_ORDER)})")
        if n == "nbd":
            out.append(NbdMountMethod(logger, tools, slots=nbd_slots, sleep=sleep))
        else:
            out.append(METHODS[n](logger, tools, sleep=sleep))
    return out


class MountChain:
    """
    Tries each method in order inside its own session. A failed method is
    rolled back completely before the next one starts.
    """

    def __init__(self, logger: logging.Logger, tracker: ResourceTracker, methods: List[MountMethod]):
        self.logger = logger
        self.tracker = tracker
        self.methods = methods
        self.history: List[ChainState] = []

    @property
    def state(self) -> Optional[ChainState]:
        return self.history[-1] if self.history else None

    def _enter(self, st: ChainState) -> None:
        self.history.append(st)
        self.logger.debug(f"Mount chain -> {st}")

    def sweep(self) -> None:
        for m in self.methods:
            if isinstance(m, NbdMountMethod):
                m.sweep()

    def run(self, req: MountRequest) -> MountResult:
        U.banner(self.logger, "Mount source image")
        failures: Dict[str, str] = {}
        for m in self.methods:
            self._enter(Attempting(m.name))
            session = self.tracker.session(f"mount:{m.name}")
            try:
                with session:
                    result = m.attempt(req, session)
            except MountStrategyFailure as e:
                failures[m.name] = e.msg
                self.logger.warning(f"Mount method {m.name} failed: {e.msg}")
                continue
            except (subprocess.CalledProcessError, OSError) as e:
                failures[m.name] = U.cmd_error(e)
                self.logger.warning(f"Mount method {m.name} failed unexpectedly: {U.cmd_error(e)}")
                continue
            result.session = session
            self._enter(Succeeded(m.name, result.source_mount))
            self.logger.info(f"Mount method {m.name} succeeded")
            return result
        self._enter(ExhaustedFallbacks(failures))
        raise NoMountStrategyAvailable(
            msg="Every mount method failed: " + "; ".join(f"{k}: {v}" for k, v in failures.items()),
            context=failures,
        )
