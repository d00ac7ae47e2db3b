from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:  # pragma: no cover
    from ..system.toolbox import SystemTools
    from .resource_tracker import MountSession, ResourceTracker

MiB = 1024 * 1024
GiB = 1024 * MiB
MIN_DISK_BYTES = 10 * GiB

EFI_START_MIB = 1
EFI_END_MIB = 513

# filesystems a source root partition may carry
ROOT_FS_TYPES = ("ext4", "ext3", "ext2", "xfs", "btrfs")


@dataclass
class TargetDisk:
    device: str
    size_bytes: int
    table_kind: Optional[str] = None

    def partition_node(self, number: int) -> str:
        """
        /dev/nvme0n1 -> /dev/nvme0n1p2, /dev/loop3 -> /dev/loop3p2,
        /dev/sda -> /dev/sda2
        """
        sep = "p" if self.device[-1:].isdigit() else ""
        return f"{self.device}{sep}{number}"

    @property
    def small(self) -> bool:
        return self.size_bytes < MIN_DISK_BYTES


@dataclass
class InstallationSelection:
    name: str
    url: str
    sha256: Optional[str] = None
    custom: bool = False

    def __post_init__(self) -> None:
        if self.sha256 is not None and not self.sha256.strip():
            self.sha256 = None


@dataclass
class SourceImage:
    origin: str
    download_path: Path
    expected_checksum: Optional[str] = None
    container_format: str = ""
    raw_path: Optional[Path] = None
    verified: bool = False
    accepted_unverified: bool = False

    @property
    def writable(self) -> bool:
        """Nothing may be written to the target disk unless this holds."""
        return self.raw_path is not None and (self.verified or self.accepted_unverified)


class PartitionRole(str, Enum):
    EFI = "efi"
    ROOT = "root"


@dataclass
class PartitionEntry:
    number: int
    role: PartitionRole
    fs_type: str
    start: str
    end: str
    flags: List[str] = field(default_factory=list)
    device: str = ""


@dataclass
class PartitionSpec:
    disk: TargetDisk
    entries: List[PartitionEntry]

    def by_role(self, role: PartitionRole) -> PartitionEntry:
        for e in self.entries:
            if e.role == role:
                return e
        raise KeyError(role)

    @property
    def efi(self) -> PartitionEntry:
        return self.by_role(PartitionRole.EFI)

    @property
    def root(self) -> PartitionEntry:
        return self.by_role(PartitionRole.ROOT)


@dataclass
class IdentityBundle:
    root: Path
    items: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)
    users: List[str] = field(default_factory=list)

    @property
    def ssh_dir(self) -> Path:
        return self.root / "ssh"

    @property
    def network_dir(self) -> Path:
        return self.root / "network"

    @property
    def cloud_dir(self) -> Path:
        return self.root / "cloud"


@dataclass
class MountResult:
    method: str
    target_mount: Path
    source_mount: Optional[Path] = None
    session: Optional["MountSession"] = None

    @property
    def needs_transfer(self) -> bool:
        return self.source_mount is not None


@dataclass
class BootloaderReport:
    mode: str = "bios"
    bootloader_id: str = "grub"
    installed: bool = False
    config_generated: bool = False
    fstab_written: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.installed and self.config_generated and not self.warnings


@dataclass
class RunPaths:
    """Every filesystem location a run touches."""
    run_dir: Path
    work_dir: Path
    backup_dir: Path
    log_file: Optional[Path]
    host_root: Path = Path("/")

    @property
    def download_dir(self) -> Path:
        return self.work_dir / "download"

    @property
    def target_mount(self) -> Path:
        return self.run_dir / "target"

    @property
    def source_mount(self) -> Path:
        return self.run_dir / "source"

    def host(self, path: str) -> Path:
        return self.host_root / path.lstrip("/")

    @classmethod
    def from_args(cls, args: argparse.Namespace, ts: str) -> "RunPaths":
        run_dir = Path(getattr(args, "run_dir", None) or "/run/reimager")
        backup = getattr(args, "backup_dir", None) or f"/run/reimager-backup-{ts}"
        log_file = getattr(args, "log_file", None)
        return cls(
            run_dir=run_dir.expanduser().resolve(),
            work_dir=Path(getattr(args, "work_dir", None) or "/mnt/reimager").expanduser().resolve(),
            backup_dir=Path(backup).expanduser().resolve(),
            log_file=Path(log_file).expanduser().resolve() if log_file else None,
            host_root=Path(getattr(args, "host_root", None) or "/"),
        )


@dataclass
class PipelineContext:
    """Explicit run state threaded through the pipeline stages."""
    logger: logging.Logger
    args: argparse.Namespace
    tools: "SystemTools"
    tracker: "ResourceTracker"
    paths: RunPaths
    ts: str
    disk: Optional[TargetDisk] = None
    selection: Optional[InstallationSelection] = None
    image: Optional[SourceImage] = None
    spec: Optional[PartitionSpec] = None
    bundle: Optional[IdentityBundle] = None
    mount: Optional[MountResult] = None
    bootloader: Optional[BootloaderReport] = None
    stage: str = "init"
    disk_touched: bool = False
    notes: Dict[str, Any] = field(default_factory=dict)
