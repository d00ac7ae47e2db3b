# reimager/fixers/bootloader_fixer.py
# ---------------------------------------------------------------------
# Makes the freshly written root bootable from the target disk:
#   - bind /dev, /dev/pts, /proc, /sys and mount the ESP inside the new root
#   - write a UUID-only /etc/fstab
#   - grub-install (EFI or BIOS, following the running firmware)
#   - regenerate the grub config
#
# Install/config failures land in the report as warnings and are never raised.
# ---------------------------------------------------------------------

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Optional

from ..core.context import BootloaderReport, PartitionSpec
from ..core.exceptions import BootloaderWarning
from ..core.resource_tracker import MountSession, ResourceKind, ResourceTracker
from ..core.utils import U
from ..system.toolbox import SystemTools
from .fstab_rewriter import FstabWriter

BIND_MOUNTS = ("/dev", "/dev/pts", "/proc", "/sys")


def os_release_id(root: Path) -> Optional[str]:
    for rel in ("etc/os-release", "usr/lib/os-release"):
        p = Path(root) / rel
        if not p.is_file():
            continue
        for line in p.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.startswith("ID="):
                val = line[3:].strip().strip("\"'")
                return val or None
    return None


class BootloaderInstaller:
    def __init__(self, logger: logging.Logger, tools: SystemTools, tracker: ResourceTracker, *, host_root: Path = Path("/")):
        self.logger = logger
        self.tools = tools
        self.tracker = tracker
        self.host_root = Path(host_root)

    def efi_firmware(self) -> bool:
        return (self.host_root / "sys" / "firmware" / "efi").exists()

    def _warn(self, report: BootloaderReport, msg: str, cause: Optional[BaseException] = None) -> None:
        w = BootloaderWarning(msg=msg, cause=cause)
        report.warnings.append(w.user_message(include_cause=cause is not None))
        self.logger.warning(msg + (f" ({U.cmd_error(cause)})" if cause is not None else ""))

    def _bind_all(self, root: Path, session: MountSession, report: BootloaderReport) -> None:
        for p in BIND_MOUNTS:
            dst = root / p.lstrip("/")
            try:
                self.tools.mount.bind(str(self.host_root / p.lstrip("/")), dst)
            except (subprocess.CalledProcessError, OSError) as e:
                self._warn(report, f"bind mount of {p} into the new root failed", e)
                continue
            session.push(ResourceKind.BIND, str(dst), lambda d=dst: self.tools.mount.unmount(str(d)))

    def _mount_efi(self, spec: PartitionSpec, root: Path, session: MountSession, report: BootloaderReport) -> None:
        dst = root / "boot" / "efi"
        try:
            self.tools.mount.mount(spec.efi.device, dst, fs_type="vfat")
        except (subprocess.CalledProcessError, OSError) as e:
            self._warn(report, f"mounting the EFI partition {spec.efi.device} failed", e)
            return
        session.push(ResourceKind.MOUNT, str(dst), lambda: self.tools.mount.unmount(str(dst)))

    def install(self, spec: PartitionSpec, target_root: Path) -> BootloaderReport:
        U.banner(self.logger, "Install bootloader")
        root = Path(target_root)
        report = BootloaderReport()
        session = self.tracker.session("bootloader")
        try:
            self._bind_all(root, session, report)
            self._mount_efi(spec, root, session, report)
            FstabWriter(self.logger, self.tools.inspector).write(root, spec)
            report.fstab_written = True

            report.mode = "efi" if self.efi_firmware() else "bios"
            report.bootloader_id = os_release_id(root) or "grub"
            self.logger.info(f"Boot mode: {report.mode.upper()}, bootloader id: {report.bootloader_id}")
            try:
                self.tools.bootloader.install(root, spec.disk.device, efi=report.mode == "efi", bootloader_id=report.bootloader_id)
                report.installed = True
                self.logger.info(f"GRUB installed to {spec.disk.device}")
            except (subprocess.CalledProcessError, OSError) as e:
                self._warn(report, "grub-install failed", e)
            try:
                gen = self.tools.bootloader.make_config(root)
                report.config_generated = True
                self.logger.info(f"GRUB config generated with {gen}")
            except (subprocess.CalledProcessError, OSError) as e:
                self._warn(report, "GRUB config generation failed", e)
        finally:
            session.close()
        if report.warnings:
            self.logger.warning("The new system may not boot; check the bootloader from a rescue console before rebooting")
        return report
