from __future__ import annotations

import argparse
import logging
import shutil
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, Optional

import requests

from ..cli.help_texts import FALLBACK_INSTRUCTIONS, YAML_EXAMPLE
from ..cli.menu import CONFIRM_TOKEN, Menu
from ..config.profiles import ProfileCatalog
from ..converters.checksum import ChecksumVerifier
from ..converters.fetch import ImageAcquirer
from ..core.context import InstallationSelection, PipelineContext, RunPaths
from ..core.exceptions import Fatal, PartitionError, ValidationError, format_exception_for_cli
from ..core.logger import Log
from ..core.resource_tracker import ResourceKind, ResourceTracker
from ..core.sanity_checker import SanityChecker
from ..core.utils import U
from ..disk.locator import DiskLocator
from ..disk.partitioner import PartitionPlanner
from ..fixers.bootloader_fixer import BootloaderInstaller
from ..fixers.identity_backup import IdentityBackup
from ..fixers.identity_restore import IdentityRestore
from ..imaging.mount_strategy import DEFAULT_ORDER, MountChain, MountRequest, build_methods
from ..imaging.transfer import FilesystemTransfer
from ..system.toolbox import SystemTools

LOG_NAME = "reimager.log"


class Orchestrator:
    """
    Top-level pipeline runner.

    run: preflight -> locate disk -> select + confirm -> identity backup ->
    acquire image -> partition + format -> mount target -> mount chain ->
    transfer -> identity restore -> bootloader -> cleanup (always).
    """

    def __init__(
        self,
        logger: logging.Logger,
        args: argparse.Namespace,
        *,
        tools: Optional[SystemTools] = None,
        menu: Optional[Menu] = None,
        checker: Optional[SanityChecker] = None,
        http: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.args = args
        self.tools = tools or SystemTools.create(logger)
        self.menu = menu or Menu(logger)
        self.checker = checker or SanityChecker(logger)
        self.http = http
        self.sleep = sleep
        self.ts = U.now_ts()
        self.paths = RunPaths.from_args(args, self.ts)

    @property
    def interactive(self) -> bool:
        return getattr(self.args, "confirm", None) is None

    def _ensure_log_file(self) -> None:
        existing = Log.log_file_of(self.logger)
        if existing is not None:
            self.paths.log_file = self.paths.log_file or existing
            return
        log_file = self.paths.log_file or (self.paths.run_dir / LOG_NAME)
        self.logger = Log.setup(getattr(self.args, "verbose", 0), str(log_file))
        self.paths.log_file = log_file

    def _locator(self) -> DiskLocator:
        return DiskLocator(self.logger, self.tools.inspector)

    # --- small commands -------------------------------------------------------------

    def cmd_profiles(self) -> int:
        for p in ProfileCatalog(self.logger, getattr(self.args, "profiles", None)):
            print(f"{p.key:<20} {p.name:<28} {p.url}")
        return 0

    def cmd_detect_disk(self) -> int:
        disk = self._locator().locate()
        print(f"device: {disk.device}")
        print(f"size:   {disk.size_bytes} ({U.human_bytes(disk.size_bytes)})")
        print(f"table:  {disk.table_kind or 'none'}")
        if disk.small:
            self.logger.warning("Disk is below the 10 GiB minimum; `run` will ask for confirmation")
        return 0

    def cmd_backup(self) -> int:
        self._ensure_log_file()
        self.checker.check_root()
        bundle = IdentityBackup(self.logger, self.paths.host_root, self.paths.backup_dir).run()
        print(bundle.root)
        return 0

    def run(self) -> int:
        cmd = getattr(self.args, "cmd", None)
        if cmd == "profiles":
            return self.cmd_profiles()
        if cmd == "generate-config":
            print(YAML_EXAMPLE)
            return 0
        if cmd == "detect-disk":
            return self.cmd_detect_disk()
        if cmd == "backup":
            return self.cmd_backup()
        if cmd == "run":
            return self.reimage()
        raise Fatal(2, f"Unknown command: {cmd}")

    # --- reimage stages ---------------------------------------------------------------

    def select(self, ctx: PipelineContext) -> Optional[InstallationSelection]:
        catalog = ProfileCatalog(self.logger, getattr(self.args, "profiles", None))
        a = self.args
        if a.profile and a.url:
            raise ValidationError(msg="Both a profile and a custom URL are set (check config files); choose one")
        if a.profile:
            sel = catalog.get(a.profile).selection()
            if a.sha256:
                sel.sha256 = a.sha256
        elif a.url:
            sel = InstallationSelection(name="Custom image", url=a.url, sha256=a.sha256, custom=True)
        elif self.interactive:
            sel = self.menu.choose(catalog)
            if sel is None:
                return None
        else:
            raise ValidationError(msg="--confirm requires --profile or --url")
        sel.sha256 = ChecksumVerifier.normalize(sel.sha256)
        if sel.sha256 is None:
            if a.allow_unverified:
                self.logger.warning("No checksum: continuing unverified (--allow-unverified)")
            elif self.interactive and self.menu.yes_no("No SHA-256 given; the image cannot be verified. Install it anyway?"):
                self.logger.warning("No checksum: operator accepted an unverified image")
            else:
                raise ValidationError(msg="No SHA-256 for the image; pass --sha256 or --allow-unverified")
            ctx.notes["accepted_unverified"] = True
        self.logger.info(f"Selected: {sel.name} <{sel.url}>")
        return sel

    def confirm(self, ctx: PipelineContext) -> bool:
        token = getattr(self.args, "confirm", None)
        if token is not None:
            if token != CONFIRM_TOKEN:
                raise ValidationError(msg=f"Confirmation token must be exactly {CONFIRM_TOKEN!r}")
            self.logger.info("Confirmed non-interactively")
            return True
        assert ctx.selection is not None and ctx.disk is not None
        return self.menu.confirm(ctx.selection, ctx.disk.device, U.human_bytes(ctx.disk.size_bytes), str(self.paths.backup_dir))

    def install_tracker(self, ctx: PipelineContext) -> None:
        t = ctx.tracker
        t.install()
        t.protect(self.paths.backup_dir)
        if self.paths.log_file:
            t.protect(self.paths.log_file)
        work = self.paths.work_dir

        def sweep_loops() -> None:
            for dev in self.tools.mapper.loops_backed_by(work):
                for fn in (self.tools.mapper.kpartx_delete, self.tools.mapper.loop_detach):
                    try:
                        fn(dev)
                    except (subprocess.CalledProcessError, OSError) as e:
                        self.logger.debug(f"loop sweep {dev}: {U.cmd_error(e)}")
        t.add_sweeper("loops", sweep_loops)

    def mount_target(self, ctx: PipelineContext) -> Path:
        assert ctx.spec is not None
        target = self.paths.target_mount
        U.ensure_dir(target)
        ctx.tracker.push_mount_point(target)
        try:
            self.tools.mount.mount(ctx.spec.root.device, target, fs_type=ctx.spec.root.fs_type)
        except (subprocess.CalledProcessError, OSError) as e:
            raise PartitionError(msg=f"Mounting the new root {ctx.spec.root.device} failed: {U.cmd_error(e)}", cause=e)
        ctx.tracker.push(ResourceKind.MOUNT, str(target), lambda: self.tools.mount.unmount(str(target)), label="target root")
        return target

    def persist_log(self, ctx: PipelineContext) -> None:
        if not self.paths.log_file or not self.paths.log_file.exists() or ctx.mount is None:
            return
        dst = ctx.mount.target_mount / "var" / "log" / "reimager.log"
        try:
            U.ensure_dir(dst.parent)
            shutil.copy2(self.paths.log_file, dst)
            self.logger.info(f"Log copied into the new root: /var/log/{dst.name}")
        except OSError as e:
            self.logger.warning(f"Could not copy the log into the new root: {e}")

    def report_failure(self, ctx: PipelineContext, e: BaseException) -> None:
        self.logger.error(f"Stage '{ctx.stage}' failed: {format_exception_for_cli(e, verbose=2)}")
        if ctx.disk_touched:
            self.logger.error(f"The target disk {ctx.disk.device if ctx.disk else ''} was modified and is now in an undefined state")
            print(FALLBACK_INSTRUCTIONS.format(backup=self.paths.backup_dir), file=sys.stderr)
        else:
            self.logger.info("The target disk was not modified")
        if ctx.bundle is not None:
            self.logger.info(f"Identity backup: {ctx.bundle.root}")
        if self.paths.log_file:
            self.logger.info(f"Log: {self.paths.log_file}")

    def _stage(self, ctx: PipelineContext, name: str) -> None:
        ctx.stage = name
        self.logger.debug(f"Stage: {name}")

    def reimage(self) -> int:
        self._ensure_log_file()
        a = self.args
        ctx = PipelineContext(
            logger=self.logger,
            args=a,
            tools=self.tools,
            tracker=ResourceTracker(self.logger),
            paths=self.paths,
            ts=self.ts,
        )
        U.banner(self.logger, "reimager: reinstall boot disk")
        try:
            self._stage(ctx, "preflight")
            self.checker.check_root()
            self.checker.check_tools()

            self._stage(ctx, "locate disk")
            locator = self._locator()
            ctx.disk = locator.locate()
            locator.check_size(ctx.disk, allow_small=a.allow_small_disk, confirm=self.menu.yes_no if self.interactive else None)
            self.checker.check_work_dir(self.paths.work_dir, ctx.disk, locator.disk_of, self.tools.inspector.mount_source)
            self.checker.check_off_target("Backup directory", "--backup-dir", self.paths.backup_dir, ctx.disk, locator.disk_of, self.tools.inspector.mount_source)
            if self.paths.log_file is not None:
                self.checker.check_off_target("Log file", "--log-file", self.paths.log_file, ctx.disk, locator.disk_of, self.tools.inspector.mount_source)

            self._stage(ctx, "select image")
            ctx.selection = self.select(ctx)
            if ctx.selection is None:
                self.logger.info("Exiting without changes")
                return 0

            self._stage(ctx, "confirm")
            if not self.confirm(ctx):
                self.logger.info("Installation cancelled by operator; nothing was changed")
                return 0

            self._stage(ctx, "install cleanup hooks")
            self.install_tracker(ctx)

            self._stage(ctx, "identity backup")
            ctx.bundle = IdentityBackup(self.logger, self.paths.host_root, self.paths.backup_dir).run()

            self._stage(ctx, "acquire image")
            acquirer = ImageAcquirer(self.logger, self.paths.download_dir, self.tools.converter, session=self.http)
            ctx.image = acquirer.fetch(ctx.selection.url, ctx.selection.sha256)
            ctx.image.accepted_unverified = bool(ctx.notes.get("accepted_unverified"))
            if not ctx.image.writable:
                raise ValidationError(msg="Image is neither verified nor explicitly accepted; refusing to write the disk")
            if a.dry_run:
                # download stays in place for a later run to reuse
                self.logger.info(f"DRY-RUN: would partition {ctx.disk.device} and install {ctx.image.raw_path}")
                self.logger.info(f"DRY-RUN: mount methods {', '.join(a.mount_methods or DEFAULT_ORDER)}")
                return 0
            ctx.tracker.push_temp_dir(self.paths.download_dir, label="downloaded image")

            self._stage(ctx, "partition")
            planner = PartitionPlanner(
                self.logger,
                self.tools.partition,
                self.tools.fmt,
                self.tools.inspector,
                self.tools.mount,
                timeout=a.partition_timeout,
                sleep=self.sleep,
            )
            ctx.spec = planner.plan(ctx.disk)
            ctx.disk_touched = True
            planner.apply(ctx.disk, ctx.spec)
            planner.format(ctx.spec)

            self._stage(ctx, "mount target")
            target = self.mount_target(ctx)

            self._stage(ctx, "mount source")
            methods = build_methods(self.logger, self.tools, a.mount_methods or DEFAULT_ORDER, nbd_slots=a.nbd_slots, sleep=self.sleep)
            chain = MountChain(self.logger, ctx.tracker, methods)
            ctx.tracker.add_sweeper("nbd", chain.sweep)
            ctx.mount = chain.run(MountRequest(ctx.image.raw_path, ctx.spec, target, self.paths.source_mount))

            self._stage(ctx, "transfer")
            FilesystemTransfer(self.logger, self.tools.archiver, extra_excludes=[f"{self.paths.run_dir}/*"]).transfer(ctx.mount)

            self._stage(ctx, "identity restore")
            restore = IdentityRestore(self.logger, ctx.bundle, target, datasource=a.datasource)
            rep = restore.run()
            try:
                restore.persist_bundle(self.ts)
            except OSError as e:
                self.logger.warning(f"Could not keep a copy of the identity bundle in the new root: {e}")
            if rep.skipped:
                self.logger.warning(f"Not restored: {', '.join(rep.skipped)}")

            self._stage(ctx, "bootloader")
            ctx.bootloader = BootloaderInstaller(self.logger, self.tools, ctx.tracker, host_root=self.paths.host_root).install(ctx.spec, target)

            self._stage(ctx, "finish")
            self.persist_log(ctx)
        except (Fatal, KeyboardInterrupt) as e:
            if isinstance(e, KeyboardInterrupt):
                self.logger.warning(f"Interrupted during stage '{ctx.stage}'")
            self.report_failure(ctx, e)
            if isinstance(e, Fatal):
                e.reported = True  # type: ignore[attr-defined]
            raise
        except Exception as e:
            self.report_failure(ctx, e)
            err = Fatal(code=1, msg=f"Unexpected error in stage '{ctx.stage}': {U.cmd_error(e)}", cause=e)
            err.reported = True  # type: ignore[attr-defined]
            raise err from e
        finally:
            self._stage(ctx, "cleanup")
            ctx.tracker.release_all()

        self.summary(ctx)
        self.maybe_reboot()
        return 0

    def summary(self, ctx: PipelineContext) -> None:
        U.banner(self.logger, "Installation completed")
        self.logger.info(f"Installed {ctx.selection.name if ctx.selection else '?'} on {ctx.disk.device if ctx.disk else '?'}")
        if ctx.mount:
            self.logger.info(f"Mount method: {ctx.mount.method}")
        if ctx.bootloader and ctx.bootloader.warnings:
            for w in ctx.bootloader.warnings:
                self.logger.warning(f"Bootloader: {w}")
        self.logger.info(f"Identity backup kept at {self.paths.backup_dir}")
        if self.paths.log_file:
            self.logger.info(f"Log: {self.paths.log_file}")

    def maybe_reboot(self) -> None:
        if getattr(self.args, "reboot", False) or (self.interactive and self.menu.yes_no("Reboot now?")):
            self.logger.info("Rebooting in 5 seconds...")
            self.sleep(5)
            U.run_cmd(self.logger, ["systemctl", "reboot"] if U.which("systemctl") else ["reboot"], check=False)
        else:
            self.logger.info("Reboot manually when ready: reboot")
