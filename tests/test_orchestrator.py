import contextlib
import hashlib
import io
import logging
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from reimager.__main__ import main
from reimager.cli.argument_parser import parse_args_with_config
from reimager.cli.menu import Menu
from reimager.core.context import GiB
from reimager.core.exceptions import (
    ChecksumMismatch,
    DiskTooSmall,
    Fatal,
    NoMountStrategyAvailable,
    TransferError,
    ValidationError,
)
from reimager.core.logger import LOGGER_NAME
from reimager.core.resource_tracker import ResourceTracker
from reimager.core.sanity_checker import SanityChecker
from reimager.fixers.cloud_init_injector import OVERRIDE_NAME
from reimager.fixers.identity_restore import IdentityRestore
from reimager.orchestrator.orchestrator import Orchestrator

from fakes import FakeSystem

IMAGE = b"\0" * 65536
DIGEST = hashlib.sha256(IMAGE).hexdigest()


def write(p: Path, text: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text)


def image_root(root: Path) -> None:
    write(root / "etc/os-release", "ID=ubuntu\n")
    write(root / "etc/passwd", "root:x:0:0:root:/root:/bin/bash\nazureuser:x:1000:1000::/home/azureuser:/bin/bash\n")
    (root / "etc/cloud/cloud.cfg.d").mkdir(parents=True, exist_ok=True)


class PipelineCase(unittest.TestCase):
    def setUp(self):
        self._td = tempfile.TemporaryDirectory()
        self.td = Path(self._td.name)
        self.host = self.td / "host"
        write(self.host / "etc/passwd", "azureuser:x:1000:1000::/home/azureuser:/bin/bash\n")
        write(self.host / "etc/ssh/ssh_host_ed25519_key", "PRIVATE")
        write(self.host / "home/azureuser/.ssh/authorized_keys", "ssh-ed25519 AAAA me@laptop\n")
        write(self.host / "etc/netplan/50-cloud-init.yaml", "network: {version: 2}\n")
        self.image = self.td / "disk.img"
        self.image.write_bytes(IMAGE)
        self.fs = FakeSystem()

        for p in (
            mock.patch("reimager.core.sanity_checker.os.geteuid", return_value=0),
            mock.patch("reimager.fixers.identity_restore.os.chown"),
            mock.patch.object(ResourceTracker, "install"),
        ):
            p.start()
            self.addCleanup(p.stop)

    def tearDown(self):
        logger = logging.getLogger(LOGGER_NAME)
        for h in list(logger.handlers):
            h.close()
            logger.removeHandler(h)
        self._td.cleanup()

    @property
    def target(self) -> Path:
        return self.td / "run" / "target"

    def argv(self, *run_args):
        return [
            "--log-file", str(self.td / "log" / "reimager.log"),
            "--run-dir", str(self.td / "run"),
            "--work-dir", str(self.td / "work"),
            "--backup-dir", str(self.td / "backup"),
            "--host-root", str(self.host),
            "run", *run_args,
        ]

    def orchestrator(self, *run_args, answers=None):
        args, _conf, logger = parse_args_with_config(self.argv(*run_args))
        menu = None
        if answers is not None:
            it = iter(answers)
            menu = Menu(logger, input_fn=lambda _p: next(it), print_fn=lambda *a, **k: None)
        return Orchestrator(
            logger, args,
            tools=self.fs.tools,
            menu=menu,
            checker=SanityChecker(logger, which=lambda t: f"/usr/bin/{t}"),
            sleep=lambda s: None,
        )

    def confirmed(self, *extra):
        return self.orchestrator("--url", str(self.image), "--sha256", DIGEST, "--confirm", "YES", *extra)

    def nbd_image(self):
        i = self.fs.inspector
        i.nodes.add("/dev/nbd0")
        i.parts["/dev/nbd0"] = ["/dev/nbd0p1"]
        i.fs["/dev/nbd0p1"] = "ext4"
        self.fs.populate["/dev/nbd0p1"] = image_root


class TestPipeline(PipelineCase):
    def test_nbd_install(self):
        self.nbd_image()
        orch = self.confirmed()
        self.assertEqual(orch.run(), 0)

        names = self.fs.names()
        self.assertLess(names.index("wipe"), names.index("nbd_connect"))
        self.assertEqual(len(self.fs.called("copy_tree")), 1)
        self.assertNotIn("block_copy", names)
        self.assertEqual(self.fs.called("nbd_disconnect"), [("nbd_disconnect", "/dev/nbd0")])
        self.assertEqual(self.fs.mounted, {})

        t = self.target
        self.assertEqual((t / "etc/ssh/ssh_host_ed25519_key").read_text(), "PRIVATE")
        self.assertIn("me@laptop", (t / "home/azureuser/.ssh/authorized_keys").read_text())
        self.assertTrue((t / "etc/netplan/50-cloud-init.yaml").is_file())
        self.assertTrue((t / "etc/cloud/cloud.cfg.d" / OVERRIDE_NAME).is_file())
        self.assertIn("UUID=uuid-sda2", (t / "etc/fstab").read_text())
        self.assertTrue((t / "var/log/reimager.log").is_file())
        self.assertTrue((t / f"root/reimager-backup-{orch.ts}" / "manifest.json").is_file())

        self.assertTrue((self.td / "backup" / "manifest.json").is_file())
        self.assertFalse((self.td / "work" / "download").exists())
        self.assertTrue(self.image.exists())

    def test_every_mapping_method_fails_then_raw(self):
        orch = self.confirmed()
        self.assertEqual(orch.run(), 0)
        names = self.fs.names()
        self.assertNotIn("copy_tree", names)
        self.assertEqual(len(self.fs.called("block_copy")), 1)
        self.assertEqual(self.fs.called("block_copy")[0][2], "/dev/sda2")
        self.assertEqual(self.fs.mounted, {})
        self.assertTrue((self.target / "etc/ssh/ssh_host_ed25519_key").is_file())
        self.assertTrue((self.target / "etc/fstab").is_file())

    def test_checksum_mismatch_leaves_disk_alone(self):
        orch = self.orchestrator("--url", str(self.image), "--sha256", "0" * 64, "--confirm", "YES")
        with self.assertRaises(ChecksumMismatch) as cm:
            orch.run()
        self.assertTrue(getattr(cm.exception, "reported", False))
        self.assertNotIn("wipe", self.fs.names())
        self.assertTrue(self.image.exists())
        self.assertTrue((self.td / "backup" / "manifest.json").is_file())

    def test_no_mount_method_reports_recovery_path(self):
        self.fs.fail.update({"loop_attach", "block_copy"})
        orch = self.confirmed()
        err = io.StringIO()
        with mock.patch("sys.stderr", err):
            with self.assertRaises(NoMountStrategyAvailable):
                orch.run()
        self.assertIn("wipe", self.fs.names())
        self.assertIn("az vm deallocate", err.getvalue())
        self.assertIn(str((self.td / "backup").resolve()), err.getvalue())
        self.assertEqual(self.fs.mounted, {})

    def test_copy_failure_is_fatal_and_closes_source(self):
        self.nbd_image()
        self.fs.fail.add("copy_tree")
        err = io.StringIO()
        with mock.patch("sys.stderr", err):
            with self.assertRaises(TransferError) as cm:
                self.confirmed().run()
        self.assertEqual(cm.exception.code, 40)
        self.assertEqual(self.fs.called("nbd_disconnect"), [("nbd_disconnect", "/dev/nbd0")])
        self.assertEqual(self.fs.mounted, {})
        self.assertNotIn("chroot:grub-install", self.fs.names())
        self.assertIn("az vm deallocate", err.getvalue())

    def test_interrupt_after_partitioning_cleans_up(self):
        self.nbd_image()
        err = io.StringIO()
        with mock.patch.object(self.fs.tools.archiver, "copy_tree", side_effect=KeyboardInterrupt):
            with mock.patch("sys.stderr", err):
                with self.assertRaises(KeyboardInterrupt):
                    self.confirmed().run()
        self.assertIn("wipe", self.fs.names())
        self.assertEqual(self.fs.called("nbd_disconnect"), [("nbd_disconnect", "/dev/nbd0")])
        self.assertEqual(self.fs.mounted, {})
        self.assertIn("az vm deallocate", err.getvalue())

    def test_bundle_copy_failure_is_only_a_warning(self):
        self.nbd_image()
        orch = self.confirmed()
        with mock.patch.object(IdentityRestore, "persist_bundle", side_effect=OSError(28, "No space left on device")):
            self.assertEqual(orch.run(), 0)
        self.assertTrue(self.fs.called("chroot:grub-install"))
        self.assertEqual(self.fs.mounted, {})

    def test_unexpected_error_is_reported(self):
        self.nbd_image()
        err = io.StringIO()
        with mock.patch.object(IdentityRestore, "run", side_effect=RuntimeError("boom")):
            with mock.patch("sys.stderr", err):
                with self.assertRaises(Fatal) as cm:
                    self.confirmed().run()
        self.assertTrue(getattr(cm.exception, "reported", False))
        self.assertIsInstance(cm.exception.cause, RuntimeError)
        self.assertIn("identity restore", cm.exception.msg)
        self.assertIn("az vm deallocate", err.getvalue())
        self.assertEqual(self.fs.mounted, {})

    def test_dry_run_stops_before_disk(self):
        orch = self.confirmed("--dry-run")
        self.assertEqual(orch.run(), 0)
        self.assertNotIn("wipe", self.fs.names())
        self.assertTrue((self.td / "work" / "download").is_dir())


class TestSafetyGates(PipelineCase):
    def test_missing_checksum_refused(self):
        orch = self.orchestrator("--url", str(self.image), "--confirm", "YES")
        with self.assertRaises(ValidationError):
            orch.run()
        self.assertNotIn("wipe", self.fs.names())
        self.assertFalse((self.td / "backup").exists())

    def test_missing_checksum_accepted_explicitly(self):
        orch = self.orchestrator("--url", str(self.image), "--confirm", "YES", "--allow-unverified", "--dry-run")
        self.assertEqual(orch.run(), 0)

    def test_missing_checksum_accepted_interactively(self):
        orch = self.orchestrator("--url", str(self.image), "--dry-run", answers=["yes", "YES"])
        self.assertEqual(orch.run(), 0)

    def test_wrong_confirm_token(self):
        orch = self.orchestrator("--url", str(self.image), "--sha256", DIGEST, "--confirm", "yes")
        with self.assertRaises(ValidationError):
            orch.run()
        self.assertFalse((self.td / "backup").exists())

    def test_operator_declines(self):
        orch = self.orchestrator("--url", str(self.image), "--sha256", DIGEST, answers=["no"])
        self.assertEqual(orch.run(), 0)
        self.assertEqual(self.fs.names(), [])
        self.assertFalse((self.td / "backup").exists())

    def test_menu_exit(self):
        orch = self.orchestrator(answers=["0"])
        self.assertEqual(orch.run(), 0)
        self.assertEqual(self.fs.names(), [])

    def test_small_disk(self):
        self.fs.inspector.sizes["/dev/sda"] = 8 * GiB
        with self.assertRaises(DiskTooSmall):
            self.confirmed().run()
        self.assertEqual(self.confirmed("--allow-small-disk", "--dry-run").run(), 0)

    def test_work_dir_on_target_disk(self):
        self.fs.inspector.work_source = "/dev/sda1"
        with self.assertRaises(ValidationError):
            self.confirmed().run()

    def test_backup_dir_on_target_disk(self):
        backup = (self.td / "backup").resolve()
        backup.mkdir()
        self.fs.inspector.mount_source = lambda p: "/dev/sda1" if p == str(backup) else None
        with self.assertRaises(ValidationError) as cm:
            self.confirmed().run()
        self.assertIn("--backup-dir", cm.exception.msg)
        self.assertNotIn("wipe", self.fs.names())
        self.assertFalse((backup / "manifest.json").exists())

    def test_log_file_on_target_disk(self):
        log = (self.td / "log" / "reimager.log").resolve()
        self.fs.inspector.mount_source = lambda p: "/dev/sda1" if p in (str(log), str(log.parent)) else None
        with self.assertRaises(ValidationError) as cm:
            self.confirmed().run()
        self.assertIn("--log-file", cm.exception.msg)
        self.assertNotIn("wipe", self.fs.names())

    def test_not_root(self):
        with mock.patch("reimager.core.sanity_checker.os.geteuid", return_value=1000):
            with self.assertRaises(ValidationError):
                self.confirmed().run()


class TestMain(unittest.TestCase):
    def tearDown(self):
        logger = logging.getLogger(LOGGER_NAME)
        for h in list(logger.handlers):
            logger.removeHandler(h)

    def run_main(self, argv):
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            with self.assertRaises(SystemExit) as cm:
                main(argv)
        return cm.exception.code, out.getvalue()

    def test_generate_config(self):
        code, out = self.run_main(["generate-config"])
        self.assertEqual(code, 0)
        self.assertIn("profile: ubuntu-24.04", out)

    def test_profiles(self):
        code, out = self.run_main(["profiles"])
        self.assertEqual(code, 0)
        self.assertIn("debian-12", out)
        self.assertIn("alpine-3.19", out)

    def test_dump_args(self):
        code, out = self.run_main(["--dump-args", "run", "--profile", "rocky-8"])
        self.assertEqual(code, 0)
        self.assertIn('"profile": "rocky-8"', out)


if __name__ == "__main__":
    unittest.main()
