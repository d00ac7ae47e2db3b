import json
import subprocess
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from reimager.converters.qemu_converter import ImageConverter
from reimager.core.utils import U
from reimager.system.archiver import Archiver
from reimager.system.block_mapper import BlockMapper
from reimager.system.disk_tools import FilesystemInspector, FormatTool, PartitionTool

from fakes import quiet_logger

LSBLK = {
    "blockdevices": [{
        "name": "/dev/sda", "path": "/dev/sda", "type": "disk", "fstype": None, "mountpoint": None, "size": 32212254720,
        "children": [
            {"name": "/dev/sda1", "path": "/dev/sda1", "type": "part", "fstype": "ext4", "mountpoint": "/", "size": 30000000000},
            {"name": "/dev/sda15", "path": "/dev/sda15", "type": "part", "fstype": "vfat", "mountpoint": "/boot/efi", "size": 106954752},
        ],
    }]
}


class CommandStub:
    """Answers U.run_cmd by command name; records every argv."""

    def __init__(self, answers=None):
        self.answers = answers or {}
        self.cmds = []

    def __call__(self, logger, cmd, *, check=True, capture=False, env=None, timeout=None):
        self.cmds.append(list(cmd))
        rc, out = self.answers.get(cmd[0], (0, ""))
        if callable(out):
            out = out(cmd)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, out, f"{cmd[0]} failed")
        return subprocess.CompletedProcess(cmd, rc, out, "")


class ToolCase(unittest.TestCase):
    def stub(self, answers=None):
        s = CommandStub(answers)
        p = mock.patch.object(U, "run_cmd", s)
        p.start()
        self.addCleanup(p.stop)
        return s


class TestInspector(ToolCase):
    def test_partitions_and_mounts(self):
        self.stub({"lsblk": (0, json.dumps(LSBLK))})
        i = FilesystemInspector(quiet_logger())
        self.assertEqual([e.path for e in i.partitions("/dev/sda")], ["/dev/sda1", "/dev/sda15"])
        self.assertEqual(i.mounted_under("/dev/sda"), ["/boot/efi", "/"])

    def test_blkid_values(self):
        s = self.stub({"blkid": (0, "1234-ABCD\n")})
        i = FilesystemInspector(quiet_logger())
        self.assertEqual(i.uuid("/dev/sda1"), "1234-ABCD")
        self.assertEqual(s.cmds[-1], ["blkid", "-o", "value", "-s", "UUID", "/dev/sda1"])
        self.stub({"blkid": (2, "")})
        self.assertIsNone(i.fs_type("/dev/sdz"))

    def test_root_source(self):
        self.stub({"findmnt": (0, "/dev/nvme0n1p1\n")})
        self.assertEqual(FilesystemInspector(quiet_logger()).root_source(), "/dev/nvme0n1p1")


class TestPartitionAndFormat(ToolCase):
    def test_wipe_falls_back_to_wipefs(self):
        s = self.stub({"sgdisk": (2, "")})
        PartitionTool(quiet_logger()).wipe("/dev/sda")
        self.assertEqual(s.cmds[-1], ["wipefs", "-a", "/dev/sda"])

    def test_efi_partition_is_fat32(self):
        s = self.stub()
        PartitionTool(quiet_logger()).make_partition("/dev/sda", "vfat", "1MiB", "513MiB")
        self.assertEqual(s.cmds[-1], ["parted", "-s", "/dev/sda", "mkpart", "primary", "fat32", "1MiB", "513MiB"])

    def test_mkfs_commands(self):
        s = self.stub()
        f = FormatTool(quiet_logger())
        f.mkfs("/dev/sda1", "vfat")
        f.mkfs("/dev/sda2", "ext4")
        self.assertEqual(s.cmds, [["mkfs.vfat", "-F", "32", "/dev/sda1"], ["mkfs.ext4", "-F", "/dev/sda2"]])

    def test_e2fsck_corrected_is_success(self):
        self.stub({"e2fsck": (1, "")})
        FormatTool(quiet_logger()).check_ext("/dev/sda2")
        self.stub({"e2fsck": (4, "")})
        with self.assertRaises(subprocess.CalledProcessError):
            FormatTool(quiet_logger()).check_ext("/dev/sda2")


class TestBlockMapper(ToolCase):
    def test_kpartx_maps(self):
        out = "add map loop3p1 (253:0): 0 409600 linear 7:3 2048\nadd map loop3p2 (253:1): 0 9000 linear 7:3 411648\n"
        self.stub({"kpartx": (0, out)})
        self.assertEqual(BlockMapper(quiet_logger()).kpartx_add("/dev/loop3"), ["/dev/mapper/loop3p1", "/dev/mapper/loop3p2"])

    def test_loop_attach(self):
        self.stub({"losetup": (0, "/dev/loop3\n")})
        self.assertEqual(BlockMapper(quiet_logger()).loop_attach(Path("/tmp/disk.raw")), "/dev/loop3")
        self.stub({"losetup": (0, "")})
        with self.assertRaises(subprocess.CalledProcessError):
            BlockMapper(quiet_logger()).loop_attach(Path("/tmp/disk.raw"))

    def test_loops_backed_by_work_dir(self):
        with tempfile.TemporaryDirectory() as td:
            work = Path(td).resolve()
            listing = {"loopdevices": [
                {"name": "/dev/loop3", "back-file": f"{work}/download/disk.raw"},
                {"name": "/dev/loop4", "back-file": "/var/lib/snapd/snaps/core.snap"},
            ]}
            self.stub({"losetup": (0, json.dumps(listing))})
            self.assertEqual(BlockMapper(quiet_logger()).loops_backed_by(work), ["/dev/loop3"])

    def test_nbd_slot_without_node_is_free(self):
        self.stub()
        self.assertTrue(BlockMapper(quiet_logger()).nbd_slot_free("/dev/nbd-does-not-exist"))


class TestArchiverAndConverter(ToolCase):
    def test_rsync_copies_contents(self):
        s = self.stub()
        Archiver(quiet_logger()).copy_tree(Path("/run/src"), Path("/run/dst/"), ["/proc/*"])
        self.assertEqual(s.cmds[-1], ["rsync", "-aAXH", "--numeric-ids", "--exclude", "/proc/*", "/run/src/", "/run/dst/"])

    def test_dd_byte_range(self):
        s = self.stub()
        Archiver(quiet_logger()).block_copy(Path("/w/disk.raw"), "/dev/sda2", offset=1048576, length=4096)
        cmd = s.cmds[-1]
        self.assertIn("skip=1048576", cmd)
        self.assertIn("count=4096", cmd)
        self.assertEqual(cmd[-1], "iflag=skip_bytes,count_bytes")

    def test_partition_table(self):
        table = {"partitiontable": {"label": "gpt", "sectorsize": 512, "partitions": [{"node": "x1", "start": 2048, "size": 10}]}}
        self.stub({"sfdisk": (0, json.dumps(table))})
        self.assertEqual(ImageConverter(quiet_logger()).partition_table(Path("x"))["label"], "gpt")
        self.stub({"sfdisk": (1, "")})
        self.assertIsNone(ImageConverter(quiet_logger()).partition_table(Path("x")))


if __name__ == "__main__":
    unittest.main()
