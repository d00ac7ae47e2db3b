import tempfile
import unittest
from pathlib import Path

from reimager.cli.menu import CONFIRM_TOKEN, Menu
from reimager.config.profiles import BUILTIN_PROFILES, ProfileCatalog
from reimager.core.context import GiB, InstallationSelection, TargetDisk
from reimager.core.exceptions import ValidationError
from reimager.core.sanity_checker import REQUIRED_TOOLS, SanityChecker

from fakes import quiet_logger


def scripted(answers):
    it = iter(answers)

    def _input(_prompt):
        try:
            return next(it)
        except StopIteration:
            raise EOFError

    out = []
    return Menu(quiet_logger(), input_fn=_input, print_fn=lambda *a, **k: out.append(" ".join(map(str, a)))), out


class TestProfileCatalog(unittest.TestCase):
    def test_builtins(self):
        cat = ProfileCatalog(quiet_logger())
        self.assertEqual(len(cat), 8)
        self.assertEqual(cat.by_index(1).key, "ubuntu-24.04")
        self.assertEqual(cat.get("debian-12").url, BUILTIN_PROFILES[3].url)
        self.assertIsNone(cat.get("rocky-8").sha256)

    def test_config_profile_replaces_builtin(self):
        cat = ProfileCatalog(quiet_logger(), [
            {"key": "debian-12", "url": "https://mirror.example/debian.qcow2", "sha256": "ab" * 32},
            {"key": "mine", "url": "https://mirror.example/mine.img"},
        ])
        self.assertEqual(len(cat), 9)
        d = cat.get("debian-12")
        self.assertEqual(d.url, "https://mirror.example/debian.qcow2")
        self.assertEqual(d.selection().sha256, "ab" * 32)
        self.assertEqual(cat.get("mine").name, "mine")

    def test_invalid_entries(self):
        with self.assertRaises(ValidationError):
            ProfileCatalog(quiet_logger(), [{"key": "nourl"}])
        cat = ProfileCatalog(quiet_logger())
        with self.assertRaises(ValidationError):
            cat.get("windows-11")
        for n in (0, 9):
            with self.assertRaises(ValidationError):
                cat.by_index(n)


class TestMenu(unittest.TestCase):
    def setUp(self):
        self.cat = ProfileCatalog(quiet_logger())

    def test_pick_builtin_after_invalid_input(self):
        menu, out = scripted(["42", "x", "4"])
        sel = menu.choose(self.cat)
        self.assertEqual(sel.name, "Debian 12 (Bookworm)")
        self.assertFalse(sel.custom)
        self.assertEqual(sum("Invalid choice" in l for l in out), 2)

    def test_custom_image(self):
        menu, _out = scripted(["9", "", "9", "https://example.org/x.img", ""])
        sel = menu.choose(self.cat)
        self.assertTrue(sel.custom)
        self.assertEqual(sel.url, "https://example.org/x.img")
        self.assertIsNone(sel.sha256)

    def test_exit(self):
        menu, _out = scripted(["0"])
        self.assertIsNone(menu.choose(self.cat))

    def test_confirm_needs_exact_token(self):
        sel = InstallationSelection(name="Debian", url="https://x/y.img")
        menu, out = scripted([CONFIRM_TOKEN])
        self.assertTrue(menu.confirm(sel, "/dev/sda", "30.0 GiB", "/root/backup"))
        self.assertTrue(any("NONE (integrity cannot be verified)" in l for l in out))
        for answer in ("yes", "Yes", ""):
            menu, _out = scripted([answer])
            self.assertFalse(menu.confirm(sel, "/dev/sda", "30.0 GiB", "/root/backup"))

    def test_eof_is_a_no(self):
        menu, _out = scripted([])
        self.assertFalse(menu.yes_no("Continue?"))
        self.assertEqual(menu.ask("? "), "")


class TestSanityChecker(unittest.TestCase):
    def test_missing_required_tool(self):
        c = SanityChecker(quiet_logger(), which=lambda t: None if t == "rsync" else f"/usr/bin/{t}")
        with self.assertRaises(ValidationError) as cm:
            c.check_tools()
        self.assertEqual(cm.exception.context["missing"], ["rsync"])

    def test_either_wiper_is_enough(self):
        c = SanityChecker(quiet_logger(), which=lambda t: None if t in ("sgdisk", "qemu-nbd") else f"/usr/bin/{t}")
        self.assertEqual(c.check_tools(), ["qemu-nbd"])
        c = SanityChecker(quiet_logger(), which=lambda t: f"/usr/bin/{t}" if t in REQUIRED_TOOLS else None)
        with self.assertRaises(ValidationError) as cm:
            c.check_tools()
        self.assertEqual(cm.exception.context["missing"], ["sgdisk or wipefs"])

    def test_work_dir_on_target(self):
        disk = TargetDisk("/dev/sda", 30 * GiB)
        c = SanityChecker(quiet_logger())
        with tempfile.TemporaryDirectory() as td:
            work = Path(td) / "not" / "yet" / "there"
            seen = []

            def mount_source(p):
                seen.append(p)
                return "/dev/sda1"

            with self.assertRaises(ValidationError):
                c.check_work_dir(work, disk, lambda src: "/dev/sda", mount_source)
            self.assertEqual(seen, [td])
            c.check_work_dir(work, disk, lambda src: "/dev/sdb", mount_source)


if __name__ == "__main__":
    unittest.main()
