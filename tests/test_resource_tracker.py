import signal
import tempfile
import unittest
from pathlib import Path

from reimager.core.resource_tracker import ResourceKind, ResourceTracker

from fakes import quiet_logger


class TestResourceTracker(unittest.TestCase):
    def setUp(self):
        self.order = []
        self.t = ResourceTracker(quiet_logger())

    def push(self, name, kind=ResourceKind.MOUNT):
        return self.t.push(kind, name, lambda: self.order.append(name))

    def test_reverse_order_and_once(self):
        for n in ("a", "b", "c"):
            self.push(n)
        self.t.release_all()
        self.t.release_all()
        self.assertEqual(self.order, ["c", "b", "a"])
        self.assertEqual(self.t.active, [])

    def test_failing_release_does_not_stop_others(self):
        self.push("a")

        def boom():
            raise OSError("busy")
        self.t.push(ResourceKind.MOUNT, "b", boom)
        self.push("c")
        self.t.release_all()
        self.assertEqual(self.order, ["c", "a"])

    def test_termination_signals_ignored_while_releasing(self):
        sigs = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
        before = {s: signal.getsignal(s) for s in sigs}
        seen = {}
        self.t.push(ResourceKind.MOUNT, "a", lambda: seen.update({s: signal.getsignal(s) for s in sigs}))
        self.t.release_all()
        self.assertEqual(seen, {s: signal.SIG_IGN for s in sigs})
        self.assertEqual({s: signal.getsignal(s) for s in sigs}, before)

    def test_sweepers_run_after_resources(self):
        self.push("a")
        self.t.add_sweeper("nbd", lambda: self.order.append("sweep"))
        self.t.release_all()
        self.assertEqual(self.order, ["a", "sweep"])

    def test_session_rolls_back_on_error_only(self):
        with self.assertRaises(RuntimeError):
            with self.t.session("first") as s:
                s.push(ResourceKind.NBD, "/dev/nbd0", lambda: self.order.append("nbd0"))
                s.push(ResourceKind.MOUNT, "/src", lambda: self.order.append("src"))
                raise RuntimeError("mount failed")
        self.assertEqual(self.order, ["src", "nbd0"])

        with self.t.session("second") as s2:
            s2.push(ResourceKind.LOOP, "/dev/loop0", lambda: self.order.append("loop0"))
        self.assertEqual(len(s2.active), 1)
        s2.close()
        s2.close()
        self.assertEqual(self.order, ["src", "nbd0", "loop0"])
        self.assertEqual(self.t.active, [])

    def test_release_handle_by_kind(self):
        self.t.push(ResourceKind.MOUNT_POINT, "/run/target", lambda: self.order.append("rmdir"))
        self.t.push(ResourceKind.MOUNT, "/run/target", lambda: self.order.append("umount"))
        self.assertTrue(self.t.release_handle("/run/target", kind=ResourceKind.MOUNT))
        self.assertEqual(self.order, ["umount"])
        self.assertFalse(self.t.release_handle("/run/target", kind=ResourceKind.MOUNT))

    def test_protected_paths_survive(self):
        with tempfile.TemporaryDirectory() as td:
            work = Path(td) / "work"
            backup = work / "backup"
            backup.mkdir(parents=True)
            (backup / "manifest.json").write_text("{}")
            scratch = Path(td) / "scratch"
            scratch.mkdir()
            self.t.protect(backup)
            self.t.push_temp_dir(work)
            self.t.push_temp_dir(scratch)
            self.t.release_all()
            self.assertTrue((backup / "manifest.json").exists())
            self.assertFalse(scratch.exists())

    def test_mount_point_removal(self):
        with tempfile.TemporaryDirectory() as td:
            mp = Path(td) / "target"
            mp.mkdir()
            self.t.push_mount_point(mp)
            self.t.push_mount_point(Path(td) / "never-created")
            self.t.release_all()
            self.assertFalse(mp.exists())


if __name__ == "__main__":
    unittest.main()
