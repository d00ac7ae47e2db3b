import unittest, tempfile
import argparse
from pathlib import Path

from reimager.cli.argument_parser import method_list, parse_args_with_config
from reimager.core.exceptions import Fatal

from fakes import quiet_logger


class TestCLIConfigTwoPhaseParse(unittest.TestCase):
    def test_config_supplies_run_options(self):
        with tempfile.TemporaryDirectory() as td:
            td = Path(td)
            cfg = td / "cfg.yaml"
            cfg.write_text(
                "profile: debian-12\n"
                "datasource: OpenStack\n"
                "partition_timeout: 45\n"
                "mount_methods: [loop, raw]\n"
                "profiles:\n"
                "  - key: debian-12-pinned\n"
                "    url: https://example.org/debian.qcow2\n",
                encoding="utf-8",
            )

            args, conf, _logger = parse_args_with_config(argv=["--config", str(cfg), "run"], logger=quiet_logger())

            self.assertEqual(args.cmd, "run")
            self.assertEqual(args.profile, "debian-12")
            self.assertEqual(args.datasource, "OpenStack")
            self.assertEqual(args.partition_timeout, 45)
            self.assertEqual(args.mount_methods, ["loop", "raw"])
            self.assertEqual(args.profiles[0]["key"], "debian-12-pinned")
            self.assertIn("profile", conf)

    def test_cli_overrides_config(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = Path(td) / "cfg.yaml"
            cfg.write_text("datasource: OpenStack\n", encoding="utf-8")
            args, _conf, _logger = parse_args_with_config(
                argv=["--config", str(cfg), "run", "--datasource", "Azure"], logger=quiet_logger()
            )
            self.assertEqual(args.datasource, "Azure")

    def test_later_config_wins(self):
        with tempfile.TemporaryDirectory() as td:
            a = Path(td) / "a.yaml"
            b = Path(td) / "b.yaml"
            a.write_text("nbd_slots: 4\nreboot: true\n", encoding="utf-8")
            b.write_text("nbd_slots: 8\n", encoding="utf-8")
            args, _conf, _logger = parse_args_with_config(
                argv=["--config", str(a), "--config", str(b), "run"], logger=quiet_logger()
            )
            self.assertEqual(args.nbd_slots, 8)
            self.assertTrue(args.reboot)

    def test_profiles_accumulate_across_files(self):
        with tempfile.TemporaryDirectory() as td:
            d = Path(td) / "conf.d"
            d.mkdir()
            (d / "10-base.yaml").write_text(
                "profiles:\n"
                "  - {key: a, url: https://example.org/a.img}\n"
                "  - {key: b, url: https://example.org/b.img}\n",
                encoding="utf-8",
            )
            (d / "20-site.yml").write_text(
                "profiles:\n"
                "  - {key: b, url: https://mirror.example/b.img}\n"
                "work-dir: /srv/reimager\n",
                encoding="utf-8",
            )
            (d / "README.txt").write_text("not a config\n", encoding="utf-8")
            args, conf, _logger = parse_args_with_config(argv=["--config", str(d), "run"], logger=quiet_logger())
            self.assertEqual([p["key"] for p in args.profiles], ["a", "b"])
            self.assertEqual(args.profiles[1]["url"], "https://mirror.example/b.img")
            self.assertEqual(args.work_dir, "/srv/reimager")

    def test_unknown_key_warns(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = Path(td) / "cfg.json"
            cfg.write_text('{"datasource": "GCE", "colour": "blue"}', encoding="utf-8")
            logger = quiet_logger("reimager.test.cfg")
            with self.assertLogs(logger, level="WARNING") as cm:
                args, _conf, _logger = parse_args_with_config(argv=["--config", str(cfg), "run"], logger=logger)
            self.assertEqual(args.datasource, "GCE")
            self.assertTrue(any("colour" in line for line in cm.output))

    def test_defaults_without_config(self):
        args, conf, _logger = parse_args_with_config(argv=["run"], logger=quiet_logger())
        self.assertEqual(conf, {})
        self.assertIsNone(args.log_file)
        self.assertEqual(args.run_dir, "/run/reimager")
        self.assertEqual(args.mount_methods, ["nbd", "loop", "raw"])
        self.assertIsNone(args.confirm)
        self.assertEqual(args.profiles, [])

    def test_broken_config_is_fatal(self):
        with tempfile.TemporaryDirectory() as td:
            cfg = Path(td) / "cfg.yaml"
            cfg.write_text("- just\n- a list\n", encoding="utf-8")
            with self.assertRaises(Fatal) as cm:
                parse_args_with_config(argv=["--config", str(cfg), "run"], logger=quiet_logger())
            self.assertEqual(cm.exception.code, 2)

    def test_method_list(self):
        self.assertEqual(method_list("raw, nbd"), ["raw", "nbd"])
        with self.assertRaises(argparse.ArgumentTypeError):
            method_list("nbd,floppy")
        with self.assertRaises(argparse.ArgumentTypeError):
            method_list(" , ")


if __name__ == "__main__":
    unittest.main()
