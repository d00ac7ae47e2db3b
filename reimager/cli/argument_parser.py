from __future__ import annotations
import argparse
from typing import List

from ..core.logger import c
from ..config.config_loader import Config
from .. import __version__
from ..imaging.mount_strategy import DEFAULT_ORDER
from .help_texts import FEATURE_SUMMARY, YAML_EXAMPLE


def method_list(s: str) -> List[str]:
    out = [x.strip() for x in s.split(",") if x.strip()]
    bad = [x for x in out if x not in DEFAULT_ORDER]
    if bad or not out:
        raise argparse.ArgumentTypeError(f"mount methods must be a comma list of {','.join(DEFAULT_ORDER)}")
    return out


class CLI:
    @staticmethod
    def build_parser() -> argparse.ArgumentParser:
        epilog = (
            c("YAML example:\n", "cyan", ["bold"]) +
            c(YAML_EXAMPLE, "cyan") +
            "\n" +
            c("Feature summary:\n", "cyan", ["bold"]) +
            c(FEATURE_SUMMARY, "cyan")
        )
        p = argparse.ArgumentParser(
            prog="reimager",
            description=c("reimager: reinstall a cloud VM's boot disk in place, keeping SSH access", "green", ["bold"]),
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=epilog,
        )
        p.add_argument("--config", action="append", default=[], help="YAML/JSON config file (repeatable; later overrides earlier).")
        p.add_argument("--dump-config", action="store_true", help="Print merged normalized config and exit.")
        p.add_argument("--dump-args", action="store_true", help="Print final parsed args and exit.")
        p.add_argument("--version", action="version", version=__version__)
        p.add_argument("-v", "--verbose", action="count", default=0, help="Verbosity: -v, -vv")
        p.add_argument("--log-file", default=None, help="Log file (default for run/backup: /run/reimager/reimager.log).")
        p.add_argument("--run-dir", default="/run/reimager", help="tmpfs directory for mount points and the log.")
        p.add_argument("--work-dir", default="/mnt/reimager", help="Download/convert space; must not live on the target disk.")
        p.add_argument("--backup-dir", default=None, help="Identity bundle location (default: /run/reimager-backup-<timestamp>).")
        p.add_argument("--host-root", default="/", help=argparse.SUPPRESS)
        sub = p.add_subparsers(dest="cmd", required=True)

        pr = sub.add_parser("run", help="Reimage the boot disk")
        sel = pr.add_mutually_exclusive_group()
        sel.add_argument("--profile", default=None, help="OS profile key (see `reimager profiles`).")
        sel.add_argument("--url", default=None, help="Custom image URL (http/https/file or local path).")
        pr.add_argument("--sha256", default=None, help="Expected SHA-256 of the downloaded image.")
        pr.add_argument("--allow-unverified", action="store_true", help="Accept an image without checksum verification.")
        pr.add_argument("--allow-small-disk", action="store_true", help="Accept a boot disk below 10 GiB.")
        pr.add_argument("--confirm", default=None, metavar="YES", help="Non-interactive confirmation token (must be YES).")
        pr.add_argument("--datasource", default="Azure", help="cloud-init datasource pinned in the preserve override.")
        pr.add_argument("--partition-timeout", type=int, default=30, help="Seconds to wait for partition nodes.")
        pr.add_argument("--nbd-slots", type=int, default=16, help="Number of /dev/nbdN slots to scan.")
        pr.add_argument("--mount-methods", type=method_list, default=list(DEFAULT_ORDER), help="Comma list, e.g. nbd,loop,raw.")
        pr.add_argument("--dry-run", action="store_true", help="Stop after the image is downloaded and verified.")
        pr.add_argument("--reboot", action="store_true", help="Reboot into the new system when done.")

        sub.add_parser("profiles", help="List known OS profiles")
        sub.add_parser("detect-disk", help="Show the detected boot disk (read-only)")
        sub.add_parser("backup", help="Only back up SSH/network/cloud identity (non-destructive)")
        sub.add_parser("generate-config", help="Print an example YAML config")
        return p


def parse_args_with_config(argv=None, logger=None):
    """Two-phase parse so required values may come from config files.

    Phase 0: parse ONLY global flags needed to find config/logging
    Phase 1: load+merge config files and apply as argparse defaults
    Phase 2: full parse_args with defaults applied

    Returns: (args, merged_config_dict, logger)
    """
    parser = CLI.build_parser()

    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--config", action="append", default=[])
    pre.add_argument("-v", "--verbose", action="count", default=0)
    pre.add_argument("--log-file", dest="log_file", default=None)
    args0, _rest = pre.parse_known_args(argv)

    if logger is None:
        from ..core.logger import Log  # local import to avoid cycles
        logger = Log.setup(getattr(args0, "verbose", 0), getattr(args0, "log_file", None))

    conf = {}
    cfgs = getattr(args0, "config", None) or []
    if cfgs:
        cfgs = Config.expand_configs(logger, list(cfgs))
        conf = Config.load_many(logger, cfgs)
        Config.apply_as_defaults(logger, parser, conf)

    args = parser.parse_args(argv)
    # config-only key: extra catalog entries
    args.profiles = list(conf.get("profiles") or [])
    return args, conf, logger
