from __future__ import annotations
import argparse
import glob
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Set

import yaml

from ..core.utils import U

CONFIG_SUFFIXES = (".yaml", ".yml", ".json")
# config-only keys with no matching command line option
EXTRA_KEYS = {"profiles"}


class Config:
    @staticmethod
    def _parse(p: Path) -> Any:
        text = p.read_text(encoding="utf-8")
        if p.suffix.lower() == ".json":
            return json.loads(text)
        return yaml.safe_load(text) or {}

    @staticmethod
    def load_one(logger: logging.Logger, path: str) -> Dict[str, Any]:
        p = Path(path).expanduser().resolve()
        if not p.is_file():
            U.die(logger, f"Config file {p} does not exist", 2)
        try:
            data = Config._parse(p)
        except yaml.YAMLError as e:
            U.die(logger, f"{p}: not valid YAML: {e}", 2)
        except (OSError, ValueError) as e:
            U.die(logger, f"{p}: cannot read config: {e}", 2)
        if not isinstance(data, dict):
            U.die(logger, f"{p}: top level must be a mapping of option names", 2)
        # `work-dir` and `work_dir` are the same key
        out = {str(k).replace("-", "_"): v for k, v in data.items()}
        logger.debug(f"Config {p}: {sorted(out)}")
        return out

    @staticmethod
    def merge_profiles(base: List[Any], extra: List[Any]) -> List[Any]:
        """Profile lists accumulate across files; a repeated key replaces the earlier entry."""
        keys = {d.get("key") for d in extra if isinstance(d, dict)}
        return [d for d in base if not (isinstance(d, dict) and d.get("key") in keys)] + list(extra)

    @staticmethod
    def merge_dicts(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """
        Later files win:
        - dict + dict => recurse
        - `profiles` lists => accumulate (see merge_profiles)
        - anything else => replaced
        """
        out = dict(base)
        for k, v in override.items():
            old = out.get(k)
            if isinstance(old, dict) and isinstance(v, dict):
                out[k] = Config.merge_dicts(old, v)
            elif k == "profiles" and isinstance(old, list) and isinstance(v, list):
                out[k] = Config.merge_profiles(old, v)
            else:
                out[k] = v
        return out

    @staticmethod
    def load_many(logger: logging.Logger, paths: List[str]) -> Dict[str, Any]:
        conf: Dict[str, Any] = {}
        for p in paths:
            conf = Config.merge_dicts(conf, Config.load_one(logger, p))
        return conf

    @staticmethod
    def _all_actions(parser: argparse.ArgumentParser):
        yield "global", parser._actions
        for act in parser._actions:
            if isinstance(act, argparse._SubParsersAction):
                for name, sp in act.choices.items():
                    yield name, sp._actions

    @staticmethod
    def apply_as_defaults(logger: logging.Logger, parser: argparse.ArgumentParser, conf: Dict[str, Any]) -> None:
        if not conf:
            return
        known: Set[str] = set(EXTRA_KEYS)
        for scope, actions in Config._all_actions(parser):
            for act in actions:
                dest = getattr(act, "dest", None)
                if not dest or dest == argparse.SUPPRESS:
                    continue
                known.add(dest)
                if dest not in conf:
                    continue
                logger.debug(f"[config:{scope}] {dest}: {act.default!r} -> {conf[dest]!r}")
                act.default = conf[dest]
                if act.required and conf[dest] is not None:
                    act.required = False
        for k in sorted(set(conf) - known):
            logger.warning(f"Ignoring unknown config key: {k}")

    @staticmethod
    def expand_configs(logger: logging.Logger, configs: List[str]) -> List[str]:
        """Directories contribute their config files in name order; globs are expanded."""
        expanded: List[str] = []
        for c in configs:
            p = Path(c).expanduser()
            if p.is_dir():
                expanded += [str(f) for f in sorted(p.rglob("*")) if f.is_file() and f.suffix.lower() in CONFIG_SUFFIXES]
            elif any(ch in c for ch in "*?["):
                expanded += sorted(glob.glob(str(p)))
            else:
                expanded.append(c)
        logger.debug(f"Config files: {expanded}")
        return expanded
