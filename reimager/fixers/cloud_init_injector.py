from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..core.utils import U

OVERRIDE_NAME = "99-zz-reimager-preserve.cfg"
HEADER = "# Written by reimager: keep the restored SSH host keys, root access and network config.\n"


def render_override(datasource: str = "Azure") -> Dict[str, Any]:
    return {
        "datasource_list": [datasource],
        "ssh_deletekeys": False,
        "ssh_genkeytypes": [],
        "disable_root": False,
        "preserve_hostname": False,
        "datasource": {datasource: {"apply_network_config": True}},
    }


class CloudInitOverride:
    """
    cloud-init reads /etc/cloud/cloud.cfg.d/*.cfg in lexical order and the
    last writer wins, so the override is named to sort after every drop-in.
    """

    def __init__(self, logger: logging.Logger, target_root: Path, datasource: str = "Azure"):
        self.logger = logger
        self.target_root = Path(target_root)
        self.datasource = datasource

    @property
    def cfg_dir(self) -> Path:
        return self.target_root / "etc" / "cloud" / "cloud.cfg.d"

    def present(self) -> bool:
        return (self.target_root / "etc" / "cloud").is_dir()

    def later_dropins(self) -> List[str]:
        if not self.cfg_dir.is_dir():
            return []
        return sorted(p.name for p in self.cfg_dir.glob("*.cfg") if p.name > OVERRIDE_NAME)

    def write(self) -> Path:
        dst = self.cfg_dir / OVERRIDE_NAME
        body = HEADER + yaml.safe_dump(render_override(self.datasource), sort_keys=False, default_flow_style=False)
        U.write_file(dst, body, 0o644)
        self.logger.info(f"cloud-init override written: {dst.relative_to(self.target_root)} (datasource={self.datasource})")
        for name in self.later_dropins():
            self.logger.warning(f"cloud-init drop-in {name} sorts after {OVERRIDE_NAME} and may override it")
        return dst
