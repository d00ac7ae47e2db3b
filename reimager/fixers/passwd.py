from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict

NOBODY_UID = 65534
FIRST_REGULAR_UID = 1000


@dataclass
class PasswdEntry:
    name: str
    uid: int
    gid: int
    home: str

    @property
    def regular(self) -> bool:
        return self.uid >= FIRST_REGULAR_UID and self.uid != NOBODY_UID


def parse_passwd(text: str) -> Dict[str, PasswdEntry]:
    out: Dict[str, PasswdEntry] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        f = line.split(":")
        if len(f) < 7:
            continue
        try:
            out[f[0]] = PasswdEntry(name=f[0], uid=int(f[2]), gid=int(f[3]), home=f[5])
        except ValueError:
            continue
    return out


def read_passwd(root: Path) -> Dict[str, PasswdEntry]:
    """passwd entries of the tree mounted at root; empty when there is no passwd."""
    p = root / "etc" / "passwd"
    if not p.is_file():
        return {}
    return parse_passwd(p.read_text(encoding="utf-8", errors="replace"))
