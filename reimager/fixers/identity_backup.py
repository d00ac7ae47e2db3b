from __future__ import annotations

import datetime as _dt
import logging
import shutil
from pathlib import Path
from typing import Dict

from ..core.context import IdentityBundle
from ..core.utils import U
from .passwd import read_passwd

MANIFEST = "manifest.json"


class IdentityBackup:
    """
    Copies the host's SSH identity, network and cloud-agent configuration
    into a bundle before anything destructive happens.

    Every item is best effort: a failure is logged and recorded in
    bundle.skipped, and the backup continues.
    """

    def __init__(self, logger: logging.Logger, host_root: Path, bundle_dir: Path):
        self.logger = logger
        self.host_root = Path(host_root)
        self.bundle = IdentityBundle(root=Path(bundle_dir))

    def host(self, path: str) -> Path:
        return self.host_root / path.lstrip("/")

    def _copy(self, src: Path, dst: Path, label: str) -> bool:
        if not src.exists() and not src.is_symlink():
            self.logger.debug(f"Backup: {label} absent")
            return False
        try:
            U.ensure_dir(dst.parent)
            if src.is_dir() and not src.is_symlink():
                shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(src, dst, follow_symlinks=False)
        except (OSError, shutil.Error) as e:
            self.logger.warning(f"Backup of {label} failed: {e}")
            self.bundle.skipped[label] = str(e)
            return False
        self.bundle.items.append(label)
        return True

    def _copy_children(self, src_dir: Path, dst_dir: Path, label: str) -> None:
        if not src_dir.is_dir():
            self.logger.debug(f"Backup: {label} absent")
            return
        try:
            children = sorted(src_dir.iterdir())
        except OSError as e:
            self.logger.warning(f"Backup of {label} failed: {e}")
            self.bundle.skipped[label] = str(e)
            return
        for child in children:
            self._copy(child, dst_dir / child.name, f"{label}/{child.name}")

    def user_ssh_dirs(self) -> Dict[str, Path]:
        """Regular users with a ~/.ssh: passwd UID >= 1000 plus any /home/<name>/.ssh."""
        out: Dict[str, Path] = {}
        for e in read_passwd(self.host_root).values():
            if not e.regular or not e.home:
                continue
            d = self.host(e.home) / ".ssh"
            if d.is_dir():
                out[e.name] = d
        home = self.host("/home")
        if home.is_dir():
            for d in sorted(home.iterdir()):
                if d.name not in out and (d / ".ssh").is_dir():
                    out[d.name] = d / ".ssh"
        return out

    def run(self) -> IdentityBundle:
        U.banner(self.logger, "Back up system identity")
        b = self.bundle
        U.ensure_dir(b.root, mode=0o700)
        for d in (b.ssh_dir, b.network_dir, b.cloud_dir):
            U.ensure_dir(d, mode=0o700)

        self._copy_children(self.host("/etc/ssh"), b.ssh_dir, "/etc/ssh")
        self._copy(self.host("/root/.ssh"), b.ssh_dir / "root_ssh", "/root/.ssh")
        for user, d in self.user_ssh_dirs().items():
            if self._copy(d, b.ssh_dir / f"home_{user}", f"~{user}/.ssh"):
                b.users.append(user)

        self._copy_children(self.host("/etc/netplan"), b.network_dir, "/etc/netplan")
        self._copy(self.host("/etc/network/interfaces"), b.network_dir / "interfaces", "/etc/network/interfaces")

        self._copy_children(self.host("/etc/cloud"), b.cloud_dir, "/etc/cloud")
        self._copy(self.host("/etc/waagent.conf"), b.cloud_dir / "waagent.conf", "/etc/waagent.conf")

        manifest = {
            "created": _dt.datetime.now().isoformat(),
            "host_root": str(self.host_root),
            "items": b.items,
            "skipped": b.skipped,
            "users": b.users,
        }
        U.write_file(b.root / MANIFEST, U.json_dump(manifest) + "\n", 0o600)
        self.logger.info(f"Identity bundle at {b.root}: {len(b.items)} item(s), {len(b.skipped)} skipped, users={b.users or 'none'}")
        return b
