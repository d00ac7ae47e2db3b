from __future__ import annotations

import logging
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from ..core.context import IdentityBundle
from ..core.utils import U
from .cloud_init_injector import OVERRIDE_NAME, CloudInitOverride
from .passwd import read_passwd

WAAGENT_FLAGS = {
    "Provisioning.RegenerateSshHostKeyPair": "n",
    "Provisioning.DeleteRootPassword": "n",
}


def force_waagent_flags(text: str) -> str:
    """Set each flag (commented out or not) to its value; append missing ones."""
    for key, val in WAAGENT_FLAGS.items():
        rx = re.compile(rf"^[ \t]*#?[ \t]*{re.escape(key)}[ \t]*=.*$", re.MULTILINE)
        if rx.search(text):
            text = rx.sub(f"{key}={val}", text)
        else:
            if text and not text.endswith("\n"):
                text += "\n"
            text += f"{key}={val}\n"
    return text


@dataclass
class RestoreReport:
    restored: List[str] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


class IdentityRestore:
    def __init__(self, logger: logging.Logger, bundle: IdentityBundle, target_root: Path, *, datasource: str = "Azure"):
        self.logger = logger
        self.bundle = bundle
        self.target_root = Path(target_root)
        self.datasource = datasource
        self.report = RestoreReport()

    def target(self, path: str) -> Path:
        return self.target_root / path.lstrip("/")

    def _done(self, label: str) -> None:
        self.report.restored.append(label)
        self.logger.info(f"Restored {label}")

    def _skip(self, label: str, why: str) -> None:
        self.report.skipped[label] = why
        self.logger.warning(f"Not restoring {label}: {why}")

    @staticmethod
    def _lock_down(d: Path, uid: int, gid: int) -> None:
        """700 on directories, 600 on files, owned by uid:gid."""
        for root, dirs, files in os.walk(d):
            os.chmod(root, 0o700)
            os.chown(root, uid, gid)
            for name in files:
                p = os.path.join(root, name)
                if not os.path.islink(p):
                    os.chmod(p, 0o600)
                os.chown(p, uid, gid, follow_symlinks=False)

    # --- ssh ------------------------------------------------------------------------

    def restore_host_keys(self) -> None:
        src = self.bundle.ssh_dir
        dst = self.target("/etc/ssh")
        keys = sorted(src.glob("ssh_host_*")) if src.is_dir() else []
        if not keys:
            self.logger.info("No SSH host keys in the backup; the new system will generate its own")
        else:
            U.ensure_dir(dst)
            for k in keys:
                shutil.copy2(k, dst / k.name)
                os.chmod(dst / k.name, 0o644 if k.name.endswith(".pub") else 0o600)
            self._done(f"{len(keys)} SSH host key file(s)")
        cfg = src / "sshd_config"
        if cfg.is_file():
            if (dst / "sshd_config").exists():
                self.logger.info("Keeping the new image's sshd_config")
            else:
                U.ensure_dir(dst)
                shutil.copy2(cfg, dst / "sshd_config")
                self._done("/etc/ssh/sshd_config")

    def restore_root_keys(self) -> None:
        src = self.bundle.ssh_dir / "root_ssh"
        if not src.is_dir():
            return
        dst = self.target("/root/.ssh")
        U.ensure_dir(dst.parent, mode=0o700)
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
        self._lock_down(dst, 0, 0)
        self._done("/root/.ssh")

    def restore_user_keys(self) -> None:
        users = read_passwd(self.target_root)
        if not self.bundle.ssh_dir.is_dir():
            return
        for src in sorted(self.bundle.ssh_dir.glob("home_*")):
            name = src.name[len("home_"):]
            entry = users.get(name)
            if entry is None:
                self._skip(f"~{name}/.ssh", "user does not exist in the new image")
                continue
            home = self.target(entry.home)
            if not home.is_dir():
                U.ensure_dir(home, mode=0o755)
                os.chown(home, entry.uid, entry.gid)
            dst = home / ".ssh"
            shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True)
            self._lock_down(dst, entry.uid, entry.gid)
            self._done(f"~{name}/.ssh (uid={entry.uid})")

    # --- network ------------------------------------------------------------------

    def restore_network(self) -> None:
        src = self.bundle.network_dir
        if not src.is_dir():
            return
        plans = sorted(p for p in src.iterdir() if p.is_file() and p.suffix in (".yaml", ".yml"))
        if plans:
            dst = self.target("/etc/netplan")
            U.ensure_dir(dst)
            for p in plans:
                shutil.copy2(p, dst / p.name)
                os.chmod(dst / p.name, 0o600)
            self._done(f"{len(plans)} netplan file(s)")
        ifaces = src / "interfaces"
        if ifaces.is_file():
            dst = self.target("/etc/network/interfaces")
            U.ensure_dir(dst.parent)
            shutil.copy2(ifaces, dst)
            self._done("/etc/network/interfaces")

    # --- cloud agents ---------------------------------------------------------------

    def restore_cloud_init(self) -> None:
        ci = CloudInitOverride(self.logger, self.target_root, self.datasource)
        if not ci.present():
            self._skip("cloud-init override", "cloud-init is not installed in the new image")
            return
        dropins = self.bundle.cloud_dir / "cloud.cfg.d"
        if dropins.is_dir():
            U.ensure_dir(ci.cfg_dir)
            for p in sorted(dropins.glob("*.cfg")):
                if p.name == OVERRIDE_NAME:
                    continue
                shutil.copy2(p, ci.cfg_dir / p.name)
                self._done(f"cloud-init drop-in {p.name}")
        ci.write()
        self.report.restored.append(f"cloud-init override {OVERRIDE_NAME}")

    def restore_waagent(self) -> None:
        src = self.bundle.cloud_dir / "waagent.conf"
        dst = self.target("/etc/waagent.conf")
        if src.is_file():
            shutil.copy2(src, dst)
            self._done("/etc/waagent.conf")
        if dst.is_file():
            text = dst.read_text(encoding="utf-8", errors="replace")
            U.write_file(dst, force_waagent_flags(text), 0o644)
            self.logger.info("waagent: host key regeneration and root password deletion disabled")

    def run(self) -> RestoreReport:
        U.banner(self.logger, "Restore system identity")
        steps = [
            ("ssh host keys", self.restore_host_keys),
            ("root ssh keys", self.restore_root_keys),
            ("user ssh keys", self.restore_user_keys),
            ("network config", self.restore_network),
            ("cloud-init", self.restore_cloud_init),
            ("waagent", self.restore_waagent),
        ]
        for label, fn in steps:
            try:
                fn()
            except (OSError, shutil.Error) as e:
                self._skip(label, str(e))
        return self.report

    def persist_bundle(self, ts: str) -> Path:
        """Keep a copy of the bundle inside the new root for later inspection."""
        dst = self.target(f"/root/reimager-backup-{ts}")
        U.ensure_dir(dst.parent, mode=0o700)
        shutil.copytree(self.bundle.root, dst, symlinks=True, dirs_exist_ok=True)
        os.chmod(dst, 0o700)
        self.logger.info(f"Identity bundle copied to {dst.relative_to(self.target_root)} in the new root")
        return dst
