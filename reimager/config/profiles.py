from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.context import InstallationSelection
from ..core.exceptions import ValidationError


@dataclass(frozen=True)
class OSProfile:
    key: str
    name: str
    url: str
    sha256: Optional[str] = None

    def selection(self) -> InstallationSelection:
        return InstallationSelection(name=self.name, url=self.url, sha256=self.sha256)


# Upstream "latest" images are rebuilt in place, so no checksum is pinned here.
BUILTIN_PROFILES: List[OSProfile] = [
    OSProfile("ubuntu-24.04", "Ubuntu 24.04 LTS (Noble)",
              "https://cloud-images.ubuntu.com/releases/24.04/release/ubuntu-24.04-server-cloudimg-amd64.img"),
    OSProfile("ubuntu-22.04", "Ubuntu 22.04 LTS (Jammy)",
              "https://cloud-images.ubuntu.com/releases/22.04/release/ubuntu-22.04-server-cloudimg-amd64.img"),
    OSProfile("ubuntu-20.04", "Ubuntu 20.04 LTS (Focal)",
              "https://cloud-images.ubuntu.com/releases/20.04/release/ubuntu-20.04-server-cloudimg-amd64.img"),
    OSProfile("debian-12", "Debian 12 (Bookworm)",
              "https://cloud.debian.org/images/cloud/bookworm/latest/debian-12-generic-amd64.qcow2"),
    OSProfile("almalinux-8", "AlmaLinux 8",
              "https://repo.almalinux.org/almalinux/8/cloud/x86_64/images/AlmaLinux-8-GenericCloud-latest.x86_64.qcow2"),
    OSProfile("rocky-8", "Rocky Linux 8",
              "https://download.rockylinux.org/pub/rocky/8/images/x86_64/Rocky-8-GenericCloud.latest.x86_64.qcow2"),
    OSProfile("centos-stream-9", "CentOS Stream 9",
              "https://cloud.centos.org/centos/9-stream/x86_64/images/CentOS-Stream-GenericCloud-9-latest.x86_64.qcow2"),
    OSProfile("alpine-3.19", "Alpine Linux 3.19",
              "https://dl-cdn.alpinelinux.org/alpine/v3.19/releases/cloud/alpine-virt-3.19.0-x86_64.qcow2"),
]


class ProfileCatalog:
    def __init__(self, logger: logging.Logger, extra: Optional[List[Dict[str, Any]]] = None):
        self.logger = logger
        self.profiles: List[OSProfile] = list(BUILTIN_PROFILES)
        for d in extra or []:
            self.add(d)

    def add(self, d: Dict[str, Any]) -> OSProfile:
        if not isinstance(d, dict) or not d.get("key") or not d.get("url"):
            raise ValidationError(msg=f"Profile entries need at least 'key' and 'url': {d!r}")
        p = OSProfile(key=str(d["key"]), name=str(d.get("name") or d["key"]), url=str(d["url"]), sha256=d.get("sha256") or None)
        # a config entry with a built-in key replaces the built-in
        self.profiles = [x for x in self.profiles if x.key != p.key] + [p]
        self.logger.debug(f"Profile {p.key}: {p.url}")
        return p

    def get(self, key: str) -> OSProfile:
        for p in self.profiles:
            if p.key == key:
                return p
        raise ValidationError(msg=f"Unknown profile {key!r} (see `reimager profiles`)")

    def by_index(self, n: int) -> OSProfile:
        """1-based, as shown in the menu."""
        if n < 1 or n > len(self.profiles):
            raise ValidationError(msg=f"Invalid choice {n}")
        return self.profiles[n - 1]

    def __iter__(self):
        return iter(self.profiles)

    def __len__(self) -> int:
        return len(self.profiles)
