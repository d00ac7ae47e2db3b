from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List

from .exec_root import IsolatedExecRoot

# tried in order; the first that exists and succeeds wins
CONFIG_GENERATORS = [
    ["update-grub"],
    ["grub-mkconfig", "-o", "/boot/grub/grub.cfg"],
    ["grub2-mkconfig", "-o", "/boot/grub2/grub.cfg"],
]


class BootloaderTool:
    def __init__(self, logger: logging.Logger, exec_root: IsolatedExecRoot):
        self.logger = logger
        self.exec_root = exec_root

    def install(self, root: Path, disk: str, *, efi: bool, bootloader_id: str) -> None:
        binary = self.exec_root.first_available(root, ["grub-install", "grub2-install"])
        if binary is None:
            raise FileNotFoundError("neither grub-install nor grub2-install exists in the new root")
        cmd: List[str] = [binary]
        if efi:
            cmd += ["--target=x86_64-efi", "--efi-directory=/boot/efi", f"--bootloader-id={bootloader_id}"]
        else:
            cmd += ["--target=i386-pc"]
        cmd += ["--recheck", "--no-floppy", disk]
        self.exec_root.run(root, cmd, check=True)

    def make_config(self, root: Path) -> str:
        """Returns the generator that succeeded; raises the last failure otherwise."""
        last: BaseException = FileNotFoundError("no grub config generator in the new root")
        for cmd in CONFIG_GENERATORS:
            if not self.exec_root.has(root, cmd[0]):
                continue
            try:
                self.exec_root.run(root, cmd, check=True)
                return cmd[0]
            except subprocess.CalledProcessError as e:
                self.logger.debug(f"{cmd[0]} failed with exit {e.returncode}")
                last = e
        raise last
