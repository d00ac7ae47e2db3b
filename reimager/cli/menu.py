from __future__ import annotations

import logging
from typing import Callable, Optional

from ..config.profiles import ProfileCatalog
from ..core.context import InstallationSelection
from .help_texts import CONFIRM_TEXT

CONFIRM_TOKEN = "YES"

BANNER = """
╔═══════════════════════════════════════════════════════════════════════════╗
║                      reimager: reinstall the boot disk                    ║
╚═══════════════════════════════════════════════════════════════════════════╝

WARNING: this DESTROYS all data on the OS disk and installs a new operating
         system. SSH keys and network configuration are preserved.
"""


class Menu:
    """Operator prompts; input/output are injectable for tests."""

    def __init__(
        self,
        logger: logging.Logger,
        *,
        input_fn: Callable[[str], str] = input,
        print_fn: Callable[..., None] = print,
    ):
        self.logger = logger
        self.input = input_fn
        self.print = print_fn

    def ask(self, prompt: str) -> str:
        try:
            return self.input(prompt).strip()
        except EOFError:
            return ""

    def yes_no(self, question: str) -> bool:
        return self.ask(f"{question} (yes/no): ").lower() in ("y", "yes")

    def choose(self, catalog: ProfileCatalog) -> Optional[InstallationSelection]:
        """None means the operator chose to exit."""
        self.print(BANNER)
        self.print("Select an OS to install:\n")
        for i, p in enumerate(catalog, start=1):
            self.print(f"  {i:>2}) {p.name}")
        custom = len(catalog) + 1
        self.print(f"  {custom:>2}) Custom image (URL + SHA256)")
        self.print("   0) Exit\n")
        while True:
            raw = self.ask(f"Enter your choice [0-{custom}]: ")
            if raw == "0":
                return None
            if raw.isdigit() and 1 <= int(raw) < custom:
                return catalog.by_index(int(raw)).selection()
            if raw == str(custom):
                url = self.ask("Image URL: ")
                if not url:
                    self.print("A URL is required.")
                    continue
                sha = self.ask("SHA256 checksum (leave empty to skip verification): ")
                return InstallationSelection(name="Custom image", url=url, sha256=sha or None, custom=True)
            self.print(f"Invalid choice: {raw!r}")

    def confirm(self, selection: InstallationSelection, disk: str, size: str, backup: str) -> bool:
        self.print(CONFIRM_TEXT.format(
            name=selection.name,
            disk=disk,
            size=size,
            url=selection.url,
            checksum=selection.sha256 or "NONE (integrity cannot be verified)",
            backup=backup,
        ))
        return self.ask(f"Type '{CONFIRM_TOKEN}' in capital letters to proceed: ") == CONFIRM_TOKEN
