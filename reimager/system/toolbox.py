from __future__ import annotations

import logging
from dataclasses import dataclass

from ..converters.qemu_converter import ImageConverter
from .archiver import Archiver
from .block_mapper import BlockMapper
from .bootloader_tool import BootloaderTool
from .disk_tools import FilesystemInspector, FormatTool, PartitionTool
from .exec_root import IsolatedExecRoot
from .mounts import MountTool


@dataclass
class SystemTools:
    """Every boundary to an external program, in one place."""
    inspector: FilesystemInspector
    partition: PartitionTool
    fmt: FormatTool
    mount: MountTool
    mapper: BlockMapper
    archiver: Archiver
    exec_root: IsolatedExecRoot
    bootloader: BootloaderTool
    converter: ImageConverter

    @classmethod
    def create(cls, logger: logging.Logger) -> "SystemTools":
        exec_root = IsolatedExecRoot(logger)
        return cls(
            inspector=FilesystemInspector(logger),
            partition=PartitionTool(logger),
            fmt=FormatTool(logger),
            mount=MountTool(logger),
            mapper=BlockMapper(logger),
            archiver=Archiver(logger),
            exec_root=exec_root,
            bootloader=BootloaderTool(logger, exec_root),
            converter=ImageConverter(logger),
        )
