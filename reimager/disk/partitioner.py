from __future__ import annotations

import logging
import subprocess
import time
from typing import Callable, List

from ..core.context import EFI_END_MIB, EFI_START_MIB, PartitionEntry, PartitionRole, PartitionSpec, TargetDisk
from ..core.exceptions import PartitionError, PartitionTimeout
from ..core.utils import U
from ..system.disk_tools import FilesystemInspector, FormatTool, PartitionTool
from ..system.mounts import MountTool


class PartitionPlanner:
    """
    Fixed two-partition GPT layout:

      1  EFI   1MiB..513MiB  vfat  esp,boot
      2  root  513MiB..100%  ext4
    """

    def __init__(
        self,
        logger: logging.Logger,
        partition: PartitionTool,
        fmt: FormatTool,
        inspector: FilesystemInspector,
        mount: MountTool,
        *,
        timeout: int = 30,
        reprobe_every: int = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.logger = logger
        self.partition = partition
        self.fmt = fmt
        self.inspector = inspector
        self.mount = mount
        self.timeout = timeout
        self.reprobe_every = max(1, reprobe_every)
        self.sleep = sleep

    def plan(self, disk: TargetDisk) -> PartitionSpec:
        return PartitionSpec(
            disk=disk,
            entries=[
                PartitionEntry(
                    number=1,
                    role=PartitionRole.EFI,
                    fs_type="vfat",
                    start=f"{EFI_START_MIB}MiB",
                    end=f"{EFI_END_MIB}MiB",
                    flags=["esp", "boot"],
                    device=disk.partition_node(1),
                ),
                PartitionEntry(
                    number=2,
                    role=PartitionRole.ROOT,
                    fs_type="ext4",
                    start=f"{EFI_END_MIB}MiB",
                    end="100%",
                    device=disk.partition_node(2),
                ),
            ],
        )

    def release_mounts(self, disk: TargetDisk) -> None:
        for mp in self.inspector.mounted_under(disk.device):
            try:
                self.mount.unmount(mp, force=True)
                self.logger.info(f"Unmounted {mp}")
            except (subprocess.CalledProcessError, OSError) as e:
                self.logger.warning(f"Could not unmount {mp}: {U.cmd_error(e)}")

    def apply(self, disk: TargetDisk, spec: PartitionSpec) -> None:
        U.banner(self.logger, f"Partition {disk.device}")
        self.release_mounts(disk)
        try:
            self.partition.wipe(disk.device)
            self.partition.make_label(disk.device, "gpt")
            for e in spec.entries:
                self.partition.make_partition(disk.device, e.fs_type, e.start, e.end)
                for flag in e.flags:
                    self.partition.set_flag(disk.device, e.number, flag)
        except (subprocess.CalledProcessError, OSError) as e:
            raise PartitionError(msg=f"Writing the partition table on {disk.device} failed: {U.cmd_error(e)}", cause=e)
        self.logger.info("Partition table written: " + ", ".join(f"{e.number}={e.role.value}({e.start}..{e.end})" for e in spec.entries))
        self.wait_for_nodes(spec)

    def wait_for_nodes(self, spec: PartitionSpec) -> int:
        """
        Poll once per tick for up to `timeout` ticks; the table is re-read
        first and then every `reprobe_every` ticks. Returns the number of
        re-reads issued.
        """
        nodes: List[str] = [e.device for e in spec.entries]
        reprobes = 0
        for tick in range(self.timeout):
            if tick % self.reprobe_every == 0:
                self.partition.reread(spec.disk.device)
                reprobes += 1
            if all(self.partition.node_exists(n) for n in nodes):
                self.logger.info(f"Partition nodes ready after {tick}s: {', '.join(nodes)}")
                return reprobes
            self.sleep(1)
        missing = [n for n in nodes if not self.partition.node_exists(n)]
        if not missing:
            return reprobes
        raise PartitionTimeout(
            msg=f"Partition device nodes did not appear within {self.timeout}s: {', '.join(missing)}",
            context={"reprobes": reprobes},
        )

    def format(self, spec: PartitionSpec) -> None:
        for e in spec.entries:
            self.logger.info(f"Formatting {e.device} as {e.fs_type}")
            try:
                self.fmt.mkfs(e.device, e.fs_type)
            except (subprocess.CalledProcessError, OSError) as ex:
                raise PartitionError(msg=f"mkfs.{e.fs_type} on {e.device} failed: {U.cmd_error(ex)}", cause=ex)
