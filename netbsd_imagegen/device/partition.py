"""Partition layout for the image.

The layout is fixed: a 256 MiB swap partition followed by an FFS root
partition filling the rest of the disk, both 1 MiB aligned. The root
partition is then marked bootable with the GPT protective-MBR boot code.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from netbsd_imagegen.errors import DeviceError, ToolError

if TYPE_CHECKING:
    from netbsd_imagegen.device.boot import BootCode
    from netbsd_imagegen.tools import ToolRunner
    from netbsd_imagegen.types import DeviceBinding

logger = logging.getLogger(__name__)

SWAP_LABEL = "swap"
ROOT_LABEL = "root"
SWAP_SIZE = "256m"
ALIGNMENT = "1m"


def compose_partition_commands(device: str) -> list[list[str]]:
    """Compose the gpt(8) commands that add swap then root.

    Args:
        device: Bound vnd slot.

    Returns:
        Commands in execution order.
    """
    return [
        ["gpt", "add", "-a", ALIGNMENT, "-s", SWAP_SIZE, "-t", "swap", "-l", SWAP_LABEL, device],
        ["gpt", "add", "-a", ALIGNMENT, "-t", "ffs", "-l", ROOT_LABEL, device],
    ]


class PartitionPlanner:
    """Writes the swap/root layout and marks the root partition bootable."""

    def __init__(self, runner: ToolRunner, boot_code: BootCode) -> None:
        self.runner = runner
        self.boot_code = boot_code

    def partition(self, binding: DeviceBinding) -> DeviceBinding:
        """Partition the bound device.

        Args:
            binding: Provisioned device with an empty GPT.

        Returns:
            The same binding, with ``root_label`` set.

        Raises:
            DeviceError: If any gpt command or boot code extraction fails.
        """
        device = binding.device

        try:
            for cmd in compose_partition_commands(device):
                self.runner.run(cmd)
        except ToolError as e:
            raise DeviceError(
                f"Cannot partition {device}: {e.message}", stage="partition"
            ) from e

        mbr = self.boot_code.first_stage()
        try:
            self.runner.run(["gpt", "biosboot", "-L", ROOT_LABEL, "-c", mbr, device])
        except ToolError as e:
            raise DeviceError(
                f"Cannot mark {ROOT_LABEL} bootable on {device}: {e.message}",
                stage="partition",
            ) from e

        binding.root_label = ROOT_LABEL
        logger.info("Partitioned %s (swap %s, %s rest of disk)", device, SWAP_SIZE, ROOT_LABEL)
        return binding


__all__ = [
    "ALIGNMENT",
    "ROOT_LABEL",
    "SWAP_LABEL",
    "SWAP_SIZE",
    "PartitionPlanner",
    "compose_partition_commands",
]
