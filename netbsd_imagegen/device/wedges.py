"""Partition device discovery.

After partitioning, the kernel exposes each GPT partition of the vnd as a
wedge (dk(4)) whose number depends on what else is attached to the host.
The pipeline only ever asks one question: which device node carries the
partition with a given label. PartitionDeviceFinder is that query; the
default implementation parses ``dkctl <dev> listwedges``.
"""

import logging
import re
from dataclasses import dataclass
from typing import Protocol

from netbsd_imagegen.errors import DeviceError, ToolError
from netbsd_imagegen.tools import ToolRunner
from netbsd_imagegen.types import DeviceBinding

logger = logging.getLogger(__name__)

# dk1: root, 2473984 blocks at 526336, type: ffs
_WEDGE_LINE = re.compile(
    r"^(?P<name>dk\d+): (?P<label>.*), (?P<blocks>\d+) blocks at (?P<offset>\d+), "
    r"type: (?P<fstype>\S*)$"
)


@dataclass(frozen=True)
class WedgeInfo:
    """One wedge from a dkctl listing.

    Attributes:
        name: Wedge device name (e.g., 'dk1').
        label: GPT partition label.
        blocks: Size in 512-byte blocks.
        offset: Start offset in 512-byte blocks.
        fstype: Wedge type (e.g., 'ffs', 'swap').
    """

    name: str
    label: str
    blocks: int
    offset: int
    fstype: str


def parse_wedge_listing(output: str) -> list[WedgeInfo]:
    """Parse ``dkctl listwedges`` output.

    Args:
        output: Tool standard output.

    Returns:
        Wedges in listing order; unparseable lines are skipped.
    """
    wedges: list[WedgeInfo] = []
    for line in output.splitlines():
        match = _WEDGE_LINE.match(line.strip())
        if match:
            wedges.append(
                WedgeInfo(
                    name=match.group("name"),
                    label=match.group("label"),
                    blocks=int(match.group("blocks")),
                    offset=int(match.group("offset")),
                    fstype=match.group("fstype"),
                )
            )
    return wedges


def find_wedge(output: str, label: str) -> str | None:
    """Return the wedge name carrying ``label``, or None."""
    for wedge in parse_wedge_listing(output):
        if wedge.label == label:
            return wedge.name
    return None


class PartitionDeviceFinder(Protocol):
    """Resolves a partition label to an OS device node."""

    def find_partition_device(self, binding: DeviceBinding, label: str) -> str:
        ...


class DkctlWedgeFinder:
    """Resolve partitions by listing the vnd's wedges with dkctl(8)."""

    def __init__(self, runner: ToolRunner) -> None:
        self.runner = runner

    def find_partition_device(self, binding: DeviceBinding, label: str) -> str:
        """Return the wedge name for ``label`` on the bound device.

        Raises:
            DeviceError: If dkctl fails or no wedge carries the label.
        """
        try:
            result = self.runner.run(["dkctl", binding.device, "listwedges"])
        except ToolError as e:
            raise DeviceError(
                f"Cannot list wedges of {binding.device}: {e.message}", stage="populate"
            ) from e

        name = find_wedge(result.stdout, label)
        if name is None:
            raise DeviceError(
                f"No wedge labelled '{label}' on {binding.device}", stage="populate"
            )
        logger.info("Partition '%s' on %s is %s", label, binding.device, name)
        return name


__all__ = [
    "DkctlWedgeFinder",
    "PartitionDeviceFinder",
    "WedgeInfo",
    "find_wedge",
    "parse_wedge_listing",
]
