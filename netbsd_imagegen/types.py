"""Shared type definitions for netbsd_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

# Backing file geometry: 15 blocks of 102400000 bytes
IMAGE_BLOCK_SIZE = 102_400_000
IMAGE_BLOCK_COUNT = 15
IMAGE_SIZE_BYTES = IMAGE_BLOCK_SIZE * IMAGE_BLOCK_COUNT

# Archive file name -> expected hex digest
ChecksumRecord = dict[str, str]


class PipelineState(str, Enum):
    """State of the image-build pipeline."""

    INIT = "init"
    FETCHING = "fetching"
    VERIFYING = "verifying"
    PROVISIONING = "provisioning"
    PARTITIONING = "partitioning"
    POPULATING = "populating"
    INSTALLING_BOOT = "installing_boot"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ArchiveSet:
    """A located distribution set archive.

    Attributes:
        name: Set identifier (e.g., 'base', 'kernel').
        filename: Archive file name (e.g., 'base.tar.xz').
        path: Local path to the archive.
        digest: Verified hex digest, or None if verification did not run.
    """

    name: str
    filename: str
    path: Path
    digest: str | None = None


@dataclass
class DeviceBinding:
    """An image file bound to a virtual block device.

    Attributes:
        device: Virtual block device slot (e.g., 'vnd0').
        image_path: Backing image file.
        root_label: GPT label of the root partition, set after partitioning.
        root_node: Wedge name of the root partition (e.g., 'dk1'), set once
            the populator resolves it.
        released: Whether the binding has been torn down.
    """

    device: str
    image_path: Path
    root_label: str | None = None
    root_node: str | None = None
    released: bool = False

    @property
    def block_node(self) -> str:
        """Block device path of the root wedge."""
        if self.root_node is None:
            raise ValueError(f"Root wedge of {self.device} is not resolved yet")
        return f"/dev/{self.root_node}"

    @property
    def raw_node(self) -> str:
        """Character (raw) device path of the root wedge."""
        if self.root_node is None:
            raise ValueError(f"Root wedge of {self.device} is not resolved yet")
        return f"/dev/r{self.root_node}"


@dataclass
class MountHandle:
    """The root filesystem of a binding mounted at a path."""

    binding: DeviceBinding
    mount_point: Path
    mounted: bool = True


@dataclass
class BuildResult:
    """Result of a successful pipeline run.

    Attributes:
        image_path: Path to the finished image.
        size_bytes: Final size of the image file.
        states: Pipeline states visited, in order.
        checksums: Checksums the archives were verified against, if any.
    """

    image_path: Path
    size_bytes: int
    states: list[PipelineState] = field(default_factory=list)
    checksums: ChecksumRecord | None = None


__all__ = [
    "IMAGE_BLOCK_COUNT",
    "IMAGE_BLOCK_SIZE",
    "IMAGE_SIZE_BYTES",
    "ArchiveSet",
    "BuildResult",
    "ChecksumRecord",
    "DeviceBinding",
    "MountHandle",
    "PipelineState",
]
