"""Virtual block device handling.

This module handles:
- Allocating the backing image and binding it to a vnd slot
- Writing the swap/root GPT layout
- Resolving partition labels to wedge device nodes
- Extracting and installing boot code
"""

from netbsd_imagegen.device.boot import BootCode, BootInstaller, extract_boot_code
from netbsd_imagegen.device.partition import ROOT_LABEL, SWAP_LABEL, PartitionPlanner
from netbsd_imagegen.device.provision import BlockDeviceProvisioner, allocate_image
from netbsd_imagegen.device.wedges import (
    DkctlWedgeFinder,
    PartitionDeviceFinder,
    find_wedge,
    parse_wedge_listing,
)

__all__ = [
    "ROOT_LABEL",
    "SWAP_LABEL",
    "BlockDeviceProvisioner",
    "BootCode",
    "BootInstaller",
    "DkctlWedgeFinder",
    "PartitionDeviceFinder",
    "PartitionPlanner",
    "allocate_image",
    "extract_boot_code",
    "find_wedge",
    "parse_wedge_listing",
]
