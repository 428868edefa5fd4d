"""NetBSD Image Generator - build bootable NetBSD disk images from release sets.

This package drives the whole image-build pipeline: fetching and verifying
the distribution sets, provisioning a vnd(4) device, partitioning it,
populating the root filesystem and installing boot code.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
