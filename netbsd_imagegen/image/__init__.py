"""Root filesystem contents of the image."""

from netbsd_imagegen.image.populate import FilesystemPopulator, mount_root
from netbsd_imagegen.image.templates import render_fstab, render_rc_conf

__all__ = [
    "FilesystemPopulator",
    "mount_root",
    "render_fstab",
    "render_rc_conf",
]
