"""Block device provisioning.

This module handles:
- Allocating the fixed-size, zero-filled backing image file
- Binding it to the configured vnd(4) slot and creating an empty GPT
- Releasing the binding during cleanup (best effort, never raises)
- Pre-flight detection of state left behind by an interrupted run
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING

from netbsd_imagegen.errors import CleanupError, ConfigError, DeviceError, ToolError
from netbsd_imagegen.types import DeviceBinding

if TYPE_CHECKING:
    from netbsd_imagegen.config import BuildConfig
    from netbsd_imagegen.tools import ToolRunner

logger = logging.getLogger(__name__)

# Prefix of mount point directories created under the build directory
MOUNT_PREFIX = "mnt."


def allocate_image(path: Path, size_bytes: int) -> None:
    """Create a zero-filled image file of exactly ``size_bytes``.

    The file is created sparse; unwritten regions read back as zeros.

    Args:
        path: Image file to create (replaced if it exists).
        size_bytes: Final file size.

    Raises:
        DeviceError: If the file cannot be created.
    """
    logger.info("Allocating %d byte image at %s", size_bytes, path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as f:
            f.truncate(size_bytes)
            f.flush()
            os.fsync(f.fileno())
    except OSError as e:
        raise DeviceError(f"Cannot allocate image {path}: {e}", stage="provision") from e


def is_slot_in_use(listing: str, device: str) -> bool:
    """Check ``vndconfig -l`` output for an active binding of ``device``.

    Args:
        listing: Tool standard output.
        device: Slot name (e.g., 'vnd0').

    Returns:
        True if the slot is configured.
    """
    for line in listing.splitlines():
        name, sep, status = line.strip().partition(":")
        if sep and name == device:
            return status.strip() != "not in use"
    return False


def stale_mounts(build_dir: Path) -> list[Path]:
    """Return mount points under ``build_dir`` left mounted by an earlier run."""
    if not build_dir.is_dir():
        return []
    return sorted(p for p in build_dir.glob(f"{MOUNT_PREFIX}*") if os.path.ismount(p))


class BlockDeviceProvisioner:
    """Allocates the image file and binds it to a vnd slot."""

    def __init__(self, config: BuildConfig, runner: ToolRunner, image_path: Path) -> None:
        """Initialize BlockDeviceProvisioner.

        Args:
            config: Resolved build configuration.
            runner: Tool runner.
            image_path: Backing file to allocate and bind.
        """
        self.config = config
        self.runner = runner
        self.image_path = image_path
        self.bound = False

    def preflight(self) -> None:
        """Refuse to start if an interrupted run left the host dirty.

        Raises:
            ConfigError: If the vnd slot is in use or a stale mount exists.
        """
        device = self.config.vnd_device
        try:
            listing = self.runner.run(["vndconfig", "-l"]).stdout
        except ToolError as e:
            raise ConfigError(f"Cannot query vnd devices: {e.message}") from e

        if is_slot_in_use(listing, device):
            raise ConfigError(
                f"{device} is already configured; "
                f"release it with 'vndconfig -u {device}' if no build is running"
            )

        mounts = stale_mounts(self.config.build_dir)
        if mounts:
            raise ConfigError(
                "Stale mount(s) from an interrupted build: "
                + ", ".join(str(m) for m in mounts)
            )

    def provision(self) -> DeviceBinding:
        """Allocate the image, bind it and create an empty partition table.

        Returns:
            DeviceBinding for the configured slot.

        Raises:
            DeviceError: If any step fails.
        """
        device = self.config.vnd_device
        allocate_image(self.image_path, self.config.image_size)

        try:
            self.runner.run(["vndconfig", device, self.image_path])
        except ToolError as e:
            raise DeviceError(
                f"Cannot bind {self.image_path} to {device}: {e.message}",
                stage="provision",
            ) from e

        self.bound = True
        binding = DeviceBinding(device=device, image_path=self.image_path)
        logger.info("Bound %s to %s", self.image_path, device)

        try:
            self.runner.run(["gpt", "create", device])
        except ToolError as e:
            raise DeviceError(
                f"Cannot create partition table on {device}: {e.message}",
                stage="provision",
            ) from e

        return binding

    def release(self, device: str) -> None:
        """Run ``vndconfig -u`` on ``device``.

        Raises:
            CleanupError: If the slot could not be released.
        """
        try:
            self.runner.run(["vndconfig", "-u", device])
        except ToolError as e:
            raise CleanupError(f"Failed to unbind {device}: {e.message}") from e
        self.bound = False
        logger.info("Released %s", device)

    def unbind(self, binding: DeviceBinding | None = None) -> bool:
        """Release the vnd binding.

        Safe to call after a failed provision: with ``binding`` None the
        configured slot is released if this provisioner bound it, and
        nothing is run if the bind never happened. Idempotent for a binding
        already released. Failures are logged, never raised.

        Returns:
            True if nothing is left bound by this provisioner.
        """
        if binding is not None and binding.released:
            logger.debug("%s already released", binding.device)
            return False

        if binding is None and not self.bound:
            logger.debug("%s was never bound; nothing to release", self.config.vnd_device)
            return True

        device = binding.device if binding is not None else self.config.vnd_device
        try:
            self.release(device)
        except CleanupError as e:
            logger.error("%s (%s)", e.message, e.code)
            return False
        finally:
            if binding is not None:
                binding.released = True
        return True


__all__ = [
    "MOUNT_PREFIX",
    "BlockDeviceProvisioner",
    "allocate_image",
    "is_slot_in_use",
    "stale_mounts",
]
