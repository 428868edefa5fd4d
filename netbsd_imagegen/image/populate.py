"""Root filesystem population.

This module handles:
- Creating the FFSv2 filesystem on the root wedge
- Mounting it under the build directory for the duration of population
- Extracting the sets in manifest order
- Installing the boot loader, rc.d scripts, fstab and rc.conf
- Creating device nodes with MAKEDEV

The mount never outlives populate(): the filesystem is unmounted on every
path out of it, best effort when an earlier step already failed.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from netbsd_imagegen.device.partition import ROOT_LABEL
from netbsd_imagegen.device.provision import MOUNT_PREFIX
from netbsd_imagegen.errors import ConfigError, DeviceError, ToolError
from netbsd_imagegen.image.templates import render_fstab, render_rc_conf
from netbsd_imagegen.types import MountHandle

if TYPE_CHECKING:
    from netbsd_imagegen.config import BuildConfig
    from netbsd_imagegen.device.wedges import PartitionDeviceFinder
    from netbsd_imagegen.sets.manifest import SetManifest
    from netbsd_imagegen.sets.store import ArtifactStore
    from netbsd_imagegen.tools import ToolRunner
    from netbsd_imagegen.types import ArchiveSet, DeviceBinding

logger = logging.getLogger(__name__)

STAGE = "populate"

# Mode of installed rc.d scripts
RC_SCRIPT_MODE = 0o555


def _unmount(runner: ToolRunner, handle: MountHandle) -> None:
    try:
        runner.run(["umount", handle.mount_point])
    except ToolError as e:
        raise DeviceError(
            f"Cannot unmount {handle.mount_point}: {e.message}", stage=STAGE
        ) from e
    handle.mounted = False
    logger.info("Unmounted %s", handle.mount_point)


@contextmanager
def mount_root(
    runner: ToolRunner, binding: DeviceBinding, mount_point: Path
) -> Iterator[MountHandle]:
    """Mount the root wedge of ``binding`` for the duration of the block.

    On normal exit an unmount failure raises DeviceError. When the block
    raises, the unmount is attempted and its failure only logged so the
    original error propagates.

    Raises:
        DeviceError: If mounting or unmounting fails.
    """
    try:
        runner.run(["mount", binding.block_node, mount_point])
    except ToolError as e:
        raise DeviceError(
            f"Cannot mount {binding.block_node} on {mount_point}: {e.message}",
            stage=STAGE,
        ) from e

    handle = MountHandle(binding=binding, mount_point=mount_point)
    logger.info("Mounted %s on %s", binding.block_node, mount_point)

    try:
        yield handle
    except BaseException:
        try:
            _unmount(runner, handle)
        except DeviceError as unmount_error:
            logger.error("%s", unmount_error.message)
        raise

    _unmount(runner, handle)


def _remove_mount_point(mount_point: Path) -> None:
    if os.path.ismount(mount_point):
        logger.error("%s is still mounted; leaving it in place", mount_point)
        return
    try:
        mount_point.rmdir()
    except OSError as e:
        logger.warning("Cannot remove mount point %s: %s", mount_point, e)


def order_archives(
    manifest: SetManifest, archives: Sequence[ArchiveSet]
) -> list[ArchiveSet]:
    """Arrange ``archives`` in manifest extraction order.

    Raises:
        ConfigError: If a manifest set has no located archive.
    """
    by_name = {archive.name: archive for archive in archives}
    missing = [name for name in manifest if name not in by_name]
    if missing:
        raise ConfigError(f"No archive located for set(s): {', '.join(missing)}")
    return [by_name[name] for name in manifest]


class FilesystemPopulator:
    """Creates and fills the root filesystem of a partitioned image."""

    def __init__(
        self,
        config: BuildConfig,
        runner: ToolRunner,
        finder: PartitionDeviceFinder,
        store: ArtifactStore,
    ) -> None:
        """Initialize FilesystemPopulator.

        Args:
            config: Resolved build configuration.
            runner: Tool runner.
            finder: Resolves the root label to its wedge.
            store: Supplies the auxiliary rc.d scripts.
        """
        self.config = config
        self.runner = runner
        self.finder = finder
        self.store = store

    def populate(
        self,
        binding: DeviceBinding,
        manifest: SetManifest,
        archives: Sequence[ArchiveSet],
    ) -> None:
        """Build the root filesystem on a partitioned binding.

        Args:
            binding: Partitioned device; ``root_node`` is set on it.
            manifest: Extraction order.
            archives: Located (and, if enabled, verified) archives.

        Raises:
            DeviceError: If any filesystem step fails.
            ConfigError: If an archive for a manifest set is missing.
            RetrievalError: If a boot script has to be fetched and cannot be.
        """
        ordered = order_archives(manifest, archives)

        binding.root_node = self.finder.find_partition_device(
            binding, binding.root_label or ROOT_LABEL
        )

        try:
            self.runner.run(["newfs", "-O", "2", binding.raw_node])
        except ToolError as e:
            raise DeviceError(
                f"Cannot create filesystem on {binding.raw_node}: {e.message}",
                stage=STAGE,
            ) from e

        self.config.build_dir.mkdir(parents=True, exist_ok=True)
        mount_point = Path(
            tempfile.mkdtemp(prefix=MOUNT_PREFIX, dir=self.config.build_dir)
        )
        try:
            with mount_root(self.runner, binding, mount_point) as handle:
                self._extract_sets(handle, ordered)
                scripts = self.store.ensure_boot_scripts()
                self._configure(handle, scripts)
                self._make_devices(handle)
        finally:
            _remove_mount_point(mount_point)

        logger.info("Populated root filesystem on %s", binding.block_node)

    def _extract_sets(self, handle: MountHandle, archives: Sequence[ArchiveSet]) -> None:
        for archive in archives:
            logger.info("Extracting %s", archive.filename)
            try:
                self.runner.run(["tar", "-xpf", archive.path, "-C", handle.mount_point])
            except ToolError as e:
                raise DeviceError(
                    f"Cannot extract {archive.filename}: {e.message}", stage=STAGE
                ) from e

    def _configure(self, handle: MountHandle, scripts: Sequence[Path]) -> None:
        root = handle.mount_point
        try:
            loader = root / "usr" / "mdec" / "boot"
            if not loader.is_file():
                raise DeviceError(
                    "Boot loader usr/mdec/boot missing from extracted sets", stage=STAGE
                )
            shutil.copy2(loader, root / "boot")

            (root / "proc").mkdir(exist_ok=True)

            rc_d = root / "etc" / "rc.d"
            rc_d.mkdir(parents=True, exist_ok=True)
            for script in scripts:
                dest = rc_d / script.name
                shutil.copyfile(script, dest)
                dest.chmod(RC_SCRIPT_MODE)
                logger.debug("Installed rc.d script %s", script.name)

            (root / "etc" / "fstab").write_text(render_fstab(), encoding="utf-8")
            (root / "etc" / "rc.conf").write_text(
                render_rc_conf(self.config.hostname), encoding="utf-8"
            )
        except OSError as e:
            raise DeviceError(f"Cannot configure {root}: {e}", stage=STAGE) from e

    def _make_devices(self, handle: MountHandle) -> None:
        dev = handle.mount_point / "dev"
        try:
            self.runner.run(["sh", "./MAKEDEV", "all"], cwd=dev)
        except ToolError as e:
            raise DeviceError(f"MAKEDEV failed in {dev}: {e.message}", stage=STAGE) from e


__all__ = [
    "RC_SCRIPT_MODE",
    "FilesystemPopulator",
    "mount_root",
    "order_archives",
]
