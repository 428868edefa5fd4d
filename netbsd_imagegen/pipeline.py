"""Image build pipeline controller.

The controller sequences the stages of a build:

    init -> (fetching) -> (verifying) -> provisioning -> partitioning
         -> populating -> installing_boot -> cleaning_up -> done

Any failure moves straight to cleaning_up and then aborted. Cleanup runs
exactly once per run, and the vnd binding is released exactly once when
provisioning was entered, whatever happened after it.

The image is built at ``<output>.partial`` and only renamed to the output
path once cleanup has run on a successful run. A failure to release the
device is logged and never fails the build.
"""

from __future__ import annotations

import dataclasses
import fcntl
import logging
import os
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path

from netbsd_imagegen.config import BuildConfig
from netbsd_imagegen.device.boot import BootCode, BootInstaller
from netbsd_imagegen.device.partition import PartitionPlanner
from netbsd_imagegen.device.provision import BlockDeviceProvisioner
from netbsd_imagegen.device.wedges import DkctlWedgeFinder, PartitionDeviceFinder
from netbsd_imagegen.errors import ConfigError, DeviceError
from netbsd_imagegen.image.populate import FilesystemPopulator
from netbsd_imagegen.sets.manifest import BASE_SET, SetManifest
from netbsd_imagegen.sets.store import ArtifactStore
from netbsd_imagegen.sets.verify import IntegrityVerifier
from netbsd_imagegen.tools import REQUIRED_TOOLS, ToolRunner, missing_tools
from netbsd_imagegen.types import (
    ArchiveSet,
    BuildResult,
    ChecksumRecord,
    DeviceBinding,
    PipelineState,
)

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".build.lock"
BUILD_LOG_FILENAME = "build.log"
PARTIAL_SUFFIX = ".partial"


@contextmanager
def build_dir_lock(build_dir: Path) -> Iterator[None]:
    """Hold an exclusive lock on the build directory.

    Args:
        build_dir: Build directory; created if missing.

    Raises:
        ConfigError: If the directory cannot be created or another run
            holds the lock.
    """
    try:
        build_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot create build directory {build_dir}: {e}") from e

    lock_file = build_dir / LOCK_FILENAME
    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise ConfigError(f"Another build is already running in {build_dir}") from e
        logger.debug("Lock acquired on %s", lock_file)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def default_runner(config: BuildConfig) -> ToolRunner:
    """Create the tool runner for a build, logging to the build directory."""
    return ToolRunner(
        log_path=config.build_dir / BUILD_LOG_FILENAME, timeout=config.tool_timeout
    )


def partial_image_path(config: BuildConfig) -> Path:
    """Return where the image is assembled before it is renamed into place."""
    final = config.image_path
    return final.with_name(final.name + PARTIAL_SUFFIX)


def find_base_archive(archives: Sequence[ArchiveSet]) -> ArchiveSet:
    """Return the base set, which carries the boot code.

    Raises:
        ConfigError: If the base set is not among ``archives``.
    """
    for archive in archives:
        if archive.name == BASE_SET:
            return archive
    raise ConfigError(f"The '{BASE_SET}' set is required to install boot code")


class ImagePipeline:
    """Runs one image build from configuration to finished image."""

    def __init__(
        self,
        config: BuildConfig,
        *,
        runner: ToolRunner | None = None,
        manifest: SetManifest | None = None,
        store: ArtifactStore | None = None,
        verifier: IntegrityVerifier | None = None,
        provisioner: BlockDeviceProvisioner | None = None,
        finder: PartitionDeviceFinder | None = None,
        planner: PartitionPlanner | None = None,
        populator: FilesystemPopulator | None = None,
        boot_installer: BootInstaller | None = None,
    ) -> None:
        """Initialize ImagePipeline.

        Components default to the real implementations. The planner,
        populator and boot installer depend on the located base set, so
        their defaults are created once the sets are known.

        Args:
            config: Resolved build configuration.
            runner: Tool runner shared by all components.
            manifest: Sets to extract, in order.
            store: Artifact store.
            verifier: Integrity verifier.
            provisioner: Block device provisioner.
            finder: Partition device query.
            planner: Partition planner.
            populator: Filesystem populator.
            boot_installer: Boot installer.
        """
        self.config = config
        self.runner = runner or default_runner(config)
        self.manifest = manifest or SetManifest(kernel=config.kernel)
        self.store = store or ArtifactStore(config)
        self.verifier = verifier or IntegrityVerifier(config, self.runner)
        self.partial_path = partial_image_path(config)
        self.provisioner = provisioner or BlockDeviceProvisioner(
            config, self.runner, self.partial_path
        )
        self.finder = finder or DkctlWedgeFinder(self.runner)
        self._planner = planner
        self._populator = populator
        self._boot_installer = boot_installer

        self.state = PipelineState.INIT
        self.history: list[PipelineState] = [PipelineState.INIT]
        self._binding: DeviceBinding | None = None
        self._provisioning_entered = False

    def _transition(self, state: PipelineState) -> None:
        logger.info("Pipeline: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def preflight(self) -> None:
        """Check the host before anything is changed.

        Raises:
            ConfigError: If not running as root, a required tool is missing,
                or an interrupted run left the vnd slot or a mount behind.
        """
        if os.geteuid() != 0:
            raise ConfigError("Building an image requires root privileges")

        tools = list(REQUIRED_TOOLS)
        if self.config.verify:
            tools.append("gpg")
        missing = missing_tools(tools)
        if missing:
            raise ConfigError(f"Required tool(s) not found on PATH: {', '.join(missing)}")

        self.provisioner.preflight()

    def run(self) -> BuildResult:
        """Build the image.

        Returns:
            BuildResult describing the finished image.

        Raises:
            ImageGenError: The first failure, after cleanup has run.
        """
        released = True
        try:
            with ExitStack() as stack:
                try:
                    stack.enter_context(build_dir_lock(self.config.build_dir))
                    checksums = self._execute()
                finally:
                    released = self._cleanup()

                if not released:
                    logger.warning(
                        "%s may still be bound to the image; release it with "
                        "'vndconfig -u %s'",
                        self.config.vnd_device,
                        self.config.vnd_device,
                    )
                image_path = self._finalize()
        except BaseException:
            self._transition(PipelineState.ABORTED)
            # Before provisioning the partial file may belong to another run
            if self._provisioning_entered and released:
                self._discard_partial()
            raise

        size = image_path.stat().st_size
        self._transition(PipelineState.DONE)
        logger.info("Image ready: %s (%d bytes)", image_path, size)
        return BuildResult(
            image_path=image_path,
            size_bytes=size,
            states=list(self.history),
            checksums=checksums,
        )

    def _prepare_sets(self) -> tuple[list[ArchiveSet], ChecksumRecord | None]:
        resolved = self.store.resolve()

        if resolved.needs_fetch:
            self._transition(PipelineState.FETCHING)
            self.store.fetch(self.manifest)

        archives = self.store.locate(self.manifest, resolved.location)

        if not resolved.needs_fetch:
            logger.info("Pre-staged sets in %s are used as is", resolved.location)
            return archives, None

        if not self.config.verify:
            logger.warning(
                "Verification disabled: downloaded sets are used without "
                "checking the signature or checksums"
            )
            return archives, None

        self._transition(PipelineState.VERIFYING)
        checksums = self.verifier.verify(self.store.hashes_path, archives)
        archives = [
            dataclasses.replace(a, digest=checksums.get(a.filename)) for a in archives
        ]
        return archives, checksums

    def _execute(self) -> ChecksumRecord | None:
        self.preflight()
        archives, checksums = self._prepare_sets()

        boot_code = BootCode(
            find_base_archive(archives).path,
            self.config.build_dir / "boot" / f"{self.config.release}-{self.config.arch}",
        )
        planner = self._planner or PartitionPlanner(self.runner, boot_code)
        populator = self._populator or FilesystemPopulator(
            self.config, self.runner, self.finder, self.store
        )
        boot_installer = self._boot_installer or BootInstaller(
            self.config, self.runner, boot_code
        )

        self._transition(PipelineState.PROVISIONING)
        self._provisioning_entered = True
        self._binding = self.provisioner.provision()

        self._transition(PipelineState.PARTITIONING)
        planner.partition(self._binding)

        self._transition(PipelineState.POPULATING)
        populator.populate(self._binding, self.manifest, archives)

        self._transition(PipelineState.INSTALLING_BOOT)
        boot_installer.install_boot(self._binding)

        return checksums

    def _cleanup(self) -> bool:
        """Release the device if provisioning was entered.

        Returns:
            False if the device may still be bound.
        """
        self._transition(PipelineState.CLEANING_UP)
        if not self._provisioning_entered:
            return True
        return bool(self.provisioner.unbind(self._binding))

    def _finalize(self) -> Path:
        final = self.config.image_path
        try:
            os.replace(self.partial_path, final)
        except OSError as e:
            raise DeviceError(
                f"Cannot move {self.partial_path} to {final}: {e}", stage="cleanup"
            ) from e
        return final

    def _discard_partial(self) -> None:
        try:
            self.partial_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Cannot remove %s: %s", self.partial_path, e)


def fetch_sets(config: BuildConfig, store: ArtifactStore | None = None) -> list[Path]:
    """Download the sets, boot scripts and hashes manifest into the build dir.

    Returns:
        Paths downloaded by this call.

    Raises:
        RetrievalError: If a download fails.
    """
    store = store or ArtifactStore(config)
    manifest = SetManifest(kernel=config.kernel)
    with build_dir_lock(config.build_dir):
        return store.fetch(manifest)


def verify_sets(
    config: BuildConfig,
    runner: ToolRunner | None = None,
    store: ArtifactStore | None = None,
) -> ChecksumRecord:
    """Verify the local sets against the signed hashes manifest.

    Raises:
        ConfigError: If the hashes manifest or an archive is missing.
        IntegrityError: If verification fails.
    """
    store = store or ArtifactStore(config)
    runner = runner or default_runner(config)
    manifest = SetManifest(kernel=config.kernel)

    if not store.hashes_path.is_file():
        raise ConfigError(
            f"Hashes manifest {store.hashes_path} not found; run 'nbimagegen sets fetch'"
        )
    archives = store.locate(manifest, store.resolve().location)
    return IntegrityVerifier(config, runner).verify(store.hashes_path, archives)


__all__ = [
    "BUILD_LOG_FILENAME",
    "LOCK_FILENAME",
    "PARTIAL_SUFFIX",
    "ImagePipeline",
    "build_dir_lock",
    "default_runner",
    "fetch_sets",
    "find_base_archive",
    "partial_image_path",
    "verify_sets",
]
