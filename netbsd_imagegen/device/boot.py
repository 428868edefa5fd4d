"""Boot code extraction and installation.

Both boot stages ship in the base set under /usr/mdec:
- gptmbr.bin, the first stage written by ``gpt biosboot``
- bootxx_ffsv2, the second stage written into the root partition by
  installboot(8)

They are pulled out of the base archive once and cached in the build
directory; later runs reuse the cached copies.
"""

from __future__ import annotations

import logging
import shutil
import tarfile
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from netbsd_imagegen.errors import DeviceError, ToolError

if TYPE_CHECKING:
    from netbsd_imagegen.config import BuildConfig
    from netbsd_imagegen.tools import ToolRunner
    from netbsd_imagegen.types import DeviceBinding

logger = logging.getLogger(__name__)

FIRST_STAGE_MEMBER = "./usr/mdec/gptmbr.bin"
SECOND_STAGE_MEMBER = "./usr/mdec/bootxx_ffsv2"


def _find_member(tar: tarfile.TarFile, member: str) -> tarfile.TarInfo:
    """Look up ``member`` with or without its leading './'."""
    candidates = [member, member.removeprefix("./")]
    for name in candidates:
        try:
            return tar.getmember(name)
        except KeyError:
            continue
    raise KeyError(member)


def extract_boot_code(base_archive: Path, member: str, dest_dir: Path, stage: str) -> Path:
    """Extract one boot code file from the base set, unless already cached.

    Args:
        base_archive: Path to base.tar.xz.
        member: Archive member to extract.
        dest_dir: Cache directory.
        stage: Pipeline stage, reported on failure.

    Returns:
        Path to the cached boot code file.

    Raises:
        DeviceError: If the archive is unreadable or lacks the member.
    """
    dest = dest_dir / Path(member).name
    if dest.is_file():
        logger.debug("Reusing cached boot code %s", dest)
        return dest

    logger.info("Extracting %s from %s", member, base_archive.name)
    dest_dir.mkdir(parents=True, exist_ok=True)
    tmp_path: Path | None = None

    try:
        with tarfile.open(base_archive, "r:*") as tar:
            info = _find_member(tar, member)
            source = tar.extractfile(info)
            if source is None:
                raise DeviceError(
                    f"{member} in {base_archive.name} is not a regular file", stage=stage
                )
            with tempfile.NamedTemporaryFile(
                dir=dest_dir, prefix=f".{dest.name}.", delete=False
            ) as tmp:
                tmp_path = Path(tmp.name)
                shutil.copyfileobj(source, tmp)
        tmp_path.replace(dest)

    except KeyError as e:
        raise DeviceError(
            f"{member} not found in {base_archive.name}", stage=stage
        ) from e
    except (tarfile.TarError, OSError) as e:
        raise DeviceError(
            f"Cannot extract {member} from {base_archive}: {e}", stage=stage
        ) from e
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)

    return dest


class BootCode:
    """Cached access to the boot stages in a base set."""

    def __init__(self, base_archive: Path, cache_dir: Path) -> None:
        self.base_archive = base_archive
        self.cache_dir = cache_dir

    def first_stage(self) -> Path:
        """Return the GPT protective MBR boot code."""
        return extract_boot_code(
            self.base_archive, FIRST_STAGE_MEMBER, self.cache_dir, stage="partition"
        )

    def second_stage(self) -> Path:
        """Return the FFSv2 primary bootstrap."""
        return extract_boot_code(
            self.base_archive, SECOND_STAGE_MEMBER, self.cache_dir, stage="install_boot"
        )


class BootInstaller:
    """Writes the second-stage bootstrap onto the root wedge."""

    def __init__(self, config: BuildConfig, runner: ToolRunner, boot_code: BootCode) -> None:
        self.config = config
        self.runner = runner
        self.boot_code = boot_code

    def install_boot(self, binding: DeviceBinding) -> None:
        """Install boot code onto the unmounted root partition.

        The caller guarantees the root filesystem is not mounted.

        Raises:
            DeviceError: If extraction or installboot fails.
        """
        bootxx = self.boot_code.second_stage()
        try:
            self.runner.run(
                [
                    "installboot",
                    "-v",
                    "-o",
                    f"timeout={self.config.boot_timeout}",
                    binding.raw_node,
                    bootxx,
                ]
            )
        except ToolError as e:
            raise DeviceError(
                f"Cannot install boot code on {binding.raw_node}: {e.message}",
                stage="install_boot",
            ) from e
        logger.info("Installed boot code on %s", binding.raw_node)


__all__ = [
    "FIRST_STAGE_MEMBER",
    "SECOND_STAGE_MEMBER",
    "BootCode",
    "BootInstaller",
    "extract_boot_code",
]
