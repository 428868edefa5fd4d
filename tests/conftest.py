"""Shared fixtures for netbsd_imagegen tests.

FakeRunner stands in for ToolRunner: it records every command, answers the
queries the pipeline makes (``vndconfig -l``, ``dkctl listwedges``) and
performs ``tar -xpf`` with tarfile so extraction results can be inspected on
real files. ``umount`` moves whatever was written under the mount point to a
separate "disk" directory, as a real unmount would empty it.
"""

import hashlib
import io
import shlex
import shutil
import tarfile
from pathlib import Path

import pytest

from netbsd_imagegen.config import BuildConfig
from netbsd_imagegen.errors import ToolError
from netbsd_imagegen.sets.manifest import DEFAULT_SETS, set_filename
from netbsd_imagegen.sets.store import hashes_filename, sets_path_key
from netbsd_imagegen.tools import ToolResult

WEDGE_LISTING = """\
/dev/rvnd0: 2 wedges:
dk0: swap, 524288 blocks at 2048, type: swap
dk1: root, 2473984 blocks at 526336, type: ffs
"""

VND_IDLE = """\
vnd0: not in use
vnd1: not in use
"""


class FakeRunner:
    """Records tool invocations instead of executing them."""

    def __init__(
        self,
        disk_dir: Path | None = None,
        wedges: str = WEDGE_LISTING,
        vnd_listing: str = VND_IDLE,
        failures: dict[tuple[str, ...], int] | None = None,
    ) -> None:
        self.disk_dir = disk_dir
        self.wedges = wedges
        self.vnd_listing = vnd_listing
        self.failures = dict(failures or {})
        self.commands: list[list[str]] = []
        self.cwds: list[Path | None] = []

    def run(self, argv, *, cwd=None) -> ToolResult:
        cmd = [str(a) for a in argv]
        self.commands.append(cmd)
        self.cwds.append(cwd)
        cmd_str = shlex.join(cmd)

        for prefix, exit_code in self.failures.items():
            if tuple(cmd[: len(prefix)]) == prefix:
                raise ToolError(
                    f"{cmd[0]} failed with exit code {exit_code}",
                    command=cmd_str,
                    exit_code=exit_code,
                    stderr=f"{cmd[0]}: injected failure",
                )

        stdout = ""
        if cmd[:2] == ["vndconfig", "-l"]:
            stdout = self.vnd_listing
        elif cmd[0] == "dkctl":
            stdout = self.wedges
        elif cmd[:2] == ["tar", "-xpf"]:
            self._extract(Path(cmd[2]), Path(cmd[4]))
        elif cmd[0] == "umount":
            self._unmount(Path(cmd[1]))

        return ToolResult(command=cmd_str, exit_code=0, stdout=stdout, stderr="")

    def _extract(self, archive: Path, dest: Path) -> None:
        with tarfile.open(archive, "r:*") as tar:
            if hasattr(tarfile, "data_filter"):
                tar.extractall(dest, filter="data")
            else:
                tar.extractall(dest)

    def _unmount(self, mount_point: Path) -> None:
        if self.disk_dir is None:
            return
        self.disk_dir.mkdir(parents=True, exist_ok=True)
        for item in mount_point.iterdir():
            shutil.move(str(item), str(self.disk_dir / item.name))

    def invocations(self, *prefix: str) -> list[list[str]]:
        """Return recorded commands starting with ``prefix``."""
        return [c for c in self.commands if tuple(c[: len(prefix)]) == prefix]

    def programs(self) -> list[str]:
        """Return the executable of every recorded command, in order."""
        return [c[0] for c in self.commands]


def make_tar(path: Path, files: dict[str, bytes]) -> Path:
    """Write an xz-compressed tar archive holding ``files``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:xz") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return path


def set_contents(name: str) -> dict[str, bytes]:
    """Return representative contents for a set.

    Every set writes ./etc/marker so tests can tell which set was extracted
    last.
    """
    files = {"./etc/marker": name.encode()}
    if name == "base":
        files.update(
            {
                "./usr/mdec/gptmbr.bin": b"MBR" * 100,
                "./usr/mdec/bootxx_ffsv2": b"BOOTXX" * 100,
                "./usr/mdec/boot": b"BOOT" * 100,
                "./bin/sh": b"#!sh",
            }
        )
    elif name == "etc":
        files["./dev/MAKEDEV"] = b"#!/bin/sh\n"
    elif name == "kernel":
        files["./netbsd"] = b"KERNEL"
    return files


def make_sets(directory: Path, names=DEFAULT_SETS) -> Path:
    """Create one archive per set in ``directory``."""
    for name in names:
        make_tar(directory / set_filename(name), set_contents(name))
    return directory


def write_hashes(
    path: Path,
    sets_dir: Path,
    release: str = "10.1",
    arch: str = "amd64",
    tamper: str | None = None,
) -> Path:
    """Write a hashes manifest for every archive in ``sets_dir``.

    Args:
        path: Manifest file to write.
        sets_dir: Directory of archives to record.
        release: Release recorded in the paths.
        arch: Architecture recorded in the paths.
        tamper: Archive file name whose recorded digest is made wrong.
    """
    lines = ["-----BEGIN PGP SIGNED MESSAGE-----", "Hash: SHA512", ""]
    for archive in sorted(sets_dir.glob("*.tar.xz")):
        digest = hashlib.sha512(archive.read_bytes()).hexdigest()
        if archive.name == tamper:
            digest = "0" * len(digest)
        key = sets_path_key(release, arch, archive.name)
        lines.append(f"SHA512 ({key}) = {digest}")
    lines += ["-----BEGIN PGP SIGNATURE-----", "", "iQEz...", "-----END PGP SIGNATURE-----"]
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def build_dir(tmp_path: Path) -> Path:
    """Empty build directory."""
    path = tmp_path / "build"
    path.mkdir()
    return path


@pytest.fixture
def staged_sets(tmp_path: Path) -> Path:
    """Directory of pre-staged set archives."""
    return make_sets(tmp_path / "staged")


@pytest.fixture
def config(build_dir: Path, staged_sets: Path) -> BuildConfig:
    """Configuration using pre-staged sets and no auxiliary scripts."""
    return BuildConfig(
        build_dir=build_dir,
        sets_dir=staged_sets,
        boot_scripts=(),
        base_url="https://cdn.example.org/pub/NetBSD",
        scripts_url="https://raw.example.org/rc.d",
    )


@pytest.fixture
def fetch_config(tmp_path: Path, build_dir: Path) -> BuildConfig:
    """Configuration whose sets must come from the build directory cache."""
    return BuildConfig(
        build_dir=build_dir,
        sets_dir=tmp_path / "no-staged-sets",
        boot_scripts=(),
        base_url="https://cdn.example.org/pub/NetBSD",
        scripts_url="https://raw.example.org/rc.d",
    )


@pytest.fixture
def cached_sets(fetch_config: BuildConfig) -> Path:
    """Sets and a valid hashes manifest already present in the build dir."""
    sets_dir = make_sets(fetch_config.build_dir / "sets")
    write_hashes(fetch_config.build_dir / hashes_filename(fetch_config.release), sets_dir)
    return sets_dir


@pytest.fixture
def fake_runner(tmp_path: Path) -> FakeRunner:
    """FakeRunner whose unmounts land in tmp_path/disk."""
    return FakeRunner(disk_dir=tmp_path / "disk")
