"""Artifact store for distribution sets and auxiliary boot scripts.

This module handles:
- Deciding whether pre-staged sets can be used or must be fetched
- URL construction for sets, the signed hashes file and rc.d scripts
- Downloads into the build directory (skipping files already present)
- Mapping the set manifest to local archive paths
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from netbsd_imagegen.errors import ConfigError, RetrievalError
from netbsd_imagegen.sets.manifest import BASE_SET, SetManifest, set_filename
from netbsd_imagegen.types import ArchiveSet

if TYPE_CHECKING:
    from netbsd_imagegen.config import BuildConfig

logger = logging.getLogger(__name__)

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass(frozen=True)
class ResolvedSets:
    """Where the sets will be read from.

    Attributes:
        location: Directory holding (or about to hold) the set archives.
        needs_fetch: Whether the sets must be downloaded first.
    """

    location: Path
    needs_fetch: bool


def sets_path_key(release: str, arch: str, filename: str) -> str:
    """Return the release-relative path of a set archive.

    This is both the URL suffix under the mirror base and the key the
    hashes manifest records the archive under.
    """
    return f"NetBSD-{release}/{arch}/binary/sets/{filename}"


def build_set_url(base_url: str, release: str, arch: str, filename: str) -> str:
    """Build the download URL for a set archive."""
    return f"{base_url.rstrip('/')}/{sets_path_key(release, arch, filename)}"


def hashes_filename(release: str) -> str:
    """Return the file name of the signed hashes manifest for a release."""
    return f"NetBSD-{release}_hashes.asc"


def build_hashes_url(base_url: str, release: str) -> str:
    """Build the download URL for the signed hashes manifest."""
    return f"{base_url.rstrip('/')}/security/hashes/{hashes_filename(release)}"


def build_script_url(scripts_url: str, name: str) -> str:
    """Build the download URL for an auxiliary rc.d script."""
    return f"{scripts_url.rstrip('/')}/{name}"


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download a file, moving it into place only once complete.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        Number of bytes downloaded.

    Raises:
        RetrievalError: If the download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    dest_path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        dir=dest_path.parent, prefix=f".{dest_path.name}.", suffix=".tmp", delete=False
    ) as tmp_file:
        tmp_path = Path(tmp_file.name)

    try:
        total_bytes = 0
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            with tmp_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    total_bytes += len(chunk)

        shutil.move(str(tmp_path), str(dest_path))
        logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
        return total_bytes

    except httpx.HTTPStatusError as e:
        raise RetrievalError(
            f"HTTP error downloading {url}: "
            f"{e.response.status_code} {e.response.reason_phrase}",
            url=url,
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise RetrievalError(
            f"Timeout downloading {url}", url=url, code="timeout"
        ) from e
    except httpx.RequestError as e:
        raise RetrievalError(
            f"Network error downloading {url}: {e}", url=url, code="network_error"
        ) from e
    finally:
        tmp_path.unlink(missing_ok=True)


class ArtifactStore:
    """Locates and retrieves the material an image is built from."""

    def __init__(self, config: BuildConfig, client: httpx.Client | None = None) -> None:
        """Initialize ArtifactStore.

        Args:
            config: Resolved build configuration.
            client: HTTPX client to use; one is created per fetch if omitted.
        """
        self.config = config
        self._client = client

    @property
    def sets_cache(self) -> Path:
        """Directory fetched sets are stored in."""
        return self.config.build_dir / "sets"

    @property
    def scripts_cache(self) -> Path:
        """Directory fetched rc.d scripts are stored in."""
        return self.config.build_dir / "rc.d"

    @property
    def hashes_path(self) -> Path:
        """Local path of the signed hashes manifest."""
        return self.config.build_dir / hashes_filename(self.config.release)

    @contextmanager
    def _open_client(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client(follow_redirects=True) as client:
            yield client

    def resolve(self) -> ResolvedSets:
        """Decide whether the pre-staged sets directory can be used.

        Returns:
            ResolvedSets pointing at the sets directory when the base set is
            there and no refetch is forced, otherwise at the build directory
            with needs_fetch set.
        """
        staged_base = self.config.sets_path / set_filename(BASE_SET)
        if staged_base.is_file() and not self.config.force_fetch:
            logger.info("Using pre-staged sets in %s", self.config.sets_path)
            return ResolvedSets(location=self.config.sets_path, needs_fetch=False)

        if self.config.force_fetch:
            logger.info("Refetch forced; sets will be downloaded to %s", self.sets_cache)
        else:
            logger.info(
                "%s not found; sets will be downloaded to %s",
                staged_base,
                self.sets_cache,
            )
        return ResolvedSets(location=self.sets_cache, needs_fetch=True)

    def _fetch_one(self, client: httpx.Client, url: str, dest: Path) -> bool:
        """Download ``url`` to ``dest`` unless it is present and not forced.

        Returns:
            True if the file was downloaded, False if it was reused.
        """
        if dest.is_file() and not self.config.force_fetch:
            logger.debug("Reusing %s", dest)
            return False
        download_file(client, url, dest, timeout=self.config.download_timeout)
        return True

    def fetch(self, manifest: SetManifest) -> list[Path]:
        """Retrieve missing sets, boot scripts and the hashes manifest.

        Args:
            manifest: Sets to retrieve.

        Returns:
            Paths of files actually downloaded by this call.

        Raises:
            RetrievalError: On the first transport failure.
        """
        cfg = self.config
        downloaded: list[Path] = []

        with self._open_client() as client:
            if cfg.verify:
                url = build_hashes_url(cfg.base_url, cfg.release)
                if self._fetch_one(client, url, self.hashes_path):
                    downloaded.append(self.hashes_path)

            for filename in manifest.filenames():
                url = build_set_url(cfg.base_url, cfg.release, cfg.arch, filename)
                dest = self.sets_cache / filename
                if self._fetch_one(client, url, dest):
                    downloaded.append(dest)

            downloaded.extend(self._fetch_boot_scripts(client))

        logger.info("Fetch complete: %d file(s) downloaded", len(downloaded))
        return downloaded

    def _fetch_boot_scripts(self, client: httpx.Client) -> list[Path]:
        downloaded: list[Path] = []
        for name in self.config.boot_scripts:
            dest = self.scripts_cache / name
            if self._fetch_one(client, build_script_url(self.config.scripts_url, name), dest):
                downloaded.append(dest)
        return downloaded

    def ensure_boot_scripts(self) -> list[Path]:
        """Return local paths of the auxiliary boot scripts, fetching any missing.

        Raises:
            RetrievalError: If a missing script cannot be downloaded.
        """
        with self._open_client() as client:
            self._fetch_boot_scripts(client)
        return [self.scripts_cache / name for name in self.config.boot_scripts]

    def locate(self, manifest: SetManifest, location: Path) -> list[ArchiveSet]:
        """Map every manifest entry to an archive under ``location``.

        Args:
            manifest: Sets to locate.
            location: Directory holding the archives.

        Returns:
            ArchiveSet list in extraction order.

        Raises:
            ConfigError: If an archive is missing.
        """
        archives: list[ArchiveSet] = []
        missing: list[str] = []
        for name in manifest:
            filename = manifest.filename(name)
            path = location / filename
            if not path.is_file():
                missing.append(filename)
                continue
            archives.append(ArchiveSet(name=name, filename=filename, path=path))

        if missing:
            raise ConfigError(f"Missing set archive(s) in {location}: {', '.join(missing)}")
        return archives


__all__ = [
    "ArtifactStore",
    "DOWNLOAD_CHUNK_SIZE",
    "ResolvedSets",
    "build_hashes_url",
    "build_script_url",
    "build_set_url",
    "download_file",
    "hashes_filename",
    "sets_path_key",
]
