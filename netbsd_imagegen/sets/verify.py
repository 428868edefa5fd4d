"""Integrity verification of distribution sets.

Verification is two-phase:
1. The signed hashes manifest is checked with gpg before anything else.
2. Each archive's digest is compared against the manifest entry recorded
   for its exact release-relative path.

Either phase failing aborts the build before any device is touched.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING

from netbsd_imagegen.errors import (
    ChecksumMismatch,
    ChecksumMissingError,
    IntegrityError,
    SignatureError,
    ToolError,
)
from netbsd_imagegen.sets.store import sets_path_key
from netbsd_imagegen.types import ArchiveSet, ChecksumRecord

if TYPE_CHECKING:
    from netbsd_imagegen.config import BuildConfig
    from netbsd_imagegen.tools import ToolRunner

logger = logging.getLogger(__name__)

# Chunk size for hashing (bytes)
HASH_CHUNK_SIZE = 1024 * 1024

# Hex digest length per algorithm
DIGEST_HEX_LENGTH = {"SHA512": 128, "SHA256": 64}

# SHA512 (NetBSD-10.1/amd64/binary/sets/base.tar.xz) = 0123...
_BSD_LINE = re.compile(r"^(?P<algo>[A-Z0-9]+) \((?P<path>.+)\) = (?P<digest>[0-9a-fA-F]+)$")

SIGNED_MESSAGE_HEADER = "-----BEGIN PGP SIGNED MESSAGE-----"
SIGNATURE_HEADER = "-----BEGIN PGP SIGNATURE-----"


def signed_text(content: str) -> str:
    """Return the text covered by a clearsigned manifest's signature.

    Everything before the signed-message header and from the signature
    block on is dropped, as are the armor headers. Dash-escaped lines are
    unescaped. Content without a signed-message header is returned as is.

    Raises:
        IntegrityError: If the signed message has no signature block.
    """
    lines = content.splitlines()
    stripped = [line.rstrip() for line in lines]
    if SIGNED_MESSAGE_HEADER not in stripped:
        return content

    start = stripped.index(SIGNED_MESSAGE_HEADER) + 1
    # Armor headers (Hash: ...) end at the first blank line
    while start < len(lines) and stripped[start]:
        start += 1
    start += 1

    try:
        end = stripped.index(SIGNATURE_HEADER, start)
    except ValueError:
        raise IntegrityError("Clearsigned manifest has no signature block") from None

    body = []
    for line in lines[start:end]:
        if line.startswith("- "):
            line = line[2:]
        body.append(line)
    return "\n".join(body)


def parse_hashes(content: str, algorithm: str = "SHA512") -> dict[str, str]:
    """Parse a hashes manifest into a path -> digest mapping.

    Only the signed part of a clearsigned manifest is read. BSD tagged
    lines (``ALGO (path) = digest``) are kept when ``ALGO`` matches.
    Coreutils-style lines (``digest  path``) are kept when the digest
    length fits the algorithm. Anything else is ignored.

    Args:
        content: Manifest text (clearsigned or plain).
        algorithm: Digest algorithm to collect.

    Returns:
        Mapping of recorded path to lowercase hex digest.

    Raises:
        IntegrityError: If a path is recorded twice or the signed message
            is malformed.
    """
    algorithm = algorithm.upper()
    expected_len = DIGEST_HEX_LENGTH.get(algorithm)
    records: dict[str, str] = {}

    def record(path: str, digest: str) -> None:
        if path in records:
            raise IntegrityError(f"Hashes manifest records {path} more than once")
        records[path] = digest.lower()

    for line in signed_text(content).splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        match = _BSD_LINE.match(line)
        if match:
            if match.group("algo") == algorithm:
                record(match.group("path"), match.group("digest"))
            continue

        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue
        digest, path = parts
        if expected_len is None or len(digest) != expected_len:
            continue
        if not all(c in "0123456789abcdefABCDEF" for c in digest):
            continue
        # Remove leading '*' if present (binary mode indicator)
        record(path.lstrip("*").strip(), digest)

    return records


def compute_file_digest(
    file_path: Path, algorithm: str = "SHA512", chunk_size: int = HASH_CHUNK_SIZE
) -> str:
    """Compute the hex digest of a file.

    Args:
        file_path: Path to the file.
        algorithm: Digest algorithm name.
        chunk_size: Size of chunks to read.

    Returns:
        Lowercase hex digest.
    """
    hasher = hashlib.new(algorithm.lower())
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
    return hasher.hexdigest()


def verify_signature(
    runner: ToolRunner,
    manifest_path: Path,
    *,
    signature_path: Path | None = None,
    keyring: Path | None = None,
) -> None:
    """Verify the signature over a hashes manifest with gpg.

    Args:
        runner: Tool runner.
        manifest_path: Clearsigned manifest, or the data file when a
            detached signature is given.
        signature_path: Optional detached signature.
        keyring: Optional keyring restricting the accepted signers.

    Raises:
        SignatureError: If gpg rejects the signature or cannot run.
    """
    cmd: list[str | Path] = ["gpg", "--batch"]
    if keyring is not None:
        cmd += ["--no-default-keyring", "--keyring", keyring]
    cmd.append("--verify")
    if signature_path is not None:
        cmd.append(signature_path)
    cmd.append(manifest_path)

    try:
        runner.run(cmd)
    except ToolError as e:
        raise SignatureError(str(manifest_path), e.stderr or e.message) from e

    logger.info("Signature verified for %s", manifest_path.name)


class IntegrityVerifier:
    """Checks the hashes signature and every archive's digest."""

    def __init__(self, config: BuildConfig, runner: ToolRunner) -> None:
        self.config = config
        self.runner = runner

    def checksum_records(
        self, manifest_text: str, archives: Sequence[ArchiveSet]
    ) -> ChecksumRecord:
        """Extract the expected digest of every archive from the manifest.

        Raises:
            ChecksumMissingError: If an archive has no entry.
        """
        hashes = parse_hashes(manifest_text, self.config.digest_algorithm)
        records: ChecksumRecord = {}
        for archive in archives:
            key = sets_path_key(self.config.release, self.config.arch, archive.filename)
            if key not in hashes:
                raise ChecksumMissingError(archive.filename, key)
            records[archive.filename] = hashes[key]
        return records

    def verify(self, manifest_file: Path, archives: Sequence[ArchiveSet]) -> ChecksumRecord:
        """Verify the manifest signature, then each archive's digest.

        Args:
            manifest_file: Signed hashes manifest.
            archives: Archives to check, in extraction order.

        Returns:
            ChecksumRecord the archives matched.

        Raises:
            SignatureError: The manifest signature is invalid.
            ChecksumMissingError: An archive has no manifest entry.
            ChecksumMismatch: An archive's digest differs.
        """
        verify_signature(self.runner, manifest_file, keyring=self.config.gpg_keyring)

        records = self.checksum_records(
            manifest_file.read_text(encoding="utf-8", errors="replace"), archives
        )

        for archive in archives:
            expected = records[archive.filename]
            actual = compute_file_digest(archive.path, self.config.digest_algorithm)
            if actual != expected:
                logger.error(
                    "Checksum mismatch for %s: expected=%s, got=%s",
                    archive.filename,
                    expected[:16],
                    actual[:16],
                )
                raise ChecksumMismatch(archive.filename, expected, actual)
            logger.debug("Checksum OK for %s", archive.filename)

        logger.info("Verified %d set archive(s)", len(archives))
        return records


__all__ = [
    "DIGEST_HEX_LENGTH",
    "IntegrityVerifier",
    "compute_file_digest",
    "parse_hashes",
    "signed_text",
    "verify_signature",
]
