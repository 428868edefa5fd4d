"""Distribution set handling.

This module handles:
- The fixed set manifest and archive naming
- Locating pre-staged sets or downloading them
- Verifying the signed hashes manifest and set checksums
"""

from netbsd_imagegen.sets.manifest import DEFAULT_SETS, SetManifest, set_filename
from netbsd_imagegen.sets.store import ArtifactStore, ResolvedSets
from netbsd_imagegen.sets.verify import (
    IntegrityVerifier,
    compute_file_digest,
    parse_hashes,
    verify_signature,
)

__all__ = [
    "DEFAULT_SETS",
    "ArtifactStore",
    "IntegrityVerifier",
    "ResolvedSets",
    "SetManifest",
    "compute_file_digest",
    "parse_hashes",
    "set_filename",
    "verify_signature",
]
