"""Distribution set manifest.

The sets are extracted onto the target filesystem in a fixed order; later
sets overwrite files from earlier ones (the kernel set comes last so its
/netbsd wins over anything shipped before it).
"""

from dataclasses import dataclass

# Extraction order
DEFAULT_SETS: tuple[str, ...] = (
    "base",
    "comp",
    "etc",
    "games",
    "man",
    "misc",
    "modules",
    "rescue",
    "text",
    "kernel",
)

# Set holding /usr/mdec boot code
BASE_SET = "base"

SET_SUFFIX = ".tar.xz"


def set_filename(name: str, kernel: str = "GENERIC") -> str:
    """Return the archive file name of a set.

    Args:
        name: Set identifier.
        kernel: Kernel configuration used for the 'kernel' set.

    Returns:
        Archive file name (e.g., 'base.tar.xz', 'kern-GENERIC.tar.xz').
    """
    if name == "kernel":
        return f"kern-{kernel}{SET_SUFFIX}"
    return f"{name}{SET_SUFFIX}"


@dataclass(frozen=True)
class SetManifest:
    """Ordered list of sets to extract."""

    names: tuple[str, ...] = DEFAULT_SETS
    kernel: str = "GENERIC"

    def __post_init__(self) -> None:
        if not self.names:
            raise ValueError("SetManifest must name at least one set")
        if len(set(self.names)) != len(self.names):
            raise ValueError(f"Duplicate set in manifest: {self.names}")

    def __iter__(self):
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)

    def filename(self, name: str) -> str:
        """Return the archive file name for a set in this manifest."""
        return set_filename(name, self.kernel)

    def filenames(self) -> list[str]:
        """Return archive file names in extraction order."""
        return [self.filename(name) for name in self.names]


__all__ = [
    "BASE_SET",
    "DEFAULT_SETS",
    "SET_SUFFIX",
    "SetManifest",
    "set_filename",
]
