"""Configuration settings for netbsd_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > config file > env vars >
defaults. The resolved BuildConfig is frozen and threaded through every
pipeline component.
"""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from netbsd_imagegen.errors import ConfigError
from netbsd_imagegen.types import IMAGE_SIZE_BYTES

# Official NetBSD CDN base URL
NETBSD_DOWNLOAD_BASE = "https://cdn.netbsd.org/pub/NetBSD"

# rc.d scripts from the NetBSD source tree
NETBSD_RCD_BASE = "https://raw.githubusercontent.com/NetBSD/src/trunk/etc/rc.d"


def _default_build_dir() -> Path:
    """Return the default build directory."""
    return Path.home() / ".cache" / "netbsd-imagegen"


class BuildConfig(BaseSettings):
    """Image build configuration.

    Settings are loaded from environment variables with the NBIMG_ prefix.
    CLI flags and config files can override these at resolution time; the
    instance is immutable afterwards.
    """

    model_config = SettingsConfigDict(
        env_prefix="NBIMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Release selection
    release: str = Field(
        default="10.1",
        min_length=1,
        description="NetBSD release whose sets and hashes are used",
    )
    arch: str = Field(
        default="amd64",
        min_length=1,
        description="Machine architecture of the release sets",
    )
    kernel: str = Field(
        default="GENERIC",
        min_length=1,
        description="Kernel configuration shipped as the kernel set",
    )

    # Paths
    build_dir: Path = Field(
        default_factory=_default_build_dir,
        description="Working directory for downloads, boot code and the image",
    )
    sets_dir: Path | None = Field(
        default=None,
        description="Pre-staged sets directory (defaults to the release dir)",
    )
    output: Path | None = Field(
        default=None,
        description="Final image path (defaults to a file in the build dir)",
    )

    # Operational modes
    verify: bool = Field(
        default=True,
        description="Verify the hashes signature and set checksums",
    )
    force_fetch: bool = Field(
        default=False,
        description="Download sets even if they are present locally",
    )
    verbosity: int = Field(
        default=0,
        ge=0,
        le=2,
        description="Diagnostic output depth (0-2)",
    )

    # Remote endpoints
    base_url: str = Field(
        default=NETBSD_DOWNLOAD_BASE,
        description="Distribution mirror base URL",
    )
    scripts_url: str = Field(
        default=NETBSD_RCD_BASE,
        description="Base URL for auxiliary rc.d boot scripts",
    )
    boot_scripts: tuple[str, ...] = Field(
        default=("ec2_init",),
        description="Auxiliary rc.d scripts installed into the image",
    )

    # Integrity
    digest_algorithm: Literal["SHA512", "SHA256"] = Field(
        default="SHA512",
        description="Digest algorithm looked up in the hashes manifest",
    )
    gpg_keyring: Path | None = Field(
        default=None,
        description="Keyring holding the release signing key (gpg default if unset)",
    )

    # Target system
    hostname: str = Field(
        default="netbsd",
        pattern=r"^[A-Za-z0-9][A-Za-z0-9.-]*$",
        description="Hostname written into rc.conf",
    )
    vnd_device: str = Field(
        default="vnd0",
        pattern=r"^vnd\d+$",
        description="Virtual block device slot the image is bound to",
    )
    boot_timeout: int = Field(
        default=5,
        ge=0,
        description="Boot menu timeout in seconds",
    )

    # Timeouts (in seconds)
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for each download",
    )
    tool_timeout: int | None = Field(
        default=None,
        ge=1,
        description="Timeout for each external tool (None = wait indefinitely)",
    )

    @property
    def image_size(self) -> int:
        """Fixed size of the backing image file in bytes."""
        return IMAGE_SIZE_BYTES

    @property
    def sets_path(self) -> Path:
        """Directory searched for pre-staged sets."""
        if self.sets_dir is not None:
            return self.sets_dir
        return Path("/usr/obj/releasedir") / self.arch / "binary" / "sets"

    @property
    def image_path(self) -> Path:
        """Destination of the finished image."""
        if self.output is not None:
            return self.output
        return self.build_dir / f"NetBSD-{self.release}-{self.arch}.img"

    @property
    def log_level(self) -> int:
        """Logging level derived from verbosity."""
        return {0: logging.WARNING, 1: logging.INFO}.get(self.verbosity, logging.DEBUG)


def load_config_file(path: Path) -> dict[str, Any]:
    """Load BuildConfig overrides from a YAML file.

    Args:
        path: Path to the YAML file.

    Returns:
        Mapping of field names to values.

    Raises:
        ConfigError: If the file is unreadable, malformed, or names
            unknown fields.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(
            f"Expected a YAML mapping in {path}, got {type(data).__name__}"
        )

    unknown = sorted(set(data) - set(BuildConfig.model_fields))
    if unknown:
        raise ConfigError(f"Unknown option(s) in {path}: {', '.join(unknown)}")
    return data


def get_build_config(
    config_file: Path | None = None, **overrides: Any
) -> BuildConfig:
    """Resolve the build configuration once.

    Args:
        config_file: Optional YAML file of overrides.
        **overrides: Caller-supplied options; None values are ignored.

    Returns:
        Frozen BuildConfig instance.

    Raises:
        ConfigError: If any option is invalid.
    """
    values: dict[str, Any] = {}
    if config_file is not None:
        values.update(load_config_file(config_file))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return BuildConfig(**values)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid configuration: {errors}") from e


def config_to_json(config: BuildConfig | None = None) -> str:
    """Render effective configuration as JSON.

    Args:
        config: Optional config instance; uses default if not provided.

    Returns:
        JSON string of effective configuration.
    """
    if config is None:
        config = get_build_config()
    return config.model_dump_json(indent=2)


__all__ = [
    "NETBSD_DOWNLOAD_BASE",
    "NETBSD_RCD_BASE",
    "BuildConfig",
    "config_to_json",
    "get_build_config",
    "load_config_file",
]
