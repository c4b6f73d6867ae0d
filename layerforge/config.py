"""Runtime configuration: env-driven via pydantic-settings.

Every setting can be overridden with a ``LAYERFORGE_*`` environment
variable or a ``.env`` file in the working directory::

    export LAYERFORGE_LOG_LEVEL=DEBUG
    export LAYERFORGE_STACKER_DIR=/var/cache/layerforge
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings, SettingsConfigDict

from layerforge.models.oci import MEDIA_TYPE_IMAGE_LAYER_GZIP


class StackerConfig(BaseModel):
    """Directories a build works in.

    ``stacker_dir`` holds build state (the build cache lives here),
    ``rootfs_dir`` holds one working tree per layer and ``oci_dir`` is the
    output image layout.
    """

    model_config = ConfigDict(frozen=True)

    stacker_dir: Path = Path(".stacker")
    rootfs_dir: Path = Path("roots")
    oci_dir: Path = Path("oci")

    @property
    def cache_file(self) -> Path:
        return self.stacker_dir / "build.cache"


class Settings(BaseSettings):
    """Process-level settings with environment variable overrides."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LAYERFORGE_",
        env_file_encoding="utf-8",
    )

    log_level: str = "INFO"
    debug: bool = False

    stacker_dir: Path = Path(".stacker")
    rootfs_dir: Path = Path("roots")
    oci_dir: Path = Path("oci")

    layer_media_type: str = MEDIA_TYPE_IMAGE_LAYER_GZIP

    def stacker_config(self) -> StackerConfig:
        return StackerConfig(
            stacker_dir=self.stacker_dir,
            rootfs_dir=self.rootfs_dir,
            oci_dir=self.oci_dir,
        )


# Module-level singleton: import as `from layerforge.config import settings`
settings = Settings()
