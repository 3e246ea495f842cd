"""Engine settings, read from DERVISH_* environment variables or .env.

    export DERVISH_STORE_ROOT=/var/cache/dervish
    export DERVISH_MAX_JOBS=8
    export DERVISH_KEEP_FAILED=true

There is no module-level instance: the CLI builds one Settings at start
and hands it to the Store, Builder and Fetcher it creates.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_store_root() -> Path:
    return Path.home() / ".cache" / "dervish"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="DERVISH_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    store_root: Path = Field(default_factory=_default_store_root)
    build_dir: Path | None = None  # scratch dirs; None → system temp

    # Scheduling
    max_jobs: int = Field(default=4, ge=1)
    cores: int = Field(default=1, ge=0)  # NIX_BUILD_CORES; 0 means every CPU
    keep_going: bool = False
    keep_failed: bool = False  # keep the scratch dir of a failed build

    # Build environment
    system: str = "x86_64-linux"
    shell: str = "/bin/sh"
    build_path: str = "/usr/bin:/bin"
    patchelf: str = "patchelf"

    # Fetching
    fetch_timeout: float = Field(default=60.0, gt=0)

    log_level: str = "INFO"
