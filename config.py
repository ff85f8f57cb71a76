"""Configuration loading and validation for workshop-sync."""

import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path

from errors import ConfigError


DEFAULT_CONFIG_PATH = Path("workshop-sync.toml")

FAILURE_POLICIES = ("fail-fast", "isolate")
SYNC_MODES = ("reset", "prune")


def default_mods_dir(platform: str | None = None) -> str:
    """Local mods folder of Oxygen Not Included for the given platform."""
    platform = platform or sys.platform
    if platform.startswith("win"):
        return "~/Documents/Klei/OxygenNotIncluded/mods/Local"
    if platform == "darwin":
        return "~/Library/Application Support/unity.Klei.Oxygen Not Included/mods/Local"
    return "~/.config/unity3d/Klei/Oxygen Not Included/mods/Local"


DEFAULTS = {
    "manifest_path": "./mods.yaml",
    "mods_dir": default_mods_dir(),
    "catalog_url": "https://db.steamworkshopdownloader.io/prod/api/details/file",
    "workshop_url": "https://steamcommunity.com/sharedfiles/filedetails/?id={id}",
    "concurrent_downloads": 1,
    "download_attempts": 5,
    "retry_delay": 0.0,
    "download_timeout": 120.0,
    "catalog_timeout": 30.0,
    "failure_policy": "fail-fast",
    "sync_mode": "reset",
    "state_file": ".workshop-sync-state.json",
}


@dataclass
class Config:
    manifest_path: Path
    mods_dir: Path
    catalog_url: str
    workshop_url: str
    concurrent_downloads: int
    download_attempts: int
    retry_delay: float
    download_timeout: float
    catalog_timeout: float
    failure_policy: str
    sync_mode: str
    state_file: str

    @property
    def state_path(self) -> Path:
        """Path to the prune-mode state file, kept beside the manifest."""
        return self.manifest_path.parent / self.state_file

    @classmethod
    def load(
        cls,
        config_path: Path | None = None,
        manifest_override: str | None = None,
        mods_dir_override: str | None = None,
        concurrency_override: int | None = None,
        policy_override: str | None = None,
        mode_override: str | None = None,
    ) -> "Config":
        """Load configuration from TOML file with defaults."""
        config_data = dict(DEFAULTS)

        path = config_path or DEFAULT_CONFIG_PATH
        if path.exists():
            try:
                with open(path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid config file {path}: {e}") from e
            unknown = sorted(set(file_config) - set(DEFAULTS))
            if unknown:
                raise ConfigError(f"Unknown config keys in {path}: {', '.join(unknown)}")
            config_data.update(file_config)

        if manifest_override:
            config_data["manifest_path"] = manifest_override
        if mods_dir_override:
            config_data["mods_dir"] = mods_dir_override
        if concurrency_override is not None:
            config_data["concurrent_downloads"] = concurrency_override
        if policy_override:
            config_data["failure_policy"] = policy_override
        if mode_override:
            config_data["sync_mode"] = mode_override

        try:
            config = cls(
                manifest_path=Path(config_data["manifest_path"]).expanduser().resolve(),
                mods_dir=Path(config_data["mods_dir"]).expanduser().resolve(),
                catalog_url=str(config_data["catalog_url"]),
                workshop_url=str(config_data["workshop_url"]),
                concurrent_downloads=int(config_data["concurrent_downloads"]),
                download_attempts=int(config_data["download_attempts"]),
                retry_delay=float(config_data["retry_delay"]),
                download_timeout=float(config_data["download_timeout"]),
                catalog_timeout=float(config_data["catalog_timeout"]),
                failure_policy=str(config_data["failure_policy"]),
                sync_mode=str(config_data["sync_mode"]),
                state_file=str(config_data["state_file"]),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration value: {e}") from e

        config.validate()
        return config

    def validate(self) -> None:
        if self.failure_policy not in FAILURE_POLICIES:
            raise ConfigError(
                f"failure_policy must be one of {', '.join(FAILURE_POLICIES)}, "
                f"got {self.failure_policy!r}"
            )
        if self.sync_mode not in SYNC_MODES:
            raise ConfigError(
                f"sync_mode must be one of {', '.join(SYNC_MODES)}, got {self.sync_mode!r}"
            )
        if self.concurrent_downloads < 1:
            raise ConfigError("concurrent_downloads must be at least 1")
        if self.download_attempts < 1:
            raise ConfigError("download_attempts must be at least 1")
        if self.retry_delay < 0:
            raise ConfigError("retry_delay must not be negative")
        if "{id}" not in self.workshop_url:
            raise ConfigError("workshop_url must contain an {id} placeholder")
