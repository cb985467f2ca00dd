"""
aurbuild.config – settings loaded from defaults, settings.json and environment
"""

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import appdirs

from .errors import ConfigError

LOGGER = logging.getLogger(__name__)
APP_NAME = "aurbuild"
ENV_PREFIX = "AURBUILD_"
CONFIG_FILE = Path(appdirs.user_config_dir(APP_NAME)) / "settings.json"


@dataclass
class Settings:
    aur_url: str = "https://aur.archlinux.org"
    request_timeout: float = 10.0
    fetch_retries: int = 3
    retry_backoff: float = 0.5
    fetch_workers: int = 4
    batch_size: int = 100
    recipe_retries: int = 1
    build_timeout: float = 1800.0
    kill_grace: float = 10.0
    build_command: List[str] = field(
        default_factory=lambda: ["makepkg", "--cleanbuild", "--noconfirm"]
    )
    pacman_command: List[str] = field(default_factory=lambda: ["sudo", "pacman"])
    pacman_root: str = "/"
    pacman_dbpath: str = "/var/lib/pacman"
    pacman_conf: str = "/etc/pacman.conf"
    cache_dir: str = field(default_factory=lambda: appdirs.user_cache_dir(APP_NAME))
    keep_recipes: bool = True

    @property
    def recipe_dir(self) -> Path:
        return Path(self.cache_dir) / "recipes"

    @property
    def package_dir(self) -> Path:
        return Path(self.cache_dir) / "packages"

    @property
    def log_dir(self) -> Path:
        return Path(self.cache_dir) / "logs"

    @classmethod
    def load(
        cls,
        path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Settings":
        settings = cls()
        config_file = Path(path) if path else CONFIG_FILE
        if config_file.is_file():
            try:
                with open(config_file) as f:
                    loaded = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(str(config_file), f"could not read settings: {e}")
            if not isinstance(loaded, dict):
                raise ConfigError(str(config_file), "settings must be a JSON object")
            LOGGER.debug(f"Loaded settings from {config_file}")
            settings.update(loaded, origin=str(config_file))
        elif path:
            raise ConfigError(str(config_file), "settings file not found")

        environ = os.environ if environ is None else environ
        known = {f.name for f in dataclasses.fields(settings)}
        overrides: Dict[str, Any] = {}
        for key, raw in environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            name = key[len(ENV_PREFIX):].lower()
            if name not in known:
                LOGGER.debug(f"Ignoring environment variable {key}")
                continue
            # string settings are taken verbatim, everything else is JSON
            if isinstance(getattr(settings, name), str):
                overrides[name] = raw
                continue
            try:
                overrides[name] = json.loads(raw)
            except json.JSONDecodeError:
                overrides[name] = raw
        settings.update(overrides, origin="environment")
        return settings

    def update(self, values: Mapping[str, Any], origin: str = "settings") -> None:
        known = {f.name: f for f in dataclasses.fields(self)}
        for key, value in values.items():
            if key not in known:
                LOGGER.warning(f"Ignoring unknown setting '{key}' from {origin}")
                continue
            current = getattr(self, key)
            if isinstance(current, bool):
                ok = isinstance(value, bool)
            elif isinstance(current, float):
                ok = isinstance(value, (int, float)) and not isinstance(value, bool)
                value = float(value) if ok else value
            elif isinstance(current, int):
                ok = isinstance(value, int) and not isinstance(value, bool)
            elif isinstance(current, list):
                ok = isinstance(value, list) and all(isinstance(v, str) for v in value)
            else:
                ok = isinstance(value, str)
            if not ok:
                raise ConfigError(
                    key,
                    f"expected {type(current).__name__} from {origin}, got {value!r}",
                )
            setattr(self, key, value)
