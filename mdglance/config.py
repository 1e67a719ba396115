"""Per-user directories and the optional config.toml settings file."""

from __future__ import annotations

import logging
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

APP_QUALIFIER = "com"
APP_ORGANIZATION = "mdglance"
APP_NAME = "mdglance"
CONFIG_FILE_NAME = "config.toml"


def project_dir_name() -> str:
    """Directory name derived from the fixed application identifier."""
    if sys.platform == "darwin":
        return ".".join((APP_QUALIFIER, APP_ORGANIZATION, APP_NAME))
    return APP_NAME


def _standard_location(kind: str) -> Path | None:
    # QtCore only; safe to call before (or without) a QApplication.
    from PySide6.QtCore import QStandardPaths

    location = getattr(QStandardPaths.StandardLocation, kind)
    raw = QStandardPaths.writableLocation(location)
    if not raw:
        return None
    return Path(raw)


def user_config_dir() -> Path:
    base = _standard_location("GenericConfigLocation") or Path.home() / ".config"
    return base / project_dir_name()


def user_cache_dir() -> Path:
    base = _standard_location("GenericCacheLocation") or Path.home() / ".cache"
    return base / project_dir_name()


def user_runtime_dir() -> Path | None:
    """Per-user runtime directory, or None when the platform has none."""
    base = _standard_location("RuntimeLocation")
    if base is None:
        return None
    return base / project_dir_name()


def config_file_path() -> Path:
    return user_config_dir() / CONFIG_FILE_NAME


@dataclass
class ExtensionsConfig:
    plantuml: bool = False


@dataclass
class AppConfig:
    no_truncate: bool = False
    extensions: ExtensionsConfig = field(default_factory=ExtensionsConfig)


def _bool_setting(table: dict, key: str, default: bool) -> bool:
    value = table.get(key, default)
    if isinstance(value, bool):
        return value
    logger.warning("Ignoring non-boolean config value %s=%r", key, value)
    return default


def load_config(path: Path | None = None) -> AppConfig:
    """Read config.toml; any read or parse issue falls back to defaults."""
    cfg_path = path if path is not None else config_file_path()
    try:
        if not cfg_path.is_file():
            return AppConfig()
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Could not read %s, using defaults: %s", cfg_path, exc)
        return AppConfig()

    extensions_table = raw.get("extensions")
    if not isinstance(extensions_table, dict):
        extensions_table = {}
    return AppConfig(
        no_truncate=_bool_setting(raw, "no_truncate", False),
        extensions=ExtensionsConfig(plantuml=_bool_setting(extensions_table, "plantuml", False)),
    )
