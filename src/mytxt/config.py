"""Application settings and their on-disk persistence."""

import json
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path

import click

from mytxt.logger import logging

logger = logging.getLogger(__name__)

APP_NAME = "mytxt"

CONFIG_ENV_VAR = "MYTXT_CONFIG"
INDEX_DIR_ENV_VAR = "MYTXT_INDEX_DIR"

DEFAULT_EXTENSIONS: tuple[str, ...] = (
    ".docx",
    ".txt",
    ".md",
    ".markdown",
    ".rst",
    ".csv",
    ".log",
)
DEFAULT_RESULT_LIMIT = 100
DEFAULT_SNIPPET_MAX_CHARS = 120


def default_index_dir() -> Path:
    """Index location, from MYTXT_INDEX_DIR or the per-user application directory."""
    env_dir = os.environ.get(INDEX_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir)
    return Path(click.get_app_dir(APP_NAME)) / "index"


def default_config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path)
    return Path(click.get_app_dir(APP_NAME)) / "settings.json"


def normalize_extensions(extensions) -> tuple[str, ...]:
    """Lower-case, dot-prefixed, de-duplicated, in the order given."""
    result: list[str] = []
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = "." + ext
        if ext not in result:
            result.append(ext)
    return tuple(result)


@dataclass(frozen=True)
class Settings:
    """User-adjustable settings."""

    index_dir: Path = field(default_factory=default_index_dir)
    extensions: tuple[str, ...] = DEFAULT_EXTENSIONS
    result_limit: int = DEFAULT_RESULT_LIMIT
    snippet_max_chars: int = DEFAULT_SNIPPET_MAX_CHARS

    def to_dict(self) -> dict:
        data = asdict(self)
        data["index_dir"] = str(self.index_dir)
        data["extensions"] = list(self.extensions)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Build settings from a mapping, ignoring unknown keys."""
        settings = cls()
        for key, value in data.items():
            if key not in SETTING_PARSERS:
                logger.warning("Ignoring unknown setting: %s", key)
                continue
            settings = replace(settings, **{key: _coerce(key, value)})
        return settings


def _parse_positive_int(value) -> int:
    number = int(value)
    if number <= 0:
        raise ValueError(f"Expected a positive integer, got {value!r}")
    return number


def _parse_extensions(value) -> tuple[str, ...]:
    if isinstance(value, str):
        value = value.replace(",", " ").split()
    extensions = normalize_extensions(value)
    if not extensions:
        raise ValueError("At least one file extension is required")
    return extensions


SETTING_PARSERS = {
    "index_dir": lambda value: Path(value).expanduser(),
    "extensions": _parse_extensions,
    "result_limit": _parse_positive_int,
    "snippet_max_chars": _parse_positive_int,
}


def _coerce(key: str, value):
    try:
        return SETTING_PARSERS[key](value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {key}: {e}") from e


def update_setting(settings: Settings, key: str, value: str) -> Settings:
    """
    Return a copy of ``settings`` with ``key`` set from its textual value.

    Raises:
        ValueError: If the key is unknown or the value does not parse.
    """
    if key not in SETTING_PARSERS:
        supported = ", ".join(SETTING_PARSERS.keys())
        raise ValueError(f"Unknown setting: {key}. Supported settings: {supported}")
    return replace(settings, **{key: _coerce(key, value)})


def load_settings(path: Path | None = None) -> Settings:
    """
    Load settings from ``path`` (default: :func:`default_config_path`).

    A missing file yields defaults. A file that cannot be read or parsed is
    logged and also yields defaults.
    """
    if path is None:
        path = default_config_path()

    if not path.exists():
        return Settings()

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("settings file must contain a JSON object")
        settings = Settings.from_dict(data)
    except (OSError, ValueError) as e:
        logger.warning("Failed to load settings from %s, using defaults: %s", path, e)
        return Settings()

    # The environment always wins over the stored index location.
    if os.environ.get(INDEX_DIR_ENV_VAR):
        settings = replace(settings, index_dir=default_index_dir())
    return settings


def save_settings(settings: Settings, path: Path | None = None):
    if path is None:
        path = default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings.to_dict(), indent=2), encoding="utf-8")
    logger.info("Saved settings to %s", path)
