"""Per-user settings stored as JSON in ``~/.mdfield.cfg``."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Mapping

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".mdfield.cfg"
DEFAULT_AUTOSAVE_DELAY = 2.0


@dataclass
class AppConfig:
    store_path: str | None = None
    autosave_enabled: bool = True
    autosave_delay: float = DEFAULT_AUTOSAVE_DELAY
    mathjax_js: str | None = None
    mermaid_js: str | None = None
    plantuml_jar: str | None = None
    last_record_id: str | None = None
    last_field_id: str | None = None


# Environment variables that win over the file.
ENV_OVERRIDES = {
    "MDFIELD_MATHJAX_JS": "mathjax_js",
    "MDFIELD_MERMAID_JS": "mermaid_js",
    "PLANTUML_JAR": "plantuml_jar",
    "MDFIELD_AUTOSAVE_DELAY": "autosave_delay",
}


def config_file_path() -> Path:
    return Path.home() / CONFIG_FILE_NAME


def _coerce(name: str, value, default):
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.strip().lower() in {"1", "true", "yes", "on"}
        raise TypeError(f"{name} must be a boolean")
    if isinstance(default, float):
        delay = float(value)
        if delay < 0:
            raise ValueError(f"{name} must not be negative")
        return delay
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{name} must be a string")
    return value.strip() or None


def _apply(config: AppConfig, values: Mapping[str, object], origin: str) -> None:
    defaults = AppConfig()
    for entry in fields(AppConfig):
        if entry.name not in values:
            continue
        try:
            setattr(config, entry.name, _coerce(entry.name, values[entry.name], getattr(defaults, entry.name)))
        except (TypeError, ValueError) as exc:
            logger.warning("ignoring %s setting %r: %s", origin, entry.name, exc)


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Read settings, falling back to defaults for anything unreadable."""
    cfg_path = path if path is not None else config_file_path()
    environ = os.environ if environ is None else environ
    config = AppConfig()
    try:
        if cfg_path.exists():
            raw = cfg_path.read_text(encoding="utf-8").strip()
            payload = json.loads(raw) if raw else {}
            if isinstance(payload, dict):
                _apply(config, payload, str(cfg_path))
            else:
                logger.warning("ignoring %s: expected a JSON object", cfg_path)
    except Exception as exc:
        # Missing permissions or malformed JSON must not block startup.
        logger.warning("could not read %s: %s", cfg_path, exc)

    overrides = {
        name: environ[variable].strip()
        for variable, name in ENV_OVERRIDES.items()
        if environ.get(variable, "").strip()
    }
    _apply(config, overrides, "environment")
    return config


def save_config(config: AppConfig, path: Path | None = None) -> bool:
    """Write settings back. Best effort: returns False instead of raising."""
    cfg_path = path if path is not None else config_file_path()
    try:
        payload = {key: value for key, value in asdict(config).items() if value is not None}
        cfg_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except Exception as exc:
        logger.warning("could not write %s: %s", cfg_path, exc)
        return False
    return True
