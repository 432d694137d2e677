"""hearthcal.config_loader

Config loader for hearthcal.

- Reads YAML (PyYAML) or JSON config files.
- Applies ``HEARTHCAL_*`` environment overrides, seeded from an optional
  ``.env`` file.
- Exposes a typed dataclass `Config` and a `load_config()` helper that accepts
  an optional path override.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import yaml

from hearthcal.core.timezone_utils import SYSTEM_DATABASE_VERSION, sanitize_tz

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("hearthcal") / "config.yaml"

# Environment variable -> (config key, converter)
ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "HEARTHCAL_DATABASE": ("database_path", str),
    "HEARTHCAL_DEFAULT_TIMEZONE": ("default_timezone", str),
    "HEARTHCAL_LOG_LEVEL": ("log_level", str),
    "HEARTHCAL_DRIFT_TOLERANCE_MS": ("drift_tolerance_ms", int),
    "HEARTHCAL_BACKFILL_CHUNK_SIZE": ("backfill_chunk_size", int),
    "HEARTHCAL_BACKFILL_LOG_DIR": ("backfill_log_dir", str),
    "HEARTHCAL_QUERY_LIMIT": ("query_default_limit", int),
    "HEARTHCAL_TZ_DATABASE_VERSION": ("tz_database_version", str),
}


@dataclass
class Config:
    """Typed configuration for hearthcal.

    Fields:
        database_path: SQLite database file
        default_timezone: Fallback zone for households without one
        log_level: logging level name
        tz_database_version: label reported for the tz database in force
        drift_tolerance_ms: drift findings start at this delta (>= 1000)
        backfill_chunk_size: rows per backfill batch (100..5000)
        backfill_progress_interval_ms: progress callback spacing (250..60000)
        backfill_log_dir: directory receiving backfill summary logs
        query_default_limit: page size when a query names none
        query_max_limit: hard cap on page size
        query_prefilter_slack_ms: tolerance for stale caches when skipping series
        max_occurrences_per_series: expansion safety cap
        enable_fast_forward: skip ahead when expanding far from the anchor
        fast_forward_margin_periods: periods kept before the window when skipping
    """

    database_path: str = "hearthcal.db"
    default_timezone: str | None = None
    log_level: str = "INFO"
    tz_database_version: str = SYSTEM_DATABASE_VERSION
    drift_tolerance_ms: int = 60_000
    backfill_chunk_size: int = 500
    backfill_progress_interval_ms: int = 1_000
    backfill_log_dir: str | None = None
    query_default_limit: int = 500
    query_max_limit: int = 10_000
    query_prefilter_slack_ms: int = 86_400_000
    max_occurrences_per_series: int = 5_000
    enable_fast_forward: bool = True
    fast_forward_margin_periods: int = 2

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Config:
        """Create Config from a plain mapping, applying defaults and validation.

        Numeric-like values are coerced to int and out-of-range values are
        clamped into their allowed range, logging a warning for each coercion.
        """
        if data is None:
            data = {}

        def _coerce_int(key: str, default: int) -> int:
            raw = data.get(key, default)
            if isinstance(raw, bool):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default
            try:
                return int(raw)
            except (TypeError, ValueError):
                logger.warning("Config %s=%r is not an int; using default %d", key, raw, default)
                return default

        def _clamp(key: str, value: int, low: int, high: int | None = None) -> int:
            if value < low:
                logger.warning("%s %d below minimum; coercing to %d", key, value, low)
                return low
            if high is not None and value > high:
                logger.warning("%s %d above maximum; coercing to %d", key, value, high)
                return high
            return value

        def _coerce_bool(key: str, default: bool) -> bool:
            raw = data.get(key, default)
            if isinstance(raw, bool):
                return raw
            if isinstance(raw, str) and raw.strip().lower() in ("1", "true", "yes", "on"):
                return True
            if isinstance(raw, str) and raw.strip().lower() in ("0", "false", "no", "off"):
                return False
            logger.warning("Config %s=%r is not a boolean; using default %s", key, raw, default)
            return default

        chunk_size = _clamp("backfill_chunk_size", _coerce_int("backfill_chunk_size", 500), 100, 5_000)
        progress = _clamp(
            "backfill_progress_interval_ms",
            _coerce_int("backfill_progress_interval_ms", 1_000),
            250,
            60_000,
        )
        tolerance = _clamp("drift_tolerance_ms", _coerce_int("drift_tolerance_ms", 60_000), 1_000)
        max_limit = _clamp("query_max_limit", _coerce_int("query_max_limit", 10_000), 1)
        default_limit = _clamp(
            "query_default_limit", _coerce_int("query_default_limit", 500), 1, max_limit
        )
        slack = _clamp("query_prefilter_slack_ms", _coerce_int("query_prefilter_slack_ms", 86_400_000), 0)
        max_occurrences = _clamp(
            "max_occurrences_per_series", _coerce_int("max_occurrences_per_series", 5_000), 1
        )
        margin = _clamp("fast_forward_margin_periods", _coerce_int("fast_forward_margin_periods", 2), 1)

        database_path = data.get("database_path") or "hearthcal.db"
        default_tz = data.get("default_timezone")
        default_tz = sanitize_tz(str(default_tz)) if default_tz is not None else None

        log_level = data.get("log_level", "INFO")
        log_level = str(log_level).upper() if log_level is not None else "INFO"

        log_dir = data.get("backfill_log_dir")
        log_dir = str(log_dir) if log_dir else None

        tz_version = data.get("tz_database_version") or SYSTEM_DATABASE_VERSION

        return cls(
            database_path=str(database_path),
            default_timezone=default_tz,
            log_level=log_level,
            tz_database_version=str(tz_version),
            drift_tolerance_ms=tolerance,
            backfill_chunk_size=chunk_size,
            backfill_progress_interval_ms=progress,
            backfill_log_dir=log_dir,
            query_default_limit=default_limit,
            query_max_limit=max_limit,
            query_prefilter_slack_ms=slack,
            max_occurrences_per_series=max_occurrences,
            enable_fast_forward=_coerce_bool("enable_fast_forward", True),
            fast_forward_margin_periods=margin,
        )


def load_env_file(env_file_path: Path | None = None) -> list[str]:
    """Load a .env file into ``os.environ``.

    Only sets variables that are not already in the environment.

    Returns:
        List of environment variable keys that were loaded from the file
    """
    path = env_file_path or Path.cwd() / ".env"
    if not path.exists():
        logger.debug("No .env file found at %s", path)
        return []

    set_keys = []
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        logger.warning("Failed to read .env file %s", path, exc_info=True)
        return []

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, val = line.split("=", 1)
        key = key.strip()
        val = val.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = val
            set_keys.append(key)

    if set_keys:
        logger.debug("Loaded .env defaults for keys: %s", ", ".join(set_keys))
    return set_keys


def config_from_env() -> dict[str, Any]:
    """Build a configuration mapping from ``HEARTHCAL_*`` environment variables."""
    cfg: dict[str, Any] = {}
    for env_name, (key, convert) in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if not raw:
            continue
        try:
            cfg[key] = convert(raw)
        except ValueError:
            logger.warning("Invalid %s=%r; ignoring", env_name, raw)
    return cfg


def _load_yaml_or_json(path: Path) -> Any:
    """Load a mapping from a YAML or JSON file (chosen by suffix)."""
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    loaded = yaml.safe_load(text)
    # safe_load returns None for empty files
    return {} if loaded is None else loaded


def load_config(
    path: str | None = None, env_file: str | None = None, use_env: bool = True
) -> Config:
    """Load configuration from a YAML/JSON file and the environment.

    Args:
        path: Optional path to the config file. Defaults to
            ./hearthcal/config.yaml (relative to current working dir).
        env_file: Optional .env file seeding the environment
        use_env: Apply ``HEARTHCAL_*`` environment overrides

    Returns:
        Config dataclass instance with values from file (or defaults).

    Raises:
        ValueError: If the file exists but its top level is not a mapping
    """
    p = Path(path) if path else Path.cwd() / DEFAULT_CONFIG_PATH
    logger.debug("Attempting to load config from %s", p)

    raw: dict[str, Any] = {}
    if p.exists():
        loaded = _load_yaml_or_json(p)
        if not isinstance(loaded, dict):
            logger.warning("Config file %s parsed but top-level is not a mapping: %r", p, loaded)
            raise ValueError("Config file must contain a mapping at top level")  # noqa: TRY004
        raw.update(loaded)
        logger.info("Loaded configuration from %s", p)
    else:
        logger.info("Config file %s not found; using defaults", p)

    if use_env:
        load_env_file(Path(env_file) if env_file else None)
        raw.update(config_from_env())

    cfg = Config.from_dict(raw)
    logger.debug("Configuration values: %s", cfg)
    return cfg
