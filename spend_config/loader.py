"""
Settings Loader (``spend_config.loader``).

Responsibility
--------------
Loads YAML settings documents, layers them (packaged defaults, optional
override file, ``SPEND_*`` environment variables), and parses the result
into the frozen dataclasses of ``spend_config.schema``.  The single public
entry point for runtime settings is ``spend_config.get_active_settings()``.

Architecture position
---------------------
**Config layer** -- infrastructure tooling.  No dependency on the kernel
or the batch package.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Unknown top-level sections and unknown keys are rejected; a typo never
  silently falls back to a default.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the
  effective settings document.

Failure modes
-------------
* Missing override file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown keys, wrong types, or out-of-range values  -> ``ValueError``.
"""

from __future__ import annotations

import copy
import hashlib
import json
import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from spend_config.schema import (
    BatchSettings,
    DatabaseSettings,
    EngineSettings,
    LoggingSettings,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Environment variable -> (section, key).  ``None`` section means top level.
ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "SPEND_ENVIRONMENT": (None, "environment"),
    "SPEND_DATABASE_URL": ("database", "url"),
    "SPEND_DATABASE_ECHO": ("database", "echo"),
    "SPEND_DATABASE_POOL_SIZE": ("database", "pool_size"),
    "SPEND_LOG_LEVEL": ("logging", "level"),
    "SPEND_BATCH_MAX_APPROVE_PER_RUN": ("batch", "max_approve_per_run"),
    "SPEND_BATCH_MAX_CANDIDATES": ("batch", "max_candidates"),
}

_SECTIONS = ("database", "logging", "batch")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")
    return data


def merge_settings(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``override`` onto ``base`` one section deep."""
    merged = copy.deepcopy(dict(base))
    for key, value in override.items():
        if key in _SECTIONS:
            if not isinstance(value, dict):
                raise ValueError(f"Section '{key}' must be a mapping")
            merged.setdefault(key, {})
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def _coerce_env_value(raw: str) -> Any:
    """Interpret an environment string with YAML scalar rules (true, 10, ...)."""
    return yaml.safe_load(raw) if raw.strip() else raw


def environment_overrides(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect ``SPEND_*`` overrides as a settings fragment."""
    environ = os.environ if environ is None else environ
    fragment: dict[str, Any] = {}
    for name, (section, key) in ENV_OVERRIDES.items():
        if name not in environ:
            continue
        value = environ[name]
        # URLs and names stay strings even when they look like YAML
        if key not in ("url", "environment", "level"):
            value = _coerce_env_value(value)
        if section is None:
            fragment[key] = value
        else:
            fragment.setdefault(section, {})[key] = value
    return fragment


def compute_checksum(data: Mapping[str, Any]) -> str:
    """SHA-256 of the settings document in canonical JSON form."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _check_keys(section: str, data: Mapping[str, Any], allowed: tuple[str, ...]) -> None:
    unknown = sorted(set(data) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown keys in '{section}': {', '.join(unknown)}")


def _positive_int(section: str, key: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValueError(f"{section}.{key} must be a positive integer, got {value!r}")
    return value


def _bool(section: str, key: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{section}.{key} must be true or false, got {value!r}")
    return value


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    _check_keys("database", data, (
        "url", "echo", "pool_size", "max_overflow", "pool_timeout", "pool_recycle",
    ))
    url = data.get("url", DatabaseSettings.url)
    if not isinstance(url, str) or not url.strip():
        raise ValueError("database.url must be a non-empty string")
    max_overflow = data.get("max_overflow", DatabaseSettings.max_overflow)
    if isinstance(max_overflow, bool) or not isinstance(max_overflow, int) or max_overflow < 0:
        raise ValueError(f"database.max_overflow must be a non-negative integer, got {max_overflow!r}")
    return DatabaseSettings(
        url=url.strip(),
        echo=_bool("database", "echo", data.get("echo", DatabaseSettings.echo)),
        pool_size=_positive_int("database", "pool_size", data.get("pool_size", DatabaseSettings.pool_size)),
        max_overflow=max_overflow,
        pool_timeout=_positive_int(
            "database", "pool_timeout", data.get("pool_timeout", DatabaseSettings.pool_timeout),
        ),
        pool_recycle=_positive_int(
            "database", "pool_recycle", data.get("pool_recycle", DatabaseSettings.pool_recycle),
        ),
    )


def parse_logging(data: Mapping[str, Any]) -> LoggingSettings:
    _check_keys("logging", data, ("level",))
    level = str(data.get("level", LoggingSettings.level)).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def parse_batch(data: Mapping[str, Any]) -> BatchSettings:
    _check_keys("batch", data, ("max_approve_per_run", "max_candidates"))
    max_approve = _positive_int(
        "batch", "max_approve_per_run",
        data.get("max_approve_per_run", BatchSettings.max_approve_per_run),
    )
    max_candidates = _positive_int(
        "batch", "max_candidates", data.get("max_candidates", BatchSettings.max_candidates),
    )
    if max_candidates < max_approve:
        raise ValueError(
            f"batch.max_candidates ({max_candidates}) must be >= "
            f"batch.max_approve_per_run ({max_approve})"
        )
    return BatchSettings(max_approve_per_run=max_approve, max_candidates=max_candidates)


def parse_settings(data: Mapping[str, Any], sources: tuple[str, ...] = ()) -> EngineSettings:
    """
    Parse a merged settings document into ``EngineSettings``.

    Postconditions:
        - ``checksum`` is computed over ``data`` exactly as given.
    Raises:
        ValueError: unknown sections or keys, or invalid values.
    """
    _check_keys("<root>", data, ("environment",) + _SECTIONS)
    environment = data.get("environment", "development")
    if not isinstance(environment, str) or not environment.strip():
        raise ValueError("environment must be a non-empty string")
    return EngineSettings(
        environment=environment.strip(),
        database=parse_database(data.get("database") or {}),
        logging=parse_logging(data.get("logging") or {}),
        batch=parse_batch(data.get("batch") or {}),
        sources=sources,
        checksum=compute_checksum(data),
    )


def load_settings(
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
    defaults_path: Path = DEFAULTS_PATH,
) -> EngineSettings:
    """Layer defaults, override file, and environment, then parse."""
    data = load_yaml_file(defaults_path)
    sources = [str(defaults_path)]
    if config_path is not None:
        data = merge_settings(data, load_yaml_file(Path(config_path)))
        sources.append(str(config_path))
    env_fragment = environment_overrides(environ)
    if env_fragment:
        data = merge_settings(data, env_fragment)
        sources.append("environment")
    return parse_settings(data, tuple(sources))
