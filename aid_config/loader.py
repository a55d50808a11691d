"""
Configuration loader (``aid_config.loader``).

Responsibility
--------------
Loads a YAML settings file and parses it into the frozen
``aid_config.schema`` dataclasses.  The public runtime entry point is
``aid_config.get_active_config()``; nothing else should call this
directly.

Invariants enforced
-------------------
* Unknown sections or keys raise ``ValueError``; a typo never silently
  falls back to a default.
* Numeric settings are validated (positive day counts, lock timeout,
  page size).
* ``compute_checksum`` is deterministic for identical input.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad keys or values -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from aid_config.schema import (
    AuditSettings,
    DatabaseSettings,
    EngineSettings,
    LoggingSettings,
    RequestSettings,
    ReviewSettings,
    ScoringSettings,
)

_SECTIONS = {
    "database": DatabaseSettings,
    "requests": RequestSettings,
    "review": ReviewSettings,
    "audit": AuditSettings,
    "scoring": ScoringSettings,
    "logging": LoggingSettings,
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Section-wise merge: keys in ``override`` replace those in ``base``."""
    merged = {name: dict(values or {}) for name, values in base.items()}
    for name, values in (override or {}).items():
        merged.setdefault(name, {}).update(values or {})
    return merged


def _parse_section(name: str, data: dict[str, Any]):
    cls = _SECTIONS[name]
    allowed = {f.name for f in fields(cls)}
    unknown = set(data) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {sorted(unknown)}")
    return cls(**data)


def _validate(settings: EngineSettings) -> None:
    if settings.requests.expiry_days < 1:
        raise ValueError("requests.expiry_days must be at least 1")
    if settings.review.stale_after_days < 1:
        raise ValueError("review.stale_after_days must be at least 1")
    if settings.database.lock_timeout_ms < 1:
        raise ValueError("database.lock_timeout_ms must be positive")
    if settings.audit.page_size < 1:
        raise ValueError("audit.page_size must be at least 1")
    if settings.scoring.max_workers < 1:
        raise ValueError("scoring.max_workers must be at least 1")


def parse_settings(data: dict[str, Any]) -> EngineSettings:
    """
    Parse a settings dict into ``EngineSettings``.

    Raises:
        ValueError: Unknown section or key, or an out-of-range value.
    """
    unknown = set(data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown configuration sections: {sorted(unknown)}")

    sections = {
        name: _parse_section(name, data.get(name) or {})
        for name in _SECTIONS
    }
    settings = EngineSettings(**sections, checksum=compute_checksum(data))
    _validate(settings)
    return settings
