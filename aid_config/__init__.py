"""
aid_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain settings at runtime through
    ``get_active_config()``.  Reads the shipped ``defaults.yaml``, merges
    an optional override file, and applies the ``AID_DATABASE_URL``
    environment variable.

Architecture position:
    Configuration.  Sits beside ``aid_kernel``; the kernel MUST NEVER
    import from ``aid_config``.  The coordinator and batch CLI translate
    settings into plain arguments for kernel calls.

Failure modes:
    - ``FileNotFoundError`` -- override path does not exist.
    - ``ValueError`` -- unknown keys or out-of-range values.

Audit relevance:
    Every call emits an ``AID_CONFIG_TRACE`` log entry with the settings
    checksum, tying a run to the exact configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from aid_config.loader import load_yaml_file, merge_settings, parse_settings
from aid_config.schema import EngineSettings

_logger = logging.getLogger("aid_kernel.config")

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "AID_CONFIG_PATH"
DATABASE_URL_ENV = "AID_DATABASE_URL"


def get_active_config(config_path: Path | str | None = None) -> EngineSettings:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: Override file.  Defaults to ``$AID_CONFIG_PATH`` if
            set, otherwise the shipped defaults are used alone.

    Returns:
        Frozen EngineSettings.
    """
    data = load_yaml_file(DEFAULTS_PATH)

    override = config_path or os.environ.get(CONFIG_PATH_ENV)
    if override:
        data = merge_settings(data, load_yaml_file(Path(override)))

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        data = merge_settings(data, {"database": {"url": database_url}})

    settings = parse_settings(data)

    _logger.info(
        "AID_CONFIG_TRACE",
        extra={
            "trace_type": "AID_CONFIG_TRACE",
            "checksum": settings.checksum,
            "override_path": str(override) if override else None,
            "stale_after_days": settings.review.stale_after_days,
            "lock_timeout_ms": settings.database.lock_timeout_ms,
        },
    )
    return settings


__all__ = ["EngineSettings", "get_active_config"]
