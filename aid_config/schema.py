"""
Engine settings schema.

Frozen dataclasses the loader parses ``defaults.yaml`` (or an override
file) into.  The kernel never sees these types: the coordinator and the
batch CLI read the values they need and pass them in as arguments.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    """Connection settings for aid_kernel.db.engine."""

    url: str = "sqlite:///aid_engine.db"
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    # Row-lock wait before LockTimeoutError (PostgreSQL lock_timeout,
    # SQLite busy timeout)
    lock_timeout_ms: int = 5000


@dataclass(frozen=True)
class RequestSettings:
    expiry_days: int = 30


@dataclass(frozen=True)
class ReviewSettings:
    """Stale-request review and administrative disposition."""

    stale_after_days: int = 30
    boost_override: int = 3


@dataclass(frozen=True)
class AuditSettings:
    page_size: int = 50


@dataclass(frozen=True)
class ScoringSettings:
    """Background vulnerability rescoring."""

    enabled: bool = True
    max_workers: int = 2


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"
    json_output: bool = True


@dataclass(frozen=True)
class EngineSettings:
    """Complete engine configuration."""

    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    requests: RequestSettings = field(default_factory=RequestSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    audit: AuditSettings = field(default_factory=AuditSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    checksum: str = ""
