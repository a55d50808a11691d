"""
Module: aid_kernel.db.base
Responsibility: Declarative base classes for the marketplace ORM models:
    UUID keys stored as text, one column-type map for the whole schema,
    and the TrackedBase columns every mutable business row carries.
Architecture position: Kernel > DB.  Lowest-level import target within the
    kernel.  MUST NOT import from models/, services/, selectors/, domain/,
    or outer layers.

Invariants enforced:
    - Every row has a uuid4 primary key, stored as String(36) so the same
      schema runs on PostgreSQL and SQLite.
    - Pledged amounts map to Numeric(38, 9); they never travel as float.
    - Timestamps are timezone-aware.

Audit relevance:
    Services write created_at from the injected Clock, so age rules (stale
    request flagging, expiry) are reproducible in tests.  updated_by_id
    names the last participant to change a row; None means a batch task.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID in Python, 36-character text in the database."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    """
    Declarative base for every marketplace model.

    Guarantees:
        - ``id`` defaults to uuid4().
        - Annotated columns get the mapped types below unless a column
          names its own type.
    """

    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """
    Abstract base for mutable business rows: requests, contributions,
    donations, allocations, warehouses and delivery routes.

    Contract:
        ``created_by_id`` is the participant who filed, pledged, donated or
        allocated the row.  The server defaults only cover rows inserted
        outside a service (fixtures, migrations).
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(),
    )
    created_by_id: Mapped[UUID] = mapped_column(UUIDString())
    updated_by_id: Mapped[UUID | None] = mapped_column(UUIDString())
