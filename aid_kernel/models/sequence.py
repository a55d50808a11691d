"""
Module: aid_kernel.models.sequence
Responsibility: Counter rows behind SequenceService (audit entry seq).
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import Base


class SequenceCounter(Base):
    """One row per named sequence; locked FOR UPDATE while a value is taken."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), unique=True)
    current_value: Mapped[int] = mapped_column(default=0)
