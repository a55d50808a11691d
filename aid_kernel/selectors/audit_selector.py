"""
Module: aid_kernel.selectors.audit_selector
Responsibility: Read-only, filtered and paginated access to the audit trail.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - Newest first: pages are ordered by seq descending.
    - Entity history is ordered by seq ascending (oldest first).

Failure modes:
    - ValidationError for a page or page size below 1.

Audit relevance:
    The read path administrators and auditors use to answer "who changed
    this, when, and from what".
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from aid_kernel.domain.dtos import AuditEntryView, AuditPage
from aid_kernel.exceptions import ValidationError
from aid_kernel.models.audit_entry import AuditAction, AuditEntry
from aid_kernel.selectors.base import BaseSelector

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500


@dataclass(frozen=True)
class AuditFilter:
    """Optional constraints on an audit query; None means unconstrained."""

    actor_id: UUID | None = None
    action: AuditAction | str | None = None
    entity_type: str | None = None
    entity_id: UUID | None = None
    since: datetime | None = None
    until: datetime | None = None


class AuditSelector(BaseSelector):
    """Queries over AuditEntry."""

    def _apply(self, query, filters: AuditFilter):
        if filters.actor_id is not None:
            query = query.where(AuditEntry.actor_id == filters.actor_id)
        if filters.action is not None:
            action = filters.action
            query = query.where(
                AuditEntry.action == (action.value if isinstance(action, AuditAction) else action)
            )
        if filters.entity_type is not None:
            query = query.where(AuditEntry.entity_type == filters.entity_type)
        if filters.entity_id is not None:
            query = query.where(AuditEntry.entity_id == filters.entity_id)
        if filters.since is not None:
            query = query.where(AuditEntry.created_at >= filters.since)
        if filters.until is not None:
            query = query.where(AuditEntry.created_at < filters.until)
        return query

    def page(
        self,
        filters: AuditFilter | None = None,
        page: int = 1,
        per_page: int = DEFAULT_PAGE_SIZE,
    ) -> AuditPage:
        """One page of matching entries, newest first."""
        if page < 1:
            raise ValidationError("page", "must be at least 1")
        if per_page < 1 or per_page > MAX_PAGE_SIZE:
            raise ValidationError("per_page", f"must be between 1 and {MAX_PAGE_SIZE}")
        filters = filters or AuditFilter()

        total = self.session.execute(
            self._apply(select(func.count(AuditEntry.id)), filters)
        ).scalar_one()

        rows = self.session.execute(
            self._apply(select(AuditEntry), filters)
            .order_by(AuditEntry.seq.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).scalars().all()

        return AuditPage(
            entries=tuple(AuditEntryView.from_model(r) for r in rows),
            page=page,
            per_page=per_page,
            total=int(total),
        )

    def history(self, entity_type: str, entity_id: UUID) -> tuple[AuditEntryView, ...]:
        """Every entry for one entity, oldest first."""
        rows = self.session.execute(
            select(AuditEntry)
            .where(
                AuditEntry.entity_type == entity_type,
                AuditEntry.entity_id == entity_id,
            )
            .order_by(AuditEntry.seq)
        ).scalars().all()
        return tuple(AuditEntryView.from_model(r) for r in rows)

    def count(self, filters: AuditFilter | None = None) -> int:
        return int(
            self.session.execute(
                self._apply(select(func.count(AuditEntry.id)), filters or AuditFilter())
            ).scalar_one()
        )

    def latest(self) -> AuditEntryView | None:
        row = self.session.execute(
            select(AuditEntry).order_by(AuditEntry.seq.desc()).limit(1)
        ).scalar_one_or_none()
        return AuditEntryView.from_model(row) if row else None
