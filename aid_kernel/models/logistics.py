"""
Module: aid_kernel.models.logistics
Responsibility: ORM persistence for warehouses and delivery routes.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/ value types only.

Invariants enforced:
    - Warehouse capacity bounds the quantity of non-delivered donations
      stored there (checked by DonationStock.assign_warehouse).
    - At most one SCHEDULED or IN_TRANSIT route per allocation (checked
      by AllocationEngine.attach_route under the allocation lock).

Audit relevance:
    A route reaching DELIVERED is the signal that lets a request complete.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from aid_kernel.db.base import TrackedBase, UUIDString
from aid_kernel.domain.values import RouteStatus


class Warehouse(TrackedBase):
    """Storage site with a fixed unit capacity."""

    __tablename__ = "warehouses"

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_warehouse_capacity_nonneg"),
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    region: Mapped[str | None] = mapped_column(String(100), nullable=True)

    capacity: Mapped[int] = mapped_column(Integer, nullable=False)

    def __repr__(self) -> str:
        return f"<Warehouse {self.name!r} cap={self.capacity}>"


class DeliveryRoute(TrackedBase):
    """A scheduled movement of allocated stock to the recipient."""

    __tablename__ = "delivery_routes"

    __table_args__ = (
        Index("idx_route_allocation", "allocation_id", "status"),
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("allocations.id"),
        nullable=False,
    )

    warehouse_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("warehouses.id"),
        nullable=True,
    )

    status: Mapped[RouteStatus] = mapped_column(
        String(20),
        nullable=False,
        default=RouteStatus.SCHEDULED.value,
    )

    scheduled_date: Mapped[datetime | None] = mapped_column(nullable=True)

    actual_arrival_date: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<DeliveryRoute {self.allocation_id} ({self.status})>"
