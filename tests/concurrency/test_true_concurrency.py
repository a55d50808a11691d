"""
Concurrent check-then-write tests (real commits, one session per thread).

Each scenario releases N threads at a barrier against the same rows.
Exactly the commitments that fit may succeed; every other attempt is
rejected with the conflict error and the remaining capacity it saw.

Works on SQLite (BEGIN IMMEDIATE serializes writers) and on PostgreSQL
(SELECT ... FOR UPDATE) when DATABASE_URL points there.
"""

from concurrent.futures import ThreadPoolExecutor
from threading import Barrier

import pytest

from aid_kernel.domain.values import DonationStatus, RequestStatus
from aid_kernel.exceptions import (
    InvalidTransitionError,
    PercentageOvercommitError,
    QuantityOvercommitError,
    WarehouseCapacityError,
)
from aid_kernel.models.logistics import Warehouse
from aid_services.coordinator import MarketplaceCoordinator

pytestmark = pytest.mark.slow_locks

THREADS = 6
WON = "won"


class Marketplace:
    """Seed data committed through its own session."""

    def __init__(self, session_factory):
        self.session = session_factory()
        self.coordinator = MarketplaceCoordinator(self.session)
        self.admin = self.coordinator.register_participant(
            "Admin", "admin", phone="+1 555 000 0001", is_verified=True,
        )
        self.recipient = self.coordinator.register_participant(
            "Recipient", "recipient", phone="+233 24 000 1111", is_verified=True,
        )
        self.suppliers = [
            self.coordinator.register_participant(
                f"Supplier {n}", "supplier", phone=f"+233 20 700 {n:04d}", is_verified=True,
            )
            for n in range(THREADS)
        ]
        self.donor = self.coordinator.register_participant(
            "Donor", "donor", phone="+233 20 555 0100", is_verified=True,
        )

    def approved_request(self, title="Shelter kits"):
        request = self.coordinator.create_request(self.recipient.id, title, quantity_required=10)
        return self.coordinator.audit(request.id, self.admin.id)

    def verified_donation(self, quantity):
        donation = self.coordinator.create_donation(self.donor.id, "goods", "Tarpaulin", quantity)
        return self.coordinator.verify_donation(donation.id, self.admin.id)

    def close(self):
        self.session.close()


def race(session_factory, attempts):
    """Run ``attempt(coordinator, arg)`` for each arg at once; collect outcomes."""
    barrier = Barrier(len(attempts))

    def run(item):
        fn, arg = item
        session = session_factory()
        try:
            coordinator = MarketplaceCoordinator(session)
            barrier.wait(timeout=30)
            return fn(coordinator, arg)
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(attempts)) as pool:
        return list(pool.map(run, attempts))


@pytest.fixture
def market(session_factory):
    m = Marketplace(session_factory)
    yield m
    m.close()


class TestConcurrentFunding:
    def test_only_one_sixty_percent_commitment_wins(self, session_factory, market):
        request = market.approved_request()

        def commit(coordinator, supplier):
            try:
                coordinator.contribute(request.id, supplier.id, 60)
                return WON
            except PercentageOvercommitError as exc:
                return exc.remaining

        outcomes = race(session_factory, [(commit, s) for s in market.suppliers])

        assert outcomes.count(WON) == 1
        assert sorted(o for o in outcomes if o != WON) == [40] * (THREADS - 1)
        summary = market.coordinator.funding_summary(request.id)
        assert summary.total_committed == 60
        assert summary.contribution_count == 1

    def test_only_one_claim_wins(self, session_factory, market):
        request = market.approved_request()

        def claim(coordinator, supplier):
            try:
                coordinator.claim(request.id, supplier.id)
                return supplier.id
            except PercentageOvercommitError:
                return None

        outcomes = race(session_factory, [(claim, s) for s in market.suppliers])

        winners = [o for o in outcomes if o is not None]
        assert len(winners) == 1
        final = market.coordinator.get_request(request.id)
        assert final.status == RequestStatus.CLAIMED
        assert final.assigned_supplier_id == winners[0]
        assert market.coordinator.funding_summary(request.id).total_committed == 100

    def test_audit_chain_survives_contention(self, session_factory, market):
        request = market.approved_request()

        def commit(coordinator, supplier):
            try:
                coordinator.contribute(request.id, supplier.id, 20)
                return WON
            except (PercentageOvercommitError, InvalidTransitionError) as exc:
                return type(exc)

        outcomes = race(session_factory, [(commit, s) for s in market.suppliers])

        # The fifth 20% fills and claims the request; the sixth is refused.
        assert outcomes.count(WON) == 5
        assert set(outcomes) - {WON} <= {PercentageOvercommitError, InvalidTransitionError}
        assert market.coordinator.get_request(request.id).status == RequestStatus.CLAIMED
        assert market.coordinator.funding_summary(request.id).total_committed == 100
        assert market.coordinator.validate_audit_chain() is True


class TestConcurrentStock:
    def test_allocations_never_exceed_quantity(self, session_factory, market):
        donation = market.verified_donation(quantity=100)
        requests = [market.approved_request(f"Need {n}") for n in range(THREADS)]

        def allocate(coordinator, request):
            try:
                coordinator.allocate(request.id, donation.id, 30, market.admin.id)
                return WON
            except QuantityOvercommitError as exc:
                return exc.available

        outcomes = race(session_factory, [(allocate, r) for r in requests])

        assert outcomes.count(WON) == 3
        assert sorted(o for o in outcomes if o != WON) == [10] * (THREADS - 3)
        stock = market.coordinator.stock.get(donation.id)
        assert stock.remaining_quantity == 10
        assert stock.status == DonationStatus.ALLOCATED
        assert market.coordinator.stock.check_stock_cache(donation.id) == 10

    def test_warehouse_capacity_holds(self, session_factory, market):
        warehouse = Warehouse(
            name="Tema depot", capacity=100, created_by_id=market.admin.id,
        )
        market.session.add(warehouse)
        market.session.commit()
        donations = [market.verified_donation(quantity=40) for _ in range(4)]

        def store(coordinator, donation):
            try:
                coordinator.assign_warehouse(donation.id, warehouse.id, market.admin.id)
                return WON
            except WarehouseCapacityError:
                return None

        outcomes = race(session_factory, [(store, d) for d in donations])

        assert outcomes.count(WON) == 2
        assert market.coordinator.stock.stored_quantity(warehouse.id) == 80
