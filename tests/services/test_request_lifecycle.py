"""
RequestLifecycle tests.

Verifies:
- Transitions start only from the statuses the lifecycle table allows
- A claim is a committed remainder share plus the assignment
- Recede releases the supplier and their share
- Completion waits for a delivery when stock was allocated
- Cancellation releases undelivered allocations
- Self-dealing claims are rejected without any change
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from aid_kernel.domain.values import (
    AllocationStatus,
    ContributionStatus,
    DisposeAction,
    DonationStatus,
    FundingStatus,
    ParticipantRole,
    RequestStatus,
)
from aid_kernel.exceptions import (
    AuthorizationError,
    DeliveryIncompleteError,
    InvalidTransitionError,
    PercentageOvercommitError,
    SelfDealingError,
    ValidationError,
)
from aid_kernel.selectors.audit_selector import AuditFilter


class TestCreateAndAudit:
    def test_new_request_is_pending_and_unfunded(self, coordinator, recipient, deterministic_clock):
        request = coordinator.create_request(recipient.id, "Blankets", quantity_required=20)

        assert request.status == RequestStatus.PENDING
        assert request.funding_status == FundingStatus.UNFUNDED
        assert request.recipient_id == recipient.id
        assert request.expires_at == deterministic_clock.now() + timedelta(days=30)

    def test_blank_title_is_rejected(self, coordinator, recipient):
        with pytest.raises(ValidationError):
            coordinator.create_request(recipient.id, "   ")

    def test_admin_may_file_for_a_recipient(self, coordinator, recipient, admin):
        request = coordinator.create_request(recipient.id, "Water", actor_id=admin.id)
        assert request.recipient_id == recipient.id

    def test_supplier_may_not_file_requests(self, coordinator, recipient, supplier):
        with pytest.raises(AuthorizationError):
            coordinator.create_request(recipient.id, "Water", actor_id=supplier.id)

    def test_request_must_belong_to_a_recipient(self, coordinator, supplier, admin):
        with pytest.raises(ValidationError):
            coordinator.create_request(supplier.id, "Water", actor_id=admin.id)

    def test_audit_approves_pending_request(self, coordinator, recipient, admin):
        request = coordinator.create_request(recipient.id, "Water")

        approved = coordinator.audit(request.id, admin.id)

        assert approved.status == RequestStatus.APPROVED
        assert approved.audited_by_id == admin.id
        assert approved.last_audited_at is not None

    def test_auditor_role_may_audit(self, coordinator, recipient, make_participant):
        auditor = make_participant(ParticipantRole.AUDITOR)
        request = coordinator.create_request(recipient.id, "Water")

        assert coordinator.audit(request.id, auditor.id).status == RequestStatus.APPROVED

    def test_audit_twice_is_rejected(self, coordinator, approved_request, admin):
        with pytest.raises(InvalidTransitionError) as exc_info:
            coordinator.audit(approved_request.id, admin.id)
        assert exc_info.value.current_status == RequestStatus.APPROVED

    def test_supplier_may_not_audit(self, coordinator, make_request, recipient, supplier):
        request = make_request(recipient, approve=False)
        with pytest.raises(AuthorizationError):
            coordinator.audit(request.id, supplier.id)


class TestClaim:
    def test_claim_funds_the_remainder_and_assigns_supplier(
        self, coordinator, approved_request, supplier,
    ):
        claimed = coordinator.claim(approved_request.id, supplier.id)

        assert claimed.status == RequestStatus.CLAIMED
        assert claimed.funding_status == FundingStatus.FULLY_FUNDED
        assert claimed.assigned_supplier_id == supplier.id
        summary = coordinator.funding_summary(approved_request.id)
        assert summary.total_committed == 100
        assert [c.supplier_id for c in summary.contributions] == [supplier.id]

    def test_claim_takes_only_the_open_share(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier_b.id, 60)

        coordinator.claim(approved_request.id, supplier.id)

        shares = {
            c.supplier_id: c.percentage
            for c in coordinator.funding_summary(approved_request.id).contributions
        }
        assert shares == {supplier_b.id: 60, supplier.id: 40}

    def test_existing_contributor_claim_raises_own_share(
        self, coordinator, approved_request, supplier,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 30)

        coordinator.claim(approved_request.id, supplier.id)

        summary = coordinator.funding_summary(approved_request.id)
        assert summary.contribution_count == 1
        assert summary.contributions[0].percentage == 100

    def test_claim_on_fully_funded_request_is_rejected(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.claim(approved_request.id, supplier.id)

        with pytest.raises(PercentageOvercommitError) as exc_info:
            coordinator.claim(approved_request.id, supplier_b.id)
        assert exc_info.value.remaining == 0

    def test_claim_on_pending_request_is_rejected(self, coordinator, make_request, recipient, supplier):
        request = make_request(recipient, approve=False)
        with pytest.raises(InvalidTransitionError):
            coordinator.claim(request.id, supplier.id)

    def test_donor_may_not_claim(self, coordinator, approved_request, donor):
        with pytest.raises(AuthorizationError):
            coordinator.claim(approved_request.id, donor.id)


class TestSelfDealing:
    def _trail_size(self, coordinator, request_id):
        return coordinator.audit_log.count(AuditFilter(entity_id=request_id))

    def test_phone_alias_claim_is_rejected_without_change(
        self, coordinator, approved_request, make_participant,
    ):
        alias = make_participant(ParticipantRole.SUPPLIER, phone="233-24-000-1111")
        entries_before = coordinator.audit_log.count()

        with pytest.raises(SelfDealingError):
            coordinator.claim(approved_request.id, alias.id)

        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.APPROVED
        assert request.funding_status == FundingStatus.UNFUNDED
        assert request.assigned_supplier_id is None
        assert coordinator.funding_summary(approved_request.id).contribution_count == 0
        assert coordinator.audit_log.count() == entries_before

    def test_national_id_alias_may_not_contribute(
        self, coordinator, approved_request, make_participant,
    ):
        alias = make_participant(ParticipantRole.SUPPLIER, national_id=" GHA-000111 ")

        with pytest.raises(SelfDealingError):
            coordinator.contribute(approved_request.id, alias.id, 10)

    def test_alias_of_existing_contributor_is_rejected(
        self, coordinator, approved_request, supplier, make_participant,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 50)
        twin = make_participant(ParticipantRole.SUPPLIER, phone="233205550001")

        with pytest.raises(SelfDealingError):
            coordinator.contribute(approved_request.id, twin.id, 50)
        assert coordinator.funding_summary(approved_request.id).total_committed == 50


class TestRecede:
    def test_assigned_supplier_requests_recede(self, coordinator, approved_request, supplier):
        coordinator.claim(approved_request.id, supplier.id)

        request = coordinator.request_recede(approved_request.id, supplier.id)

        assert request.status == RequestStatus.RECEDE_REQUESTED
        assert request.assigned_supplier_id == supplier.id

    def test_only_assigned_supplier_may_request_recede(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.claim(approved_request.id, supplier.id)

        with pytest.raises(AuthorizationError):
            coordinator.request_recede(approved_request.id, supplier_b.id)

    def test_approved_recede_releases_supplier_and_share(
        self, coordinator, approved_request, supplier, admin,
    ):
        coordinator.claim(approved_request.id, supplier.id)
        coordinator.request_recede(approved_request.id, supplier.id)

        request = coordinator.approve_recede(approved_request.id, admin.id)

        assert request.status == RequestStatus.APPROVED
        assert request.assigned_supplier_id is None
        assert request.funding_status == FundingStatus.UNFUNDED
        history = coordinator.entity_history("AidRequest", approved_request.id)
        assert history[-2].action == "recede_approved"

    def test_other_contributions_survive_recede(
        self, coordinator, approved_request, supplier, supplier_b, admin,
    ):
        coordinator.contribute(approved_request.id, supplier_b.id, 60)
        coordinator.claim(approved_request.id, supplier.id)
        coordinator.request_recede(approved_request.id, supplier.id)

        request = coordinator.approve_recede(approved_request.id, admin.id)

        assert request.funding_status == FundingStatus.PARTIALLY_FUNDED
        summary = coordinator.funding_summary(approved_request.id)
        assert [(c.supplier_id, c.status) for c in summary.contributions] == [
            (supplier_b.id, ContributionStatus.COMMITTED),
        ]

    def test_approve_recede_needs_a_recede_request(
        self, coordinator, approved_request, supplier, admin,
    ):
        coordinator.claim(approved_request.id, supplier.id)
        with pytest.raises(InvalidTransitionError):
            coordinator.approve_recede(approved_request.id, admin.id)


class TestComplete:
    def test_assigned_supplier_completes_claimed_request(
        self, coordinator, approved_request, supplier,
    ):
        coordinator.claim(approved_request.id, supplier.id)

        request = coordinator.complete(approved_request.id, supplier.id)

        assert request.status == RequestStatus.COMPLETED
        assert request.completed_at is not None

    def test_other_supplier_may_not_complete(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.claim(approved_request.id, supplier.id)
        with pytest.raises(AuthorizationError):
            coordinator.complete(approved_request.id, supplier_b.id)

    def test_undelivered_allocation_blocks_completion(
        self, coordinator, approved_request, supplier, admin, verified_donation,
    ):
        donation = verified_donation(quantity=50)
        coordinator.claim(approved_request.id, supplier.id)
        allocation = coordinator.allocate(approved_request.id, donation.id, 50, admin.id)

        with pytest.raises(DeliveryIncompleteError):
            coordinator.complete(approved_request.id, supplier.id)

        route = coordinator.attach_route(allocation.id, admin.id)
        coordinator.mark_delivered(route.id)
        assert coordinator.complete(approved_request.id, supplier.id).status == RequestStatus.COMPLETED

    def test_completed_request_is_terminal(self, coordinator, approved_request, supplier, recipient):
        coordinator.claim(approved_request.id, supplier.id)
        coordinator.complete(approved_request.id, supplier.id)

        with pytest.raises(InvalidTransitionError):
            coordinator.cancel_request(approved_request.id, recipient.id)


class TestCancel:
    def test_recipient_cancels_own_request(self, coordinator, approved_request, recipient):
        request = coordinator.cancel_request(approved_request.id, recipient.id, "resolved locally")
        assert request.status == RequestStatus.CANCELLED

    def test_supplier_may_not_cancel(self, coordinator, approved_request, supplier):
        with pytest.raises(AuthorizationError):
            coordinator.cancel_request(approved_request.id, supplier.id)

    def test_cancel_releases_open_allocations_and_keeps_contributions(
        self, coordinator, approved_request, recipient, supplier, admin, verified_donation,
    ):
        donation = verified_donation(quantity=100)
        coordinator.contribute(approved_request.id, supplier.id, 60)
        allocation = coordinator.allocate(approved_request.id, donation.id, 30, admin.id)

        coordinator.cancel_request(approved_request.id, recipient.id)

        assert coordinator.allocations.get(allocation.id).status == AllocationStatus.CANCELLED
        stock = coordinator.stock.get(donation.id)
        assert stock.remaining_quantity == 100
        assert stock.status == DonationStatus.VERIFIED
        assert coordinator.funding_summary(approved_request.id).total_committed == 60


class TestBatchDispose:
    def test_close_only_touches_old_requests(
        self, coordinator, make_request, recipient, admin, deterministic_clock,
    ):
        old = make_request(recipient, title="Old request")
        deterministic_clock.advance_days(31)
        fresh = make_request(recipient, title="Fresh request")
        unknown = uuid4()

        result = coordinator.batch_dispose([old.id, fresh.id, unknown], "close", admin.id)

        assert result.action == DisposeAction.CLOSE
        assert result.updated_ids == (old.id,)
        assert set(result.skipped_ids) == {fresh.id, unknown}
        assert coordinator.get_request(old.id).status == RequestStatus.CLOSED_NO_MATCH
        assert coordinator.get_request(fresh.id).status == RequestStatus.APPROVED

    def test_close_releases_open_allocations(
        self, coordinator, make_request, recipient, admin, verified_donation, deterministic_clock,
    ):
        donation = verified_donation(quantity=100)
        first = make_request(recipient, title="First")
        second = make_request(recipient, title="Second")
        held = [
            coordinator.allocate(first.id, donation.id, 60, admin.id),
            coordinator.allocate(second.id, donation.id, 30, admin.id),
        ]
        deterministic_clock.advance_days(31)

        result = coordinator.batch_dispose([first.id, second.id], "close", admin.id)

        assert set(result.updated_ids) == {first.id, second.id}
        for allocation in held:
            assert coordinator.allocations.get(allocation.id).status == AllocationStatus.CANCELLED
        stock = coordinator.stock.get(donation.id)
        assert stock.remaining_quantity == 100
        assert stock.status == DonationStatus.VERIFIED
        assert coordinator.stock.check_stock_cache(donation.id) == 100
        assert coordinator.validate_audit_chain()

    def test_boost_keeps_allocations(
        self, coordinator, approved_request, admin, verified_donation, deterministic_clock,
    ):
        donation = verified_donation(quantity=100)
        allocation = coordinator.allocate(approved_request.id, donation.id, 60, admin.id)
        deterministic_clock.advance_days(31)

        coordinator.batch_dispose([approved_request.id], "boost", admin.id)

        assert coordinator.allocations.get(allocation.id).status == AllocationStatus.PENDING
        assert coordinator.stock.get(donation.id).remaining_quantity == 40

    def test_boost_sets_admin_override(
        self, coordinator, make_request, recipient, admin, deterministic_clock,
    ):
        old = make_request(recipient)
        deterministic_clock.advance_days(31)

        result = coordinator.batch_dispose([old.id], DisposeAction.BOOST, admin.id)

        assert result.updated_count == 1
        request = coordinator.get_request(old.id)
        assert request.admin_override == coordinator.settings.review.boost_override
        assert request.status == RequestStatus.APPROVED

    def test_terminal_requests_are_skipped(
        self, coordinator, approved_request, recipient, admin, deterministic_clock,
    ):
        coordinator.cancel_request(approved_request.id, recipient.id)
        deterministic_clock.advance_days(31)

        result = coordinator.batch_dispose([approved_request.id], "close", admin.id)

        assert result.updated_ids == ()
        assert result.skipped_ids == (approved_request.id,)

    def test_only_admins_dispose(self, coordinator, approved_request, supplier):
        with pytest.raises(AuthorizationError):
            coordinator.batch_dispose([approved_request.id], "close", supplier.id)
