"""
ContributionLedger tests.

Verifies:
- Committed percentages per request never exceed 100
- funding_status and the APPROVED <-> CLAIMED move follow the committed sum
- One committed contribution per (request, supplier)
- Withdrawal is soft: history is kept, funding is re-derived
"""

import pytest

from aid_kernel.domain.values import (
    ContributionStatus,
    FundingStatus,
    ParticipantRole,
    RequestStatus,
)
from aid_kernel.exceptions import (
    AuthorizationError,
    DuplicateContributionError,
    FundingStateDriftError,
    InvalidTransitionError,
    PercentageOvercommitError,
    ValidationError,
)
from aid_kernel.models.request import AidRequest


class TestCommit:
    def test_overcommit_is_rejected_with_remaining_share(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)

        with pytest.raises(PercentageOvercommitError) as exc_info:
            coordinator.contribute(approved_request.id, supplier_b.id, 50)

        assert exc_info.value.remaining == 40
        assert exc_info.value.requested == 50
        summary = coordinator.funding_summary(approved_request.id)
        assert summary.total_committed == 60
        assert summary.contribution_count == 1
        assert summary.funding_status == FundingStatus.PARTIALLY_FUNDED

    def test_partial_commit_keeps_request_approved(self, coordinator, approved_request, supplier):
        coordinator.contribute(approved_request.id, supplier.id, 60)

        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.APPROVED
        assert request.funding_status == FundingStatus.PARTIALLY_FUNDED

    def test_two_suppliers_reaching_full_funding_claim_the_request(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.contribute(approved_request.id, supplier_b.id, 40)

        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.CLAIMED
        assert request.funding_status == FundingStatus.FULLY_FUNDED
        assert coordinator.funding_summary(approved_request.id).remaining == 0

    def test_claimed_request_accepts_no_new_commitment(
        self, coordinator, approved_request, supplier, supplier_b, make_participant,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.contribute(approved_request.id, supplier_b.id, 40)
        third = make_participant(ParticipantRole.SUPPLIER, phone="+233 20 555 0003")

        with pytest.raises(InvalidTransitionError) as exc_info:
            coordinator.contribute(approved_request.id, third.id, 1)
        assert exc_info.value.current_status == RequestStatus.CLAIMED

    def test_duplicate_contribution_is_rejected(self, coordinator, approved_request, supplier):
        coordinator.contribute(approved_request.id, supplier.id, 20)

        with pytest.raises(DuplicateContributionError):
            coordinator.contribute(approved_request.id, supplier.id, 20)
        assert coordinator.funding_summary(approved_request.id).total_committed == 20

    @pytest.mark.parametrize("percentage", [0, -5, 101, True, 12.5])
    def test_percentage_must_be_whole_and_in_range(
        self, coordinator, approved_request, supplier, percentage,
    ):
        with pytest.raises(ValidationError):
            coordinator.contribute(approved_request.id, supplier.id, percentage)

    def test_negative_amount_is_rejected(self, coordinator, approved_request, supplier):
        with pytest.raises(ValidationError):
            coordinator.contribute(approved_request.id, supplier.id, 10, amount_value=-1)

    def test_only_suppliers_commit(self, coordinator, approved_request, donor):
        with pytest.raises(AuthorizationError):
            coordinator.contribute(approved_request.id, donor.id, 10)

    def test_pending_request_cannot_be_funded(self, coordinator, make_request, recipient, supplier):
        pending = make_request(recipient, approve=False)

        with pytest.raises(InvalidTransitionError) as exc_info:
            coordinator.contribute(pending.id, supplier.id, 10)
        assert exc_info.value.current_status == RequestStatus.PENDING

    def test_overcommit_is_logged(self, coordinator, approved_request, supplier, supplier_b, captured_logs):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        with pytest.raises(PercentageOvercommitError):
            coordinator.contribute(approved_request.id, supplier_b.id, 50)

        records = [r for r in captured_logs() if r["message"] == "contribution_rejected_overcommit"]
        assert records
        assert records[-1]["remaining"] == 40


class TestUpdate:
    def test_update_below_full_reverts_claimed_request(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        first = coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.contribute(approved_request.id, supplier_b.id, 40)

        updated = coordinator.update_contribution(first.id, 30, supplier.id)

        assert updated.percentage == 30
        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.APPROVED
        assert request.funding_status == FundingStatus.PARTIALLY_FUNDED
        assert request.assigned_supplier_id is None

    def test_update_cannot_exceed_what_others_leave(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        second = coordinator.contribute(approved_request.id, supplier_b.id, 30)

        with pytest.raises(PercentageOvercommitError) as exc_info:
            coordinator.update_contribution(second.id, 50, supplier_b.id)
        assert exc_info.value.remaining == 40

    def test_update_to_fill_remainder_claims_the_request(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        second = coordinator.contribute(approved_request.id, supplier_b.id, 30)

        coordinator.update_contribution(second.id, 40, supplier_b.id)

        assert coordinator.get_request(approved_request.id).status == RequestStatus.CLAIMED

    def test_another_supplier_may_not_update(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        first = coordinator.contribute(approved_request.id, supplier.id, 60)

        with pytest.raises(AuthorizationError):
            coordinator.update_contribution(first.id, 10, supplier_b.id)

    def test_admin_may_update(self, coordinator, approved_request, supplier, admin):
        first = coordinator.contribute(approved_request.id, supplier.id, 60)

        assert coordinator.update_contribution(first.id, 10, admin.id).percentage == 10


class TestWithdraw:
    def test_withdrawing_sole_contribution_unfunds_request(
        self, coordinator, approved_request, supplier,
    ):
        contribution = coordinator.contribute(approved_request.id, supplier.id, 60)

        withdrawn = coordinator.withdraw_contribution(contribution.id, supplier.id)

        assert withdrawn.status == ContributionStatus.WITHDRAWN
        assert withdrawn.withdrawn_at is not None
        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.APPROVED
        assert request.funding_status == FundingStatus.UNFUNDED

    def test_withdrawal_from_claimed_request_reverts_it(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        second = coordinator.contribute(approved_request.id, supplier_b.id, 40)

        coordinator.withdraw_contribution(second.id, supplier_b.id)

        request = coordinator.get_request(approved_request.id)
        assert request.status == RequestStatus.APPROVED
        assert request.funding_status == FundingStatus.PARTIALLY_FUNDED

    def test_withdrawn_share_can_be_recommitted(self, coordinator, approved_request, supplier):
        contribution = coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.withdraw_contribution(contribution.id, supplier.id)

        again = coordinator.contribute(approved_request.id, supplier.id, 100)

        assert again.id != contribution.id
        assert coordinator.get_request(approved_request.id).status == RequestStatus.CLAIMED

    def test_withdrawing_twice_is_rejected(self, coordinator, approved_request, supplier):
        contribution = coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.withdraw_contribution(contribution.id, supplier.id)

        with pytest.raises(InvalidTransitionError):
            coordinator.withdraw_contribution(contribution.id, supplier.id)

    def test_withdrawal_is_kept_in_history(self, coordinator, approved_request, supplier):
        contribution = coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.withdraw_contribution(contribution.id, supplier.id)

        history = coordinator.entity_history("Contribution", contribution.id)
        assert [e.action for e in history] == ["created", "withdrawn"]
        assert coordinator.funding_summary(approved_request.id).contribution_count == 0


class TestFundingConsistency:
    def test_consistent_after_every_change(
        self, coordinator, approved_request, supplier, supplier_b,
    ):
        first = coordinator.contribute(approved_request.id, supplier.id, 60)
        coordinator.contribute(approved_request.id, supplier_b.id, 40)
        coordinator.update_contribution(first.id, 10, supplier.id)

        summary = coordinator.ledger.check_funding_consistency(approved_request.id)
        assert summary.total_committed == 50

    def test_drift_is_detected(self, coordinator, session, approved_request, supplier):
        coordinator.contribute(approved_request.id, supplier.id, 60)
        row = session.get(AidRequest, approved_request.id)
        row.funding_status = FundingStatus.FULLY_FUNDED.value
        session.flush()

        with pytest.raises(FundingStateDriftError) as exc_info:
            coordinator.ledger.check_funding_consistency(approved_request.id)
        assert exc_info.value.total == 60
        assert exc_info.value.derived == FundingStatus.PARTIALLY_FUNDED.value
