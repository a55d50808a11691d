"""
Request selector tests: the funding marketplace and the review queue.
"""

from datetime import timedelta
from decimal import Decimal

from aid_kernel.models.request import AidRequest


def _set(session, request_id, **fields):
    row = session.get(AidRequest, request_id)
    for name, value in fields.items():
        setattr(row, name, value)
    session.commit()


class TestListAvailable:
    def test_ordering_is_boost_then_score_then_newest(
        self, coordinator, session, make_request, recipient, deterministic_clock,
    ):
        boosted = make_request(recipient, title="Boosted")
        deterministic_clock.advance(60)
        scored_high = make_request(recipient, title="High score")
        deterministic_clock.advance(60)
        unscored = make_request(recipient, title="Unscored")
        deterministic_clock.advance(60)
        scored_low = make_request(recipient, title="Low score")

        _set(session, boosted.id, admin_override=3)
        _set(session, scored_high.id, urgency_score=Decimal("80"))
        _set(session, scored_low.id, urgency_score=Decimal("20"))

        listed = [a.request.id for a in coordinator.list_available()]

        assert listed == [boosted.id, scored_high.id, scored_low.id, unscored.id]

    def test_reports_funded_percentage(self, coordinator, approved_request, supplier):
        coordinator.contribute(approved_request.id, supplier.id, 60)

        [entry] = coordinator.list_available()

        assert entry.funded_percentage == 60
        assert entry.remaining_percentage == 40

    def test_excludes_pending_funded_and_expired(
        self, coordinator, make_request, recipient, supplier, deterministic_clock,
    ):
        open_request = make_request(recipient, title="Open")
        make_request(recipient, title="Pending", approve=False)
        funded = make_request(recipient, title="Funded")
        coordinator.claim(funded.id, supplier.id)
        make_request(
            recipient, title="Expired",
            expires_at=deterministic_clock.now() - timedelta(hours=1),
        )

        assert [a.request.id for a in coordinator.list_available()] == [open_request.id]

    def test_limit(self, coordinator, make_request, recipient):
        for n in range(3):
            make_request(recipient, title=f"Need {n}")
        assert len(coordinator.list_available(limit=2)) == 2


class TestReviewQueue:
    def test_lists_old_non_terminal_requests_oldest_first(
        self, coordinator, make_request, recipient, deterministic_clock,
    ):
        oldest = make_request(recipient, title="Oldest")
        deterministic_clock.advance_days(1)
        older = make_request(recipient, approve=False, title="Older")
        cancelled = make_request(recipient, title="Cancelled")
        coordinator.cancel_request(cancelled.id, recipient.id)
        deterministic_clock.advance_days(40)
        make_request(recipient, title="Recent")

        assert [r.id for r in coordinator.list_flagged()] == [oldest.id, older.id]

    def test_stale_candidates_exclude_committed_requests(
        self, coordinator, make_request, recipient, supplier, deterministic_clock,
    ):
        untouched = make_request(recipient, title="Untouched")
        committed = make_request(recipient, title="Committed")
        coordinator.contribute(committed.id, supplier.id, 10)
        deterministic_clock.advance_days(31)

        cutoff = deterministic_clock.now() - timedelta(days=30)
        assert coordinator.requests.stale_unmatched_ids(cutoff) == [untouched.id]
