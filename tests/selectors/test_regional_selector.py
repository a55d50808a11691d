"""
Regional need tests.

Verifies:
- Only verified, non-terminal, unexpired requests are counted
- net_need subtracts live allocations
- Self-dealt requests are excluded from every statistic
"""

from decimal import Decimal

from aid_kernel.domain.values import ParticipantRole
from aid_kernel.models.participant import Participant
from aid_kernel.models.request import AidRequest
from aid_kernel.selectors.regional_selector import UNKNOWN_REGION, urgency_level_of


class TestUrgencyParsing:
    def test_unknown_levels_count_as_low(self):
        assert urgency_level_of(None).value == "low"
        assert urgency_level_of(" CRITICAL ").value == "critical"
        assert urgency_level_of("dire").value == "low"


class TestRegionNeeds:
    def test_aggregates_per_region(
        self, coordinator, session, make_request, make_participant, recipient, admin,
        verified_donation,
    ):
        rice = make_request(recipient, quantity_required=100, region="Accra")
        water = make_request(recipient, quantity_required=50, region="Accra")
        make_request(recipient, quantity_required=20, region="Kumasi")
        make_request(recipient, quantity_required=5)
        cancelled = make_request(recipient, quantity_required=999, region="Accra")
        coordinator.cancel_request(cancelled.id, recipient.id)
        unverified = make_participant(
            ParticipantRole.RECIPIENT, phone="+233 24 000 7777", verified=False,
        )
        make_request(unverified, quantity_required=999, region="Accra")

        donation = verified_donation(quantity=100)
        coordinator.allocate(rice.id, donation.id, 30, admin.id)
        session.get(AidRequest, water.id).urgency_level = "critical"
        session.commit()

        needs = coordinator.region_needs()

        assert [n.region for n in needs] == ["Accra", "Kumasi", UNKNOWN_REGION]
        accra = needs[0]
        assert accra.total_requests == 2
        assert accra.total_requested_quantity == 150
        assert accra.total_allocated_quantity == 30
        assert accra.net_need == 120
        assert accra.critical_requests == 1
        assert accra.low_urgency_requests == 1
        assert accra.urgency_weighted_heat == Decimal("135")
        assert accra.urgency_score == 55
        assert set(accra.request_ids) == {rice.id, water.id}

    def test_self_dealt_request_is_excluded(
        self, coordinator, session, make_request, recipient, supplier,
    ):
        request = make_request(recipient, region="Tamale")
        coordinator.contribute(request.id, supplier.id, 40)
        assert [n.region for n in coordinator.region_needs()] == ["Tamale"]

        # supplier later turns out to share the recipient's phone
        session.get(Participant, supplier.id).phone = recipient.phone
        session.commit()

        assert coordinator.region_needs() == []

    def test_region_need_for_empty_region(self, coordinator, deterministic_clock):
        need = coordinator.regions.region_need("Volta", deterministic_clock.now())
        assert need.total_requests == 0
        assert not need.has_stale_data
