"""
Unit tests for the entitlement service layer.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from shared.errors import AllocationExhaustedError, NotFoundError, ValidationError
from service_member_entitlements.app.engine.models import (
    UNLIMITED, ClaimKind, ClaimRequest, ConsumptionKind, FulfillmentRequest,
    FulfillmentStatus, PassType, SymposiumRegistration, TicketClaim
)
from service_member_entitlements.app.service import EntitlementService


def claim_request(**overrides):
    data = {"tier": "Executive", "attendee_name": "Ada Lovelace", "attendee_email": "ada@example.com"}
    data.update(overrides)
    return ClaimRequest(**data)


class TestEntitlementService:
    """Test cases for EntitlementService."""

    @pytest.fixture
    def repository(self, factory, make_repository):
        return make_repository(factory.member_snapshot())

    @pytest.fixture
    def service(self, repository, metrics):
        return EntitlementService(repository, metrics=metrics, default_target_year=2025)

    def test_resolve_year(self, repository):
        assert EntitlementService(repository, default_target_year=2024).resolve_year() == 2024
        assert EntitlementService(repository, default_target_year=2024).resolve_year(2022) == 2022
        assert EntitlementService(repository).resolve_year() >= 2025

    @pytest.mark.asyncio
    async def test_get_benefit_summary(self, service):
        response = await service.get_benefit_summary("org-1", "Executive")

        assert response.target_year == 2025
        assert response.categories[0].benefits[0].benefit_id == "webinar"

    @pytest.mark.asyncio
    async def test_get_benefit_summary_uses_cache(self, repository, metrics):
        cache = AsyncMock()
        cached = object()
        cache.get_benefit_summary.return_value = cached
        service = EntitlementService(repository, cache=cache, metrics=metrics, default_target_year=2025)

        assert await service.get_benefit_summary("org-1", "Executive") is cached
        cache.set_benefit_summary.assert_not_called()

    @pytest.mark.asyncio
    async def test_get_benefit_summary_populates_cache(self, repository):
        cache = AsyncMock()
        cache.get_benefit_summary.return_value = None
        service = EntitlementService(repository, cache=cache, default_target_year=2025)

        response = await service.get_benefit_summary("org-1", "Executive", track_id="track-a")

        cache.set_benefit_summary.assert_awaited_once_with(response, "track-a")

    @pytest.mark.asyncio
    async def test_get_event_allocations(self, service):
        tables = await service.get_event_allocations("org-1", "Executive")

        assert [t.event_id for t in tables] == ["summit"]
        assert tables[0].tickets_entitled == 5

    @pytest.mark.asyncio
    async def test_get_event_allocation_not_found(self, service):
        with pytest.raises(NotFoundError):
            await service.get_event_allocation("org-1", "missing", "Executive")

    @pytest.mark.asyncio
    async def test_claim_ticket(self, service, repository):
        response = await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.GA))

        assert response.kind == ConsumptionKind.TICKET_CLAIM
        assert response.remaining == 3
        assert response.enforced is True
        assert repository.locks == [("org-1", "event", "summit", "ga_tickets")]
        assert isinstance(repository.inserted[0], TicketClaim)

    @pytest.mark.asyncio
    async def test_claim_rejected_when_exhausted(self, service, repository):
        """Test a claim against remaining zero inserts nothing."""
        await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO))

        with pytest.raises(AllocationExhaustedError):
            await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO))

        assert len(repository.inserted) == 1

    @pytest.mark.asyncio
    async def test_concurrent_claims_do_not_overallocate(self, service, repository):
        """Test two claims racing for the last unit."""
        results = await asyncio.gather(
            service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO)),
            service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO)),
            return_exceptions=True
        )

        assert sum(isinstance(r, AllocationExhaustedError) for r in results) == 1
        assert len(repository.inserted) == 1

    @pytest.mark.asyncio
    async def test_claim_ungranted_field(self, service):
        with pytest.raises(AllocationExhaustedError):
            await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.WHALE))

    @pytest.mark.asyncio
    async def test_claim_unlimited(self, factory, make_repository, metrics):
        repository = make_repository(factory.member_snapshot(
            allocation_overrides=[factory.allocation_override("summit", is_unlimited_override=True)]
        ))
        service = EntitlementService(repository, metrics=metrics, default_target_year=2025)

        for _ in range(3):
            response = await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.WHALE))

        assert response.remaining == UNLIMITED
        assert len(repository.inserted) == 3

    @pytest.mark.asyncio
    async def test_claim_unknown_event(self, service):
        with pytest.raises(NotFoundError):
            await service.claim_allocation("org-1", "missing", claim_request())

    @pytest.mark.asyncio
    async def test_symposium_claim_requires_profile(self, service):
        with pytest.raises(ValidationError):
            await service.claim_allocation("org-1", "summit", claim_request(kind=ClaimKind.SYMPOSIUM))

    @pytest.mark.asyncio
    async def test_symposium_claim(self, service, repository):
        response = await service.claim_allocation(
            "org-1", "summit", claim_request(kind=ClaimKind.SYMPOSIUM, profile_id="profile-1")
        )

        assert response.kind == ConsumptionKind.SYMPOSIUM_REGISTRATION
        assert response.remaining == 1
        assert isinstance(repository.inserted[0], SymposiumRegistration)

    @pytest.mark.asyncio
    async def test_seat_claim_rejects_non_member_profile(self, service, repository):
        """Test a seat for a profile outside the organization is never written."""
        for kind in (ClaimKind.SYMPOSIUM, ClaimKind.VIP_DINNER):
            with pytest.raises(ValidationError):
                await service.claim_allocation(
                    "org-1", "summit", claim_request(kind=kind, profile_id="outsider")
                )

        assert repository.inserted == []

    @pytest.mark.asyncio
    async def test_seat_claim_rejects_member_of_other_organization(self, factory, make_repository, metrics):
        repository = make_repository(factory.member_snapshot(), members=[("profile-2", "org-2")])
        service = EntitlementService(repository, metrics=metrics, enforce_claim_limits=False,
                                     default_target_year=2025)

        with pytest.raises(ValidationError):
            await service.claim_allocation(
                "org-1", "summit", claim_request(kind=ClaimKind.SYMPOSIUM, profile_id="profile-2")
            )

        assert repository.inserted == []

    @pytest.mark.asyncio
    async def test_symposium_seats_exhaust(self, service, repository):
        for _ in range(2):
            await service.claim_allocation(
                "org-1", "summit", claim_request(kind=ClaimKind.SYMPOSIUM, profile_id="profile-1")
            )

        with pytest.raises(AllocationExhaustedError):
            await service.claim_allocation(
                "org-1", "summit", claim_request(kind=ClaimKind.SYMPOSIUM, profile_id="profile-1")
            )

        assert len(repository.inserted) == 2

    @pytest.mark.asyncio
    async def test_claim_without_enforcement(self, repository, metrics):
        """Test the unguarded write path records past the limit."""
        service = EntitlementService(repository, metrics=metrics, enforce_claim_limits=False,
                                     default_target_year=2025)

        await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO))
        response = await service.claim_allocation("org-1", "summit", claim_request(pass_type=PassType.PRO))

        assert response.enforced is False
        assert response.remaining == 0
        assert repository.locks == []
        assert len(repository.inserted) == 2

    @pytest.mark.asyncio
    async def test_claim_invalidates_cache(self, repository):
        cache = AsyncMock()
        service = EntitlementService(repository, cache=cache, default_target_year=2025)

        await service.claim_allocation("org-1", "summit", claim_request())

        cache.invalidate_organization.assert_awaited_once_with("org-1")

    @pytest.mark.asyncio
    async def test_record_fulfillment(self, service, repository):
        request = FulfillmentRequest(tier="Executive", period_year=2025, quantity=1, title="Q1 webinar")

        response = await service.record_fulfillment("org-1", "webinar", request)

        assert response.kind == ConsumptionKind.FULFILLMENT
        assert response.remaining == 1
        assert repository.inserted[0].fulfilled_at is not None

    @pytest.mark.asyncio
    async def test_record_fulfillment_exceeding_balance(self, service, repository):
        request = FulfillmentRequest(tier="Executive", period_year=2025, quantity=3)

        with pytest.raises(AllocationExhaustedError):
            await service.record_fulfillment("org-1", "webinar", request)

        assert repository.inserted == []

    @pytest.mark.asyncio
    async def test_scheduled_fulfillment_is_not_enforced(self, service, repository):
        request = FulfillmentRequest(
            tier="Executive", period_year=2025, quantity=5, status=FulfillmentStatus.SCHEDULED
        )

        response = await service.record_fulfillment("org-1", "webinar", request)

        assert response.enforced is False
        assert response.remaining == 2
        assert repository.inserted[0].fulfilled_at is None

    @pytest.mark.asyncio
    async def test_non_quantifiable_fulfillment(self, service):
        request = FulfillmentRequest(tier="Executive", period_year=2025)

        response = await service.record_fulfillment("org-1", "logo-placement", request)

        assert response.record_id

    @pytest.mark.asyncio
    async def test_record_fulfillment_unknown_benefit(self, service):
        request = FulfillmentRequest(tier="Executive", period_year=2025)

        with pytest.raises(NotFoundError):
            await service.record_fulfillment("org-1", "retired-benefit", request)

    @pytest.mark.asyncio
    async def test_claims_metric(self, service, metrics):
        await service.claim_allocation("org-1", "summit", claim_request())

        value = metrics.registry.get_sample_value(
            "claims_total", {"kind": "ticket_claim", "outcome": "accepted"}
        )
        assert value == 1.0
