"""
Member Entitlements service.

Exposes benefit balances and event allocations per organization, and records
allocation claims and benefit fulfillments.
"""

from typing import List, Optional

from fastapi import Path, Query

from shared.base_service import BaseService
from shared.errors import ExternalServiceError
from shared.retry import RetryConfig

from .cache.redis_cache import RedisCache
from .engine.models import (
    BenefitSummaryResponse, ClaimRequest, ConsumptionWriteResponse,
    EventAllocationResponse, FulfillmentRequest
)
from .persistence.postgres import PostgreSQLRepository
from .service import EntitlementService


class MemberEntitlementsService(BaseService):
    """Member Entitlements service implementation."""

    def __init__(self, **config_overrides):
        super().__init__("member_entitlements", 8011, **config_overrides)

        self.repository = PostgreSQLRepository(
            self.config.postgres_dsn,
            RetryConfig(
                max_attempts=self.config.storage_retry_attempts,
                base_delay=self.config.storage_retry_base_delay
            )
        )
        self.cache = RedisCache(self.config.redis_url, self.config.cache_ttl_seconds)
        self.entitlements = EntitlementService(
            self.repository,
            cache=self.cache if self.config.enable_cache else None,
            metrics=self.metrics,
            enforce_claim_limits=self.config.enforce_claim_limits,
            default_target_year=self.config.default_target_year
        )

        self._setup_entitlement_routes()

    def _setup_entitlement_routes(self):
        """Set up entitlement-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "member_entitlements",
                "message": "Member Entitlements Service",
                "version": "1.0.0",
                "capabilities": ["benefit_balances", "event_allocations", "guarded_claims"]
            }

        @self.app.get("/organizations/{organization_id}/benefits", response_model=BenefitSummaryResponse)
        async def get_benefits(
            organization_id: str = Path(..., description="Organization identifier"),
            tier: str = Query(..., description="Membership tier"),
            year: Optional[int] = Query(None, ge=2000, le=2100, description="Benefit year"),
            track_id: Optional[str] = Query(None, description="Package track")
        ):
            """Benefit balances grouped by category."""
            return await self.entitlements.get_benefit_summary(organization_id, tier, year, track_id)

        @self.app.get("/organizations/{organization_id}/allocations", response_model=List[EventAllocationResponse])
        async def get_allocations(
            organization_id: str = Path(..., description="Organization identifier"),
            tier: str = Query(..., description="Membership tier")
        ):
            """Allocation tables for every event available to the organization."""
            return await self.entitlements.get_event_allocations(organization_id, tier)

        @self.app.get(
            "/organizations/{organization_id}/events/{event_id}/allocations",
            response_model=EventAllocationResponse
        )
        async def get_event_allocation(
            organization_id: str,
            event_id: str,
            tier: str = Query(..., description="Membership tier")
        ):
            """Allocation table for one event."""
            return await self.entitlements.get_event_allocation(organization_id, event_id, tier)

        @self.app.post(
            "/organizations/{organization_id}/events/{event_id}/claims",
            response_model=ConsumptionWriteResponse,
            status_code=201
        )
        async def claim_allocation(organization_id: str, event_id: str, request: ClaimRequest):
            """Claim a ticket, symposium seat or VIP dinner seat."""
            return await self.entitlements.claim_allocation(organization_id, event_id, request)

        @self.app.post(
            "/organizations/{organization_id}/benefits/{benefit_id}/fulfillments",
            response_model=ConsumptionWriteResponse,
            status_code=201
        )
        async def record_fulfillment(organization_id: str, benefit_id: str, request: FulfillmentRequest):
            """Record a benefit fulfillment."""
            return await self.entitlements.record_fulfillment(organization_id, benefit_id, request)

        @self.app.get("/stats")
        async def get_stats():
            """Cache and storage statistics."""
            return {
                "cache": await self.cache.get_cache_stats(),
                "storage": await self.repository.get_repository_stats(),
            }

    async def _check_dependencies(self):
        """Check service dependencies."""
        dependencies = {}

        try:
            dependencies["postgres"] = "ok" if await self.repository.health_check() else "error"
        except Exception:
            dependencies["postgres"] = "error"

        if self.config.enable_cache:
            try:
                dependencies["redis"] = "ok" if await self.cache.health_check() else "error"
            except Exception:
                dependencies["redis"] = "error"

        return dependencies

    async def start(self):
        """Start service components."""
        await self.repository.start()
        if self.config.enable_cache:
            try:
                await self.cache.start()
            except ExternalServiceError as e:
                # Views are computed uncached until Redis is reachable.
                self.logger.warning("Starting without view cache", error=e.message)
        self.logger.info(
            "Member entitlements service started",
            cache_enabled=self.config.enable_cache,
            enforce_claim_limits=self.config.enforce_claim_limits
        )

    async def stop(self):
        """Stop service components."""
        await self.repository.stop()
        await self.cache.stop()
        self.logger.info("Member entitlements service stopped")


def create_app(**config_overrides):
    """Create member entitlements service application."""
    service = MemberEntitlementsService(**config_overrides)
    return service.app


if __name__ == "__main__":
    service = MemberEntitlementsService()
    service.run()
