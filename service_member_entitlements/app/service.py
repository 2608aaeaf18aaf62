"""
Service layer: snapshot load, evaluation, view caching and guarded writes.
"""

import uuid
from contextlib import asynccontextmanager, nullcontext
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional

from shared.errors import AllocationExhaustedError, NotFoundError, ValidationError
from shared.logging import get_logger, set_organization_context
from shared.metrics import MetricsCollector
from .cache.redis_cache import RedisCache
from .engine.balance import Balance, BalanceCalculator, ensure_claimable
from .engine.models import (
    UNLIMITED, AllocationField, ClaimKind, ClaimRequest, ConsumptionKind,
    ConsumptionWriteResponse, EvaluationContext, EventAllocationResponse,
    Fulfillment, FulfillmentRequest, FulfillmentStatus, BenefitSummaryResponse,
    SymposiumRegistration, TicketClaim, VipDinnerRsvp
)
from .persistence.postgres import PostgreSQLRepository

CLAIM_FIELDS = {
    ClaimKind.SYMPOSIUM: AllocationField.SYMPOSIUM_SEATS,
    ClaimKind.VIP_DINNER: AllocationField.VIP_DINNER_SEATS,
}


def remaining_after(balance: Balance, units: int) -> int:
    if balance.is_unlimited:
        return UNLIMITED
    return max(0, balance.remaining - units)


class EntitlementService:
    """Evaluates balances per organization and records consumption."""

    def __init__(
        self,
        repository: PostgreSQLRepository,
        cache: Optional[RedisCache] = None,
        metrics: Optional[MetricsCollector] = None,
        enforce_claim_limits: bool = True,
        default_target_year: Optional[int] = None
    ):
        self.repository = repository
        self.cache = cache
        self.metrics = metrics
        self.enforce_claim_limits = enforce_claim_limits
        self.default_target_year = default_target_year
        self.logger = get_logger("member_entitlements.service")

    def resolve_year(self, year: Optional[int] = None) -> int:
        """Explicit year, else the configured default, else the current year."""
        if year is not None:
            return year
        if self.default_target_year is not None:
            return self.default_target_year
        return datetime.now(timezone.utc).year

    async def evaluate(self, context: EvaluationContext, conn: Any = None) -> BalanceCalculator:
        """Load a snapshot for ``context`` and build its calculator."""
        set_organization_context(context.organization_id)
        snapshot = await self.repository.load_snapshot(context, conn=conn)
        calculator = snapshot.calculator()
        if self.metrics:
            self.metrics.set_gauge("orphaned_records", len(calculator.ledger.orphaned))
        return calculator

    # Read views

    async def get_benefit_summary(
        self,
        organization_id: str,
        tier: str,
        year: Optional[int] = None,
        track_id: Optional[str] = None
    ) -> BenefitSummaryResponse:
        context = EvaluationContext(organization_id, tier, self.resolve_year(year), track_id)

        if self.cache:
            cached = await self.cache.get_benefit_summary(organization_id, tier, context.target_year, track_id)
            self._record_cache_lookup(cached is not None)
            if cached is not None:
                return cached

        with self._timed("benefits"):
            calculator = await self.evaluate(context)
            response = calculator.benefit_summary(context).to_response()

        self.logger.info(
            "Benefit summary evaluated",
            organization_id=organization_id,
            tier=tier,
            target_year=context.target_year,
            benefits=sum(len(c.benefits) for c in response.categories)
        )

        if self.cache:
            await self.cache.set_benefit_summary(response, track_id)
        return response

    async def get_event_allocations(self, organization_id: str, tier: str) -> List[EventAllocationResponse]:
        if self.cache:
            cached = await self.cache.get_event_allocations(organization_id, tier)
            self._record_cache_lookup(cached is not None)
            if cached is not None:
                return cached

        context = EvaluationContext(organization_id, tier, self.resolve_year())
        with self._timed("allocations"):
            calculator = await self.evaluate(context)
            tables = [t.to_response() for t in calculator.event_allocations(context)]

        self.logger.info("Event allocations evaluated", organization_id=organization_id, tier=tier, events=len(tables))

        if self.cache:
            await self.cache.set_event_allocations(organization_id, tier, tables)
        return tables

    async def get_event_allocation(self, organization_id: str, event_id: str, tier: str) -> EventAllocationResponse:
        context = EvaluationContext(organization_id, tier, self.resolve_year())
        with self._timed("event_allocation"):
            calculator = await self.evaluate(context)
            table = calculator.event_allocation(context, event_id)

        if table is None:
            raise NotFoundError(
                "No allocation for event",
                details={"organization_id": organization_id, "event_id": event_id, "tier": tier}
            )
        return table.to_response()

    # Writes

    async def claim_allocation(
        self,
        organization_id: str,
        event_id: str,
        request: ClaimRequest
    ) -> ConsumptionWriteResponse:
        """Claim one unit of an event allocation field."""
        if request.kind == ClaimKind.TICKET:
            allocation_field = AllocationField.for_pass_type(request.pass_type)
        else:
            allocation_field = CLAIM_FIELDS[request.kind]
            if not request.profile_id:
                raise ValidationError(
                    "profile_id is required for seat registrations",
                    details={"kind": request.kind.value}
                )

        record = self._claim_record(organization_id, event_id, request)
        context = EvaluationContext(organization_id, request.tier, self.resolve_year())

        try:
            async with self._write_scope(organization_id, "event", event_id, allocation_field.value) as conn:
                if request.kind != ClaimKind.TICKET:
                    await self._ensure_member(organization_id, request.profile_id, conn)

                calculator = await self.evaluate(context, conn=conn)
                if not calculator.catalog.has_event(event_id):
                    raise NotFoundError("Unknown event", details={"event_id": event_id})

                balance = calculator.allocation_balance(context, event_id, allocation_field)
                if self.enforce_claim_limits:
                    ensure_claimable(
                        balance, 1,
                        organization_id=organization_id,
                        event_id=event_id,
                        field=allocation_field.value
                    )
                else:
                    self.logger.warning(
                        "Claim recorded without balance enforcement",
                        event_id=event_id,
                        field=allocation_field.value,
                        remaining=balance.remaining
                    )

                await self._insert_claim(record, request, conn)

        except AllocationExhaustedError:
            self._record_claim(record.kind, "rejected")
            raise

        self._record_claim(record.kind, "accepted")
        self.logger.info(
            "Allocation claimed",
            record_id=record.record_id,
            kind=record.kind.value,
            event_id=event_id,
            field=allocation_field.value
        )
        await self._invalidate(organization_id)

        return ConsumptionWriteResponse(
            record_id=record.record_id,
            kind=record.kind,
            subject_id=event_id,
            remaining=remaining_after(balance, 1),
            enforced=self.enforce_claim_limits
        )

    async def record_fulfillment(
        self,
        organization_id: str,
        benefit_id: str,
        request: FulfillmentRequest
    ) -> ConsumptionWriteResponse:
        """Record a fulfillment.

        Only completed fulfillments consume balance, so only those are
        checked against the remaining quantity.
        """
        completed = request.status == FulfillmentStatus.COMPLETED
        record = Fulfillment(
            record_id=str(uuid.uuid4()),
            organization_id=organization_id,
            benefit_id=benefit_id,
            status=request.status.value,
            quantity=request.quantity,
            period_year=request.period_year,
            event_id=request.event_id,
            title=request.title,
            proof_url=request.proof_url,
            notes=request.notes,
            scheduled_date=request.scheduled_date,
            fulfilled_at=datetime.now(timezone.utc) if completed else None,
        )
        context = EvaluationContext(organization_id, request.tier, request.period_year, request.track_id)
        units = request.quantity if completed else 0

        try:
            async with self._write_scope(organization_id, "benefit", benefit_id) as conn:
                calculator = await self.evaluate(context, conn=conn)
                benefit = calculator.catalog.get_benefit(benefit_id)
                if benefit is None:
                    raise NotFoundError("Unknown benefit", details={"benefit_id": benefit_id})

                package = calculator.catalog.find_package(context.tier, context.track_id)
                item = calculator.benefit_balance(context, benefit, package.package_id if package else None)
                balance = item.balance if item else Balance(entitled=0, fulfilled=0, remaining=0)

                if completed and benefit.is_quantifiable and self.enforce_claim_limits:
                    ensure_claimable(
                        balance, units,
                        organization_id=organization_id,
                        benefit_id=benefit_id,
                        period_year=request.period_year
                    )

                await self.repository.insert_fulfillment(record, conn=conn)

        except AllocationExhaustedError:
            self._record_claim(record.kind, "rejected")
            raise

        self._record_claim(record.kind, "accepted")
        self.logger.info(
            "Fulfillment recorded",
            record_id=record.record_id,
            benefit_id=benefit_id,
            status=record.status,
            quantity=record.quantity,
            period_year=record.period_year
        )
        await self._invalidate(organization_id)

        return ConsumptionWriteResponse(
            record_id=record.record_id,
            kind=record.kind,
            subject_id=benefit_id,
            remaining=remaining_after(balance, units),
            enforced=self.enforce_claim_limits and completed
        )

    @asynccontextmanager
    async def _write_scope(self, *lock_parts: Any) -> AsyncIterator[Any]:
        """Advisory-locked transaction when limits are enforced, else a plain pool."""
        if not self.enforce_claim_limits:
            yield None
            return
        async with self.repository.guarded_write(*lock_parts) as conn:
            yield conn

    @staticmethod
    def _claim_record(organization_id: str, event_id: str, request: ClaimRequest):
        record_id = str(uuid.uuid4())
        if request.kind == ClaimKind.SYMPOSIUM:
            return SymposiumRegistration(
                record_id=record_id,
                organization_id=organization_id,
                event_id=event_id,
                attendee_name=request.attendee_name,
                attendee_email=request.attendee_email,
                attendee_company=request.attendee_company,
                attendee_title=request.attendee_title,
                is_external_attendee=request.is_external_attendee,
            )
        if request.kind == ClaimKind.VIP_DINNER:
            return VipDinnerRsvp(
                record_id=record_id,
                organization_id=organization_id,
                event_id=event_id,
                guest_name=request.attendee_name,
                guest_email=request.attendee_email,
                guest_company=request.attendee_company,
                guest_title=request.attendee_title,
                is_external_attendee=request.is_external_attendee,
            )
        return TicketClaim(
            record_id=record_id,
            organization_id=organization_id,
            event_id=event_id,
            pass_type=request.pass_type,
            attendee_name=request.attendee_name,
            attendee_email=request.attendee_email,
            attendee_company=request.attendee_company,
            attendee_title=request.attendee_title,
            is_external_attendee=request.is_external_attendee,
        )

    async def _ensure_member(self, organization_id: str, profile_id: str, conn: Any):
        """Seat rows only count against an organization its profile belongs to."""
        if not await self.repository.is_team_member(profile_id, organization_id, conn=conn):
            raise ValidationError(
                "Profile is not a member of the organization",
                details={"organization_id": organization_id, "profile_id": profile_id}
            )

    async def _insert_claim(self, record, request: ClaimRequest, conn: Any):
        if isinstance(record, SymposiumRegistration):
            await self.repository.insert_symposium_registration(record, request.profile_id, conn=conn)
        elif isinstance(record, VipDinnerRsvp):
            await self.repository.insert_vip_dinner_rsvp(record, request.profile_id, conn=conn)
        else:
            await self.repository.insert_ticket_claim(record, request.profile_id, request.notes, conn=conn)

    async def _invalidate(self, organization_id: str):
        if self.cache:
            await self.cache.invalidate_organization(organization_id)

    def _timed(self, view: str):
        if self.metrics:
            self.metrics.increment_counter("balance_evaluations_total", view=view)
            return self.metrics.time_operation("balance_evaluation_duration_seconds", view=view)
        return nullcontext()

    def _record_claim(self, kind: ConsumptionKind, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("claims_total", kind=kind.value, outcome=outcome)
            self.metrics.record_business_event(f"{kind.value}_{outcome}")

    def _record_cache_lookup(self, hit: bool):
        if self.metrics:
            self.metrics.increment_counter("view_cache_hits_total", result="hit" if hit else "miss")
