"""
Remaining-balance views joining resolved entitlements with consumption.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional, Set

from shared.errors import AllocationExhaustedError
from shared.logging import get_logger
from .catalog import Catalog
from .ledger import ConsumptionLedger, ConsumptionSummary
from .models import (
    ALLOCATION_FIELD_LABELS, TICKET_FIELDS, UNLIMITED, AllocationField,
    BenefitDefinition, EvaluationContext, EventAllocation, EventDefinition,
    FulfillmentMode, AllocationOverride,
    AllocationFieldResponse, BenefitBalanceResponse, BenefitCategoryResponse,
    BenefitSummaryResponse, EventAllocationResponse, FulfillmentDetail
)
from .overrides import OverrideStore
from .resolver import ResolvedEntitlement, resolve_allocation_field, resolve_entitlement

DEFAULT_CATEGORY = "Other"


@dataclass(frozen=True)
class Balance:
    """Entitled vs fulfilled vs remaining; -1 marks unlimited."""
    entitled: int
    fulfilled: int
    remaining: int

    @property
    def is_unlimited(self) -> bool:
        return self.entitled == UNLIMITED


def compute_balance(effective: ResolvedEntitlement, fulfilled: int) -> Balance:
    """Net an effective entitlement against completed consumption."""
    fulfilled = max(0, fulfilled)
    if effective.is_unlimited:
        return Balance(entitled=UNLIMITED, fulfilled=fulfilled, remaining=UNLIMITED)
    entitled = max(0, effective.quantity)
    return Balance(entitled=entitled, fulfilled=fulfilled, remaining=max(0, entitled - fulfilled))


def ensure_claimable(balance: Balance, units: int = 1, **details) -> None:
    """Raise AllocationExhaustedError when ``units`` exceed a finite balance."""
    if balance.is_unlimited or units <= balance.remaining:
        return
    raise AllocationExhaustedError(
        f"Requested {units} unit(s) but only {balance.remaining} remaining",
        details={
            "requested": units,
            "entitled": balance.entitled,
            "fulfilled": balance.fulfilled,
            "remaining": balance.remaining,
            **details
        }
    )


def progress_percent(balance: Balance) -> float:
    if balance.is_unlimited:
        return 100.0
    if balance.entitled <= 0:
        return 0.0
    return round(min(100.0, balance.fulfilled * 100.0 / balance.entitled), 2)


@dataclass(frozen=True)
class BenefitBalance:
    """A visible benefit with its balance."""
    benefit: BenefitDefinition
    balance: Balance
    has_override: bool
    consumption: ConsumptionSummary

    @property
    def category(self) -> str:
        return self.benefit.category or DEFAULT_CATEGORY

    @property
    def is_complete(self) -> bool:
        return not self.balance.is_unlimited and 0 < self.balance.entitled <= self.balance.fulfilled

    def to_response(self) -> BenefitBalanceResponse:
        return BenefitBalanceResponse(
            benefit_id=self.benefit.benefit_id,
            label=self.benefit.label,
            category=self.category,
            scope=self.benefit.scope,
            unit_label=self.benefit.unit_label,
            is_quantifiable=self.benefit.is_quantifiable,
            entitled=self.balance.entitled,
            fulfilled=self.balance.fulfilled,
            remaining=self.balance.remaining,
            is_unlimited=self.balance.is_unlimited,
            has_override=self.has_override,
            scheduled_count=self.consumption.scheduled_count,
            is_complete=self.is_complete,
            progress_percent=progress_percent(self.balance),
            fulfillments=[
                FulfillmentDetail(
                    record_id=r.record_id,
                    status=r.status,
                    quantity=r.quantity,
                    period_year=r.period_year,
                    title=r.title,
                    proof_url=r.proof_url,
                    scheduled_date=r.scheduled_date,
                    fulfilled_at=r.fulfilled_at,
                )
                for r in self.consumption.records
            ]
        )


@dataclass(frozen=True)
class BenefitSummary:
    """All visible benefit balances of one organization for one year."""
    context: EvaluationContext
    benefits: List[BenefitBalance] = field(default_factory=list)

    def by_category(self) -> "OrderedDict[str, List[BenefitBalance]]":
        grouped: "OrderedDict[str, List[BenefitBalance]]" = OrderedDict()
        for item in self.benefits:
            grouped.setdefault(item.category, []).append(item)
        return grouped

    @property
    def total_entitled(self) -> int:
        return sum(b.balance.entitled for b in self.benefits if not b.balance.is_unlimited)

    @property
    def total_fulfilled(self) -> int:
        return sum(b.balance.fulfilled for b in self.benefits)

    @property
    def overall_progress_percent(self) -> float:
        if self.total_entitled <= 0:
            return 0.0
        return round(self.total_fulfilled * 100.0 / self.total_entitled, 2)

    def get(self, benefit_id: str) -> Optional[BenefitBalance]:
        return next((b for b in self.benefits if b.benefit.benefit_id == benefit_id), None)

    def to_response(self) -> BenefitSummaryResponse:
        return BenefitSummaryResponse(
            organization_id=self.context.organization_id,
            tier=self.context.tier,
            target_year=self.context.target_year,
            total_entitled=self.total_entitled,
            total_fulfilled=self.total_fulfilled,
            overall_progress_percent=self.overall_progress_percent,
            categories=[
                BenefitCategoryResponse(category=name, benefits=[b.to_response() for b in items])
                for name, items in self.by_category().items()
            ]
        )


@dataclass(frozen=True)
class AllocationFieldBalance:
    """One ticket-type or seat row."""
    field: AllocationField
    balance: Balance
    has_override: bool

    def to_response(self) -> AllocationFieldResponse:
        return AllocationFieldResponse(
            field=self.field,
            label=ALLOCATION_FIELD_LABELS[self.field],
            entitled=self.balance.entitled,
            fulfilled=self.balance.fulfilled,
            remaining=self.balance.remaining,
            is_unlimited=self.balance.is_unlimited,
            has_override=self.has_override,
        )


@dataclass(frozen=True)
class EventAllocationTable:
    """Effective vs consumed vs remaining per field for one event."""
    event: EventDefinition
    rows: List[AllocationFieldBalance]
    has_override: bool
    custom_pass_name: Optional[str] = None

    def row(self, allocation_field: AllocationField) -> Optional[AllocationFieldBalance]:
        return next((r for r in self.rows if r.field == allocation_field), None)

    def ticket_totals(self) -> Balance:
        tickets = [r.balance for r in self.rows if r.field in TICKET_FIELDS]
        fulfilled = sum(b.fulfilled for b in tickets)
        if any(b.is_unlimited for b in tickets):
            return Balance(entitled=UNLIMITED, fulfilled=fulfilled, remaining=UNLIMITED)
        entitled = sum(b.entitled for b in tickets)
        return Balance(entitled=entitled, fulfilled=fulfilled, remaining=sum(b.remaining for b in tickets))

    def to_response(self) -> EventAllocationResponse:
        totals = self.ticket_totals()
        return EventAllocationResponse(
            event_id=self.event.event_id,
            event_name=self.event.name,
            event_type=self.event.event_type,
            custom_pass_name=self.custom_pass_name,
            has_override=self.has_override,
            tickets_entitled=totals.entitled,
            tickets_claimed=totals.fulfilled,
            tickets_remaining=totals.remaining,
            fields=[r.to_response() for r in self.rows]
        )


class BalanceCalculator:
    """Joins catalog defaults, overrides and consumption into balance views."""

    def __init__(self, catalog: Catalog, overrides: OverrideStore, ledger: ConsumptionLedger):
        self.catalog = catalog
        self.overrides = overrides
        self.ledger = ledger
        self.logger = get_logger("member_entitlements.balance")

    def benefit_balance(
        self,
        context: EvaluationContext,
        benefit: BenefitDefinition,
        package_id: Optional[str] = None
    ) -> Optional[BenefitBalance]:
        """Balance of one benefit, or None when it is not visible."""
        package_benefit = self.catalog.package_benefit(package_id, benefit.benefit_id)
        override = self.overrides.benefit_override_for(
            context.organization_id, benefit.benefit_id, context.target_year
        )

        # Reachable only through the package or an override.
        if package_benefit is None and override is None:
            return None

        effective = resolve_entitlement(
            package_benefit.quantity if package_benefit else None,
            package_benefit.is_unlimited if package_benefit else False,
            override,
            context.target_year
        )

        # Non-quantifiable benefits are "included" rows and stay visible.
        if (benefit.is_quantifiable and override is None
                and not effective.is_unlimited and effective.quantity == 0):
            return None

        consumption = self.ledger.benefit_consumption(benefit, context)
        return BenefitBalance(
            benefit=benefit,
            balance=compute_balance(effective, consumption.fulfilled_quantity),
            has_override=override is not None,
            consumption=consumption
        )

    def benefit_summary(self, context: EvaluationContext, include_self_service: bool = False) -> BenefitSummary:
        """Visible benefit balances for an organization and year.

        Self-service benefits (tickets and the like) are shown through the
        event allocation view unless ``include_self_service`` is set.
        """
        package = self.catalog.find_package(context.tier, context.track_id)
        package_id = package.package_id if package else None
        if package is None:
            self.logger.info("No package for tier", tier=context.tier, track_id=context.track_id)

        balances = []
        for benefit in self.catalog.benefits():
            if (not include_self_service
                    and FulfillmentMode(benefit.fulfillment_mode) == FulfillmentMode.SELF_SERVICE):
                continue
            item = self.benefit_balance(context, benefit, package_id)
            if item is not None:
                balances.append(item)

        return BenefitSummary(context=context, benefits=balances)

    def event_allocation(self, context: EvaluationContext, event_id: str) -> Optional[EventAllocationTable]:
        """Allocation table for one event, or None when nothing is allocated."""
        event = self.catalog.get_event(event_id)
        if event is None:
            return None

        allocation = self.catalog.event_allocation(context.tier, event_id)
        override = self.overrides.allocation_override_for(context.organization_id, event_id)
        if allocation is None and override is None:
            return None

        consumed = self.ledger.event_consumption(context.organization_id, event_id)
        rows = []
        for allocation_field in AllocationField:
            field_override = override.field_override(allocation_field) if override else None
            effective = resolve_allocation_field(allocation, override, allocation_field)
            if field_override is None and not effective.is_unlimited and effective.quantity == 0:
                continue
            rows.append(AllocationFieldBalance(
                field=allocation_field,
                balance=compute_balance(effective, consumed[allocation_field]),
                has_override=field_override is not None
            ))

        if not rows:
            return None

        return EventAllocationTable(
            event=event,
            rows=rows,
            has_override=override is not None and bool(override.overridden_fields()),
            custom_pass_name=self._custom_pass_name(allocation, override)
        )

    def event_allocations(self, context: EvaluationContext) -> List[EventAllocationTable]:
        """Allocation tables for every event reachable by tier or override."""
        event_ids: Set[str] = {a.event_id for a in self.catalog.allocations_for_tier(context.tier)}
        event_ids.update(self.overrides.allocation_overrides_for(context.organization_id))

        tables = []
        for event_id in event_ids:
            if not self.catalog.has_event(event_id):
                self.logger.warning("Allocation references unknown event", event_id=event_id)
                continue
            table = self.event_allocation(context, event_id)
            if table is not None:
                tables.append(table)

        tables.sort(key=lambda t: (t.event.start_date is None, t.event.start_date or 0, t.event.name))
        return tables

    def allocation_balance(
        self,
        context: EvaluationContext,
        event_id: str,
        allocation_field: AllocationField
    ) -> Balance:
        """Balance of one field; zero when the event grants nothing for it."""
        table = self.event_allocation(context, event_id)
        row = table.row(allocation_field) if table else None
        if row is None:
            return Balance(entitled=0, fulfilled=0, remaining=0)
        return row.balance

    @staticmethod
    def _custom_pass_name(
        allocation: Optional[EventAllocation],
        override: Optional[AllocationOverride]
    ) -> Optional[str]:
        if override and override.custom_pass_name:
            return override.custom_pass_name
        return allocation.custom_pass_name if allocation else None
