"""
Read-only aggregation of recorded consumption.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Tuple

from shared.logging import get_logger
from .catalog import Catalog
from .models import (
    AllocationConsumption, AllocationField, AnyConsumptionRecord, BenefitDefinition,
    BenefitScope, EvaluationContext, Fulfillment, SymposiumRegistration, TicketClaim,
    VipDinnerRsvp
)


@dataclass(frozen=True)
class ConsumptionSummary:
    """Consumption of one benefit within a benefit-year."""
    fulfilled_quantity: int = 0
    scheduled_count: int = 0
    records: Tuple[Fulfillment, ...] = field(default_factory=tuple)


def counts_toward_year(record: Fulfillment, benefit: BenefitDefinition, target_year: int) -> bool:
    """One-time benefits accumulate across years; annual ones reset."""
    if BenefitScope(benefit.scope) == BenefitScope.ONE_TIME:
        return True
    return record.period_year == target_year


def _newest_first(record: Fulfillment):
    stamp = record.fulfilled_at or record.created_at
    return (stamp is not None, (stamp or datetime.min).replace(tzinfo=None), record.record_id)


def aggregate_consumption(
    records: Iterable[Fulfillment],
    benefit: BenefitDefinition,
    target_year: int
) -> ConsumptionSummary:
    """Sum completed quantity and count scheduled fulfillments for a benefit.

    Scheduled fulfillments never reduce the balance; they only signal
    pending work.
    """
    included = [
        r for r in records
        if r.benefit_id == benefit.benefit_id and counts_toward_year(r, benefit, target_year)
    ]

    fulfilled = sum(max(0, r.quantity) for r in included if r.is_completed)
    scheduled = sum(1 for r in included if r.is_scheduled)
    included.sort(key=_newest_first, reverse=True)

    return ConsumptionSummary(
        fulfilled_quantity=fulfilled,
        scheduled_count=scheduled,
        records=tuple(included)
    )


def count_allocation_consumption(
    records: Iterable[AllocationConsumption],
    event_id: str
) -> Dict[AllocationField, int]:
    """Count single-unit consumption rows per allocation field of one event.

    Each event row already represents one occurrence, so no year filter is
    applied.
    """
    counts = {f: 0 for f in AllocationField}
    for record in records:
        if record.event_id != event_id:
            continue
        counts[record.allocation_field] += 1
    return counts


class ConsumptionLedger:
    """Consumption records of one snapshot, with orphans removed."""

    def __init__(self, catalog: Catalog, records: Iterable[AnyConsumptionRecord] = ()):
        self.logger = get_logger("member_entitlements.ledger")
        self.fulfillments: List[Fulfillment] = []
        self.allocation_records: List[AllocationConsumption] = []
        self.orphaned: List[AnyConsumptionRecord] = []

        for record in records:
            if isinstance(record, Fulfillment):
                if catalog.has_benefit(record.benefit_id):
                    self.fulfillments.append(record)
                    continue
            elif isinstance(record, (TicketClaim, SymposiumRegistration, VipDinnerRsvp)):
                if catalog.has_event(record.event_id):
                    self.allocation_records.append(record)
                    continue
            self.orphaned.append(record)

        if self.orphaned:
            self.logger.warning(
                "Ignoring consumption records with no catalog entry",
                count=len(self.orphaned),
                records=[(r.kind.value, r.record_id, r.subject_id) for r in self.orphaned[:20]]
            )

    def benefit_consumption(self, benefit: BenefitDefinition, context: EvaluationContext) -> ConsumptionSummary:
        records = [r for r in self.fulfillments if r.organization_id == context.organization_id]
        return aggregate_consumption(records, benefit, context.target_year)

    def event_consumption(self, organization_id: str, event_id: str) -> Dict[AllocationField, int]:
        records = [r for r in self.allocation_records if r.organization_id == organization_id]
        return count_allocation_consumption(records, event_id)
