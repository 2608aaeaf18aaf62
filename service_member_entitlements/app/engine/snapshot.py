"""
Immutable bundle of rows fetched once per evaluation.
"""

from dataclasses import dataclass, field
from typing import Tuple

from shared.logging import get_logger
from .balance import BalanceCalculator
from .catalog import Catalog
from .ledger import ConsumptionLedger
from .models import (
    AllocationOverride, AnyConsumptionRecord, BenefitDefinition, BenefitOverride,
    EventAllocation, EventDefinition, PackageBenefit, TierPackage
)
from .overrides import OverrideStore


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Catalog, override and consumption rows for one organization."""
    benefits: Tuple[BenefitDefinition, ...] = field(default_factory=tuple)
    packages: Tuple[TierPackage, ...] = field(default_factory=tuple)
    package_benefits: Tuple[PackageBenefit, ...] = field(default_factory=tuple)
    events: Tuple[EventDefinition, ...] = field(default_factory=tuple)
    event_allocations: Tuple[EventAllocation, ...] = field(default_factory=tuple)
    benefit_overrides: Tuple[BenefitOverride, ...] = field(default_factory=tuple)
    allocation_overrides: Tuple[AllocationOverride, ...] = field(default_factory=tuple)
    records: Tuple[AnyConsumptionRecord, ...] = field(default_factory=tuple)

    def catalog(self) -> Catalog:
        return Catalog(
            benefits=self.benefits,
            packages=self.packages,
            package_benefits=self.package_benefits,
            event_allocations=self.event_allocations,
            events=self.events,
        )

    def override_store(self) -> OverrideStore:
        return OverrideStore(self.benefit_overrides, self.allocation_overrides)

    def calculator(self) -> BalanceCalculator:
        """Build the evaluation components over this snapshot."""
        catalog = self.catalog()
        ledger = ConsumptionLedger(catalog, self.records)
        calculator = BalanceCalculator(catalog, self.override_store(), ledger)

        get_logger("member_entitlements.snapshot").debug(
            "Snapshot prepared",
            orphaned_records=len(ledger.orphaned),
            overrides=len(self.benefit_overrides) + len(self.allocation_overrides),
            **catalog.get_catalog_stats()
        )
        return calculator
