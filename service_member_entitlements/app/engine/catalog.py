"""
Static reference data: benefits, tier packages, package benefits, events and
tier event allocations.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from shared.logging import get_logger
from .models import (
    BenefitDefinition, EventAllocation, EventDefinition, PackageBenefit, TierPackage
)


def normalize_tier(tier: Optional[str]) -> str:
    return (tier or "").strip().lower()


class Catalog:
    """Read-only lookups over catalog rows."""

    def __init__(
        self,
        benefits: Iterable[BenefitDefinition] = (),
        packages: Iterable[TierPackage] = (),
        package_benefits: Iterable[PackageBenefit] = (),
        event_allocations: Iterable[EventAllocation] = (),
        events: Iterable[EventDefinition] = ()
    ):
        self.logger = get_logger("member_entitlements.catalog")
        self._benefits: Dict[str, BenefitDefinition] = {b.benefit_id: b for b in benefits}
        self._events: Dict[str, EventDefinition] = {e.event_id: e for e in events}
        self._packages: List[TierPackage] = list(packages)

        self._package_benefits: Dict[Tuple[str, str], PackageBenefit] = {}
        for pb in package_benefits:
            self._package_benefits[(pb.package_id, pb.benefit_id)] = pb

        self._allocations: Dict[Tuple[str, str], EventAllocation] = {}
        for allocation in event_allocations:
            self._allocations[(normalize_tier(allocation.tier), allocation.event_id)] = allocation

    def get_benefit(self, benefit_id: str) -> Optional[BenefitDefinition]:
        return self._benefits.get(benefit_id)

    def has_benefit(self, benefit_id: str) -> bool:
        return benefit_id in self._benefits

    def benefits(self) -> List[BenefitDefinition]:
        """All benefits in display order."""
        return sorted(self._benefits.values(), key=lambda b: (b.display_order, b.label.lower()))

    def get_event(self, event_id: str) -> Optional[EventDefinition]:
        return self._events.get(event_id)

    def has_event(self, event_id: str) -> bool:
        return event_id in self._events

    def find_package(self, tier: str, track_id: Optional[str] = None) -> Optional[TierPackage]:
        """Find the package for a tier, matching the tier name case-insensitively.

        When a track is given only packages on that track qualify. Active
        packages are preferred over inactive ones.
        """
        wanted = normalize_tier(tier)
        candidates = [
            p for p in self._packages
            if normalize_tier(p.tier) == wanted
            and (track_id is None or p.track_id == track_id)
        ]
        if not candidates:
            return None

        candidates.sort(key=lambda p: (not p.is_active, p.package_id))
        if len(candidates) > 1 and track_id is None:
            self.logger.debug(
                "Multiple packages for tier, using first",
                tier=tier,
                package_id=candidates[0].package_id,
                candidates=len(candidates)
            )
        return candidates[0]

    def package_benefit(self, package_id: Optional[str], benefit_id: str) -> Optional[PackageBenefit]:
        if package_id is None:
            return None
        return self._package_benefits.get((package_id, benefit_id))

    def event_allocation(self, tier: str, event_id: str) -> Optional[EventAllocation]:
        return self._allocations.get((normalize_tier(tier), event_id))

    def allocations_for_tier(self, tier: str) -> List[EventAllocation]:
        wanted = normalize_tier(tier)
        return [a for (t, _), a in self._allocations.items() if t == wanted]

    def get_catalog_stats(self) -> Dict[str, int]:
        """Get catalog statistics."""
        return {
            "benefits": len(self._benefits),
            "packages": len(self._packages),
            "package_benefits": len(self._package_benefits),
            "events": len(self._events),
            "event_allocations": len(self._allocations),
        }
