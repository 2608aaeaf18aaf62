"""
Organization-specific overrides of catalog defaults.

Lookups are deterministic:

- benefit overrides: an override whose ``period_year`` equals the target year
  beats an evergreen (null-year) override; the two are never combined.
- within one precedence level the most recently updated override wins
  (``updated_at``, then ``created_at``, then the greatest ``override_id``).
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from shared.logging import get_logger
from .models import AllocationOverride, BenefitOverride

OverrideT = TypeVar("OverrideT", BenefitOverride, AllocationOverride)

_EPOCH = datetime.min


def _as_utc(value: datetime) -> datetime:
    """Naive UTC datetime; naive inputs are taken to be UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _recency_key(override: Union[BenefitOverride, AllocationOverride]) -> Tuple:
    updated = override.updated_at or override.created_at or _EPOCH
    created = override.created_at or _EPOCH
    return (_as_utc(updated), _as_utc(created), override.override_id)


class OverrideStore:
    """Lookup of organization overrides."""

    def __init__(
        self,
        benefit_overrides: Iterable[BenefitOverride] = (),
        allocation_overrides: Iterable[AllocationOverride] = ()
    ):
        self.logger = get_logger("member_entitlements.overrides")
        self._benefit: Dict[Tuple[str, str], List[BenefitOverride]] = {}
        for override in benefit_overrides:
            self._benefit.setdefault((override.organization_id, override.benefit_id), []).append(override)

        self._allocation: Dict[Tuple[str, str], List[AllocationOverride]] = {}
        for override in allocation_overrides:
            self._allocation.setdefault((override.organization_id, override.event_id), []).append(override)

    def benefit_override_for(
        self,
        organization_id: str,
        benefit_id: str,
        target_year: int
    ) -> Optional[BenefitOverride]:
        """Return the single override that applies for the target year, if any."""
        candidates = self._benefit.get((organization_id, benefit_id), [])
        exact = [o for o in candidates if o.period_year == target_year]
        if exact:
            return self._pick(exact, organization_id=organization_id, benefit_id=benefit_id, period_year=target_year)

        evergreen = [o for o in candidates if o.period_year is None]
        if evergreen:
            return self._pick(evergreen, organization_id=organization_id, benefit_id=benefit_id, period_year=None)

        return None

    def has_benefit_override(self, organization_id: str, benefit_id: str, target_year: int) -> bool:
        return self.benefit_override_for(organization_id, benefit_id, target_year) is not None

    def allocation_override_for(self, organization_id: str, event_id: str) -> Optional[AllocationOverride]:
        candidates = self._allocation.get((organization_id, event_id), [])
        if not candidates:
            return None
        return self._pick(candidates, organization_id=organization_id, event_id=event_id)

    def allocation_overrides_for(self, organization_id: str) -> Dict[str, AllocationOverride]:
        """Winning allocation override per event for an organization."""
        result = {}
        for (org_id, event_id) in self._allocation:
            if org_id == organization_id:
                result[event_id] = self.allocation_override_for(org_id, event_id)
        return result

    def _pick(self, candidates: Sequence[OverrideT], **log_context) -> OverrideT:
        if len(candidates) == 1:
            return candidates[0]

        winner = max(candidates, key=_recency_key)
        self.logger.warning(
            "Ambiguous overrides, most recently updated wins",
            winner=winner.override_id,
            candidates=[c.override_id for c in candidates],
            **log_context
        )
        return winner
