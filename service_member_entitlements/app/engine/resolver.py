"""
Entitlement resolution: tier default merged with an organization override.
"""

from dataclasses import dataclass
from typing import Optional, Union

from .models import (
    UNLIMITED, AllocationField, AllocationOverride, BenefitOverride,
    EventAllocation, FieldOverride, OverrideMode
)

Override = Union[BenefitOverride, FieldOverride]


@dataclass(frozen=True)
class ResolvedEntitlement:
    """Effective entitlement. ``quantity`` is -1 when unlimited."""
    quantity: int
    is_unlimited: bool = False

    @classmethod
    def unlimited(cls) -> "ResolvedEntitlement":
        return cls(quantity=UNLIMITED, is_unlimited=True)

    @classmethod
    def of(cls, quantity: int, is_unlimited: bool) -> "ResolvedEntitlement":
        if is_unlimited:
            return cls.unlimited()
        return cls(quantity=max(0, quantity), is_unlimited=False)


def override_applies(override: Optional[Override], target_year: Optional[int]) -> bool:
    """An override applies unless it is scoped to a different year."""
    if override is None:
        return False
    if override.period_year is None or target_year is None:
        return True
    return override.period_year == target_year


def resolve_entitlement(
    base_quantity: Optional[int],
    base_unlimited: bool,
    override: Optional[Override],
    target_year: Optional[int] = None
) -> ResolvedEntitlement:
    """Merge a tier default with an optional override.

    - ``absolute`` replaces the base quantity; a null quantity is a no-op,
      not a zero.
    - ``additive`` adds the (possibly negative) delta to the base.
    - ``is_unlimited_override`` wins over any numeric value.
    - The result is clamped at zero; unlimited is reported as -1.
    """
    effective = base_quantity if base_quantity is not None else 0
    unlimited = bool(base_unlimited)

    if not override_applies(override, target_year):
        return ResolvedEntitlement.of(effective, unlimited)

    if override.is_unlimited_override:
        return ResolvedEntitlement.unlimited()

    mode = OverrideMode(override.override_mode)
    if mode == OverrideMode.ABSOLUTE:
        if override.quantity_override is not None:
            effective = override.quantity_override
    elif mode == OverrideMode.ADDITIVE:
        effective = effective + (override.quantity_override or 0)

    return ResolvedEntitlement.of(effective, unlimited)


def resolve_allocation_field(
    allocation: Optional[EventAllocation],
    override: Optional[AllocationOverride],
    allocation_field: AllocationField
) -> ResolvedEntitlement:
    """Resolve one ticket-type or seat field of an event allocation."""
    base = allocation.quantity_for(allocation_field) if allocation else None
    field_override = override.field_override(allocation_field) if override else None
    return resolve_entitlement(base, False, field_override)
