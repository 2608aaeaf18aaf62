"""
Unit tests for entitlement resolution.
"""

import pytest

from service_member_entitlements.app.engine.models import (
    UNLIMITED, AllocationField, FieldOverride, OverrideMode
)
from service_member_entitlements.app.engine.resolver import (
    ResolvedEntitlement, override_applies, resolve_allocation_field, resolve_entitlement
)


class TestResolveEntitlement:
    """Test cases for resolve_entitlement."""

    def test_no_override_returns_base(self):
        """Test base quantity passes through without an override."""
        result = resolve_entitlement(3, False, None)

        assert result.quantity == 3
        assert result.is_unlimited is False

    def test_missing_base_is_zero(self):
        """Test a benefit absent from the package defaults to zero."""
        assert resolve_entitlement(None, False, None).quantity == 0

    def test_base_unlimited(self):
        """Test unlimited base reports the sentinel."""
        result = resolve_entitlement(None, True, None)

        assert result.is_unlimited is True
        assert result.quantity == UNLIMITED

    def test_absolute_override_replaces_base(self, factory):
        """Test absolute override replaces the tier default."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=5)

        assert resolve_entitlement(2, False, override, 2025).quantity == 5

    def test_absolute_override_with_null_quantity_is_noop(self, factory):
        """Test a null absolute quantity keeps the base instead of zeroing it."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=None)

        assert resolve_entitlement(2, False, override, 2025).quantity == 2

    def test_absolute_override_to_zero(self, factory):
        """Test an explicit zero removes the entitlement."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=0)

        assert resolve_entitlement(2, False, override, 2025).quantity == 0

    def test_additive_override_adds_delta(self, factory):
        """Test additive override adds to the base."""
        override = factory.benefit_override("webinar", OverrideMode.ADDITIVE, quantity=3)

        assert resolve_entitlement(2, False, override, 2025).quantity == 5

    def test_additive_override_on_missing_base(self, factory):
        """Test additive override on a benefit outside the package."""
        override = factory.benefit_override("webinar", OverrideMode.ADDITIVE, quantity=1)

        assert resolve_entitlement(None, False, override, 2025).quantity == 1

    @pytest.mark.parametrize("base,delta", [(2, -5), (0, -1)])
    def test_negative_result_clamps_to_zero(self, factory, base, delta):
        """Test negative effective entitlement is clamped."""
        override = factory.benefit_override("webinar", OverrideMode.ADDITIVE, quantity=delta)

        result = resolve_entitlement(base, False, override, 2025)

        assert result.quantity == 0
        assert result.is_unlimited is False

    def test_negative_absolute_override_clamps_to_zero(self, factory):
        """Test malformed negative absolute override is clamped."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=-3)

        assert resolve_entitlement(2, False, override, 2025).quantity == 0

    def test_unlimited_override_wins(self, factory):
        """Test unlimited flag beats any numeric value."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=1, unlimited=True)

        result = resolve_entitlement(2, False, override, 2025)

        assert result.is_unlimited is True
        assert result.quantity == UNLIMITED

    def test_base_unlimited_survives_absolute_override(self, factory):
        """Test an unlimited default stays unlimited under a numeric override."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=1)

        assert resolve_entitlement(None, True, override, 2025).is_unlimited is True

    def test_override_for_other_year_is_ignored(self, factory):
        """Test a year-scoped override does not apply to another year."""
        override = factory.benefit_override("webinar", OverrideMode.ABSOLUTE, quantity=9, period_year=2024)

        assert resolve_entitlement(2, False, override, 2025).quantity == 2


class TestOverrideApplies:
    """Test cases for override_applies."""

    def test_none(self):
        assert override_applies(None, 2025) is False

    def test_evergreen(self, factory):
        assert override_applies(factory.benefit_override("b", quantity=1), 2025) is True

    def test_matching_year(self, factory):
        assert override_applies(factory.benefit_override("b", quantity=1, period_year=2025), 2025) is True

    def test_unscoped_target(self):
        """Test field overrides without a year apply whenever present."""
        override = FieldOverride(override_mode=OverrideMode.ABSOLUTE, quantity_override=1)

        assert override_applies(override, None) is True


class TestResolveAllocationField:
    """Test cases for per-field allocation resolution."""

    def test_default_only(self, factory):
        allocation = factory.allocation("summit", ga_tickets=4)

        assert resolve_allocation_field(allocation, None, AllocationField.GA_TICKETS).quantity == 4
        assert resolve_allocation_field(allocation, None, AllocationField.PRO_TICKETS).quantity == 0

    def test_fields_resolve_independently(self, factory):
        """Test overriding one field leaves the others at their defaults."""
        allocation = factory.allocation("summit", ga_tickets=4, pro_tickets=2)
        override = factory.allocation_override("summit", OverrideMode.ADDITIVE, ga_tickets_override=2)

        assert resolve_allocation_field(allocation, override, AllocationField.GA_TICKETS).quantity == 6
        assert resolve_allocation_field(allocation, override, AllocationField.PRO_TICKETS).quantity == 2

    def test_override_without_default(self, factory):
        """Test an override grants seats on an event with no tier allocation."""
        override = factory.allocation_override("summit", symposium_seats_override=3)

        assert resolve_allocation_field(None, override, AllocationField.SYMPOSIUM_SEATS).quantity == 3

    def test_unlimited_override_applies_to_every_field(self, factory):
        override = factory.allocation_override("summit", is_unlimited_override=True)

        for allocation_field in AllocationField:
            assert resolve_allocation_field(None, override, allocation_field) == ResolvedEntitlement.unlimited()
