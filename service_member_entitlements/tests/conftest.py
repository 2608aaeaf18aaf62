"""
Shared fixtures and data factory for Member Entitlements tests.
"""

import asyncio
import dataclasses
import itertools
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Optional

import pytest
from prometheus_client import CollectorRegistry

from shared.metrics import MetricsCollector
from service_member_entitlements.app.engine.models import (
    AllocationOverride, BenefitDefinition, BenefitOverride, BenefitScope,
    EvaluationContext, EventAllocation, EventDefinition, Fulfillment,
    FulfillmentMode, OverrideMode, PackageBenefit, PassType, SymposiumRegistration,
    TicketClaim, TierPackage, VipDinnerRsvp
)
from service_member_entitlements.app.engine.snapshot import EntitlementSnapshot

ORG_ID = "org-1"
TIER = "Executive"
YEAR = 2025
PACKAGE_ID = "pkg-executive"


class EntitlementDataFactory:
    """Factory for catalog rows, overrides and consumption records."""

    _ids = itertools.count(1)

    @classmethod
    def next_id(cls, prefix: str) -> str:
        return f"{prefix}-{next(cls._ids)}"

    @staticmethod
    def context(year: int = YEAR, tier: str = TIER, organization_id: str = ORG_ID,
                track_id: Optional[str] = None) -> EvaluationContext:
        return EvaluationContext(organization_id=organization_id, tier=tier, target_year=year, track_id=track_id)

    @staticmethod
    def benefit(benefit_id: str, label: Optional[str] = None, category: Optional[str] = "Marketing",
                scope: BenefitScope = BenefitScope.ANNUAL, **kwargs) -> BenefitDefinition:
        return BenefitDefinition(
            benefit_id=benefit_id,
            label=label or benefit_id.replace("-", " ").title(),
            category=category,
            scope=scope,
            **kwargs
        )

    @staticmethod
    def self_service_benefit(benefit_id: str, **kwargs) -> BenefitDefinition:
        return EntitlementDataFactory.benefit(benefit_id, fulfillment_mode=FulfillmentMode.SELF_SERVICE, **kwargs)

    @staticmethod
    def package(package_id: str = PACKAGE_ID, tier: str = TIER, **kwargs) -> TierPackage:
        return TierPackage(package_id=package_id, tier=tier, **kwargs)

    @staticmethod
    def package_benefit(benefit_id: str, quantity: Optional[int] = None, is_unlimited: bool = False,
                        package_id: str = PACKAGE_ID) -> PackageBenefit:
        return PackageBenefit(package_id=package_id, benefit_id=benefit_id, quantity=quantity, is_unlimited=is_unlimited)

    @staticmethod
    def event(event_id: str, name: Optional[str] = None, start_date: Optional[date] = None,
              event_type: str = "flagship") -> EventDefinition:
        return EventDefinition(event_id=event_id, name=name or event_id.title(), event_type=event_type,
                               start_date=start_date)

    @staticmethod
    def allocation(event_id: str, tier: str = TIER, **fields) -> EventAllocation:
        return EventAllocation(tier=tier, event_id=event_id, **fields)

    @classmethod
    def benefit_override(cls, benefit_id: str, mode: OverrideMode = OverrideMode.ABSOLUTE,
                         quantity: Optional[int] = None, unlimited: bool = False,
                         period_year: Optional[int] = None, organization_id: str = ORG_ID,
                         override_id: Optional[str] = None,
                         updated_at: Optional[datetime] = None) -> BenefitOverride:
        return BenefitOverride(
            override_id=override_id or cls.next_id("bo"),
            organization_id=organization_id,
            benefit_id=benefit_id,
            override_mode=mode,
            quantity_override=quantity,
            is_unlimited_override=unlimited,
            period_year=period_year,
            updated_at=updated_at,
        )

    @classmethod
    def allocation_override(cls, event_id: str, mode: OverrideMode = OverrideMode.ABSOLUTE,
                            organization_id: str = ORG_ID, override_id: Optional[str] = None,
                            **fields) -> AllocationOverride:
        return AllocationOverride(
            override_id=override_id or cls.next_id("ao"),
            organization_id=organization_id,
            event_id=event_id,
            override_mode=mode,
            **fields
        )

    @classmethod
    def fulfillment(cls, benefit_id: str, quantity: int = 1, status: str = "completed",
                    period_year: Optional[int] = YEAR, organization_id: str = ORG_ID,
                    **kwargs) -> Fulfillment:
        return Fulfillment(
            record_id=cls.next_id("f"),
            organization_id=organization_id,
            benefit_id=benefit_id,
            status=status,
            quantity=quantity,
            period_year=period_year,
            **kwargs
        )

    @classmethod
    def ticket_claim(cls, event_id: str, pass_type: PassType = PassType.GA,
                     organization_id: str = ORG_ID) -> TicketClaim:
        return TicketClaim(record_id=cls.next_id("tc"), organization_id=organization_id,
                           event_id=event_id, pass_type=pass_type)

    @classmethod
    def symposium_registration(cls, event_id: str, organization_id: str = ORG_ID) -> SymposiumRegistration:
        return SymposiumRegistration(record_id=cls.next_id("sr"), organization_id=organization_id, event_id=event_id)

    @classmethod
    def vip_dinner_rsvp(cls, event_id: str, organization_id: str = ORG_ID) -> VipDinnerRsvp:
        return VipDinnerRsvp(record_id=cls.next_id("vr"), organization_id=organization_id, event_id=event_id)

    @staticmethod
    def snapshot(**rows) -> EntitlementSnapshot:
        return EntitlementSnapshot(**{name: tuple(values) for name, values in rows.items()})

    @classmethod
    def member_snapshot(cls, **extra) -> EntitlementSnapshot:
        """A small Executive-tier catalog with one flagship event."""
        rows = dict(
            benefits=[
                cls.benefit("webinar", display_order=1),
                cls.benefit("case-study", category="Content", scope=BenefitScope.ONE_TIME, display_order=2),
                cls.benefit("logo-placement", category="Branding", is_quantifiable=False, display_order=3),
                cls.benefit("speaking-slot", category="Events", display_order=4),
                cls.self_service_benefit("conference-pass", category="Events", display_order=5),
            ],
            packages=[cls.package()],
            package_benefits=[
                cls.package_benefit("webinar", 2),
                cls.package_benefit("case-study", 1),
                cls.package_benefit("logo-placement"),
                cls.package_benefit("speaking-slot", 0),
                cls.package_benefit("conference-pass", 5),
            ],
            events=[cls.event("summit", name="Annual Summit", start_date=date(2025, 6, 1))],
            event_allocations=[cls.allocation("summit", ga_tickets=4, pro_tickets=1, symposium_seats=2)],
        )
        for name, values in extra.items():
            rows[name] = list(rows.get(name, [])) + list(values)
        return cls.snapshot(**rows)


@pytest.fixture
def factory():
    """Entitlement data factory."""
    return EntitlementDataFactory


@pytest.fixture
def metrics():
    """Metrics collector bound to an isolated registry."""
    return MetricsCollector("member_entitlements_test", CollectorRegistry())


class InMemoryRepository:
    """Stand-in for PostgreSQLRepository over a single snapshot.

    Inserted records are appended to the snapshot so later evaluations see
    them, and ``guarded_write`` serializes writers like the advisory lock.
    """

    def __init__(self, snapshot: EntitlementSnapshot, members=(("profile-1", ORG_ID),)):
        self.snapshot = snapshot
        self.members = set(members)
        self.locks = []
        self.inserted = []
        self._lock = asyncio.Lock()

    async def load_snapshot(self, context, conn=None):
        return self.snapshot

    async def is_team_member(self, profile_id, organization_id, conn=None):
        return (profile_id, organization_id) in self.members

    @asynccontextmanager
    async def guarded_write(self, *lock_parts):
        async with self._lock:
            self.locks.append(lock_parts)
            yield "conn"

    def _record(self, record):
        self.inserted.append(record)
        self.snapshot = dataclasses.replace(self.snapshot, records=self.snapshot.records + (record,))
        return record.record_id

    async def insert_ticket_claim(self, claim, profile_id=None, notes=None, conn=None):
        return self._record(claim)

    async def insert_symposium_registration(self, registration, profile_id, conn=None):
        return self._record(registration)

    async def insert_vip_dinner_rsvp(self, rsvp, profile_id, conn=None):
        return self._record(rsvp)

    async def insert_fulfillment(self, fulfillment, conn=None):
        return self._record(fulfillment)


@pytest.fixture
def make_repository():
    """Build an in-memory repository over a snapshot."""
    return InMemoryRepository
