"""
Data models for the entitlement resolution engine.

Reference data (benefits, packages, events, tier allocations), organization
overrides and consumption records are immutable dataclasses built once per
evaluation. The pydantic models at the bottom are the HTTP response shapes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Union

from pydantic import BaseModel, Field

UNLIMITED = -1


class BenefitScope(str, Enum):
    """How consumption of a benefit accumulates over time."""
    ANNUAL = "annual"
    ONE_TIME = "one_time"


class FulfillmentMode(str, Enum):
    """Who delivers a benefit."""
    ADMIN = "admin"
    SELF_SERVICE = "self_service"


class OverrideMode(str, Enum):
    """How an override combines with the tier default."""
    ABSOLUTE = "absolute"
    ADDITIVE = "additive"


class FulfillmentStatus(str, Enum):
    """Fulfillment lifecycle states."""
    PENDING = "pending"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RsvpStatus(str, Enum):
    """Status of a ticket claim, symposium registration or dinner RSVP."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    WAITLISTED = "waitlisted"
    CANCELLED = "cancelled"


class PassType(str, Enum):
    """Conference pass types."""
    GA = "ga"
    PRO = "pro"
    WHALE = "whale"
    CUSTOM = "custom"


class AllocationField(str, Enum):
    """Per-event allocation fields, each resolved independently."""
    GA_TICKETS = "ga_tickets"
    PRO_TICKETS = "pro_tickets"
    WHALE_TICKETS = "whale_tickets"
    CUSTOM_TICKETS = "custom_tickets"
    SYMPOSIUM_SEATS = "symposium_seats"
    VIP_DINNER_SEATS = "vip_dinner_seats"

    @property
    def is_ticket(self) -> bool:
        return self in TICKET_FIELDS

    @classmethod
    def for_pass_type(cls, pass_type: PassType) -> "AllocationField":
        return PASS_TYPE_FIELDS[pass_type]


TICKET_FIELDS = (
    AllocationField.GA_TICKETS,
    AllocationField.PRO_TICKETS,
    AllocationField.WHALE_TICKETS,
    AllocationField.CUSTOM_TICKETS,
)

PASS_TYPE_FIELDS: Dict[PassType, AllocationField] = {
    PassType.GA: AllocationField.GA_TICKETS,
    PassType.PRO: AllocationField.PRO_TICKETS,
    PassType.WHALE: AllocationField.WHALE_TICKETS,
    PassType.CUSTOM: AllocationField.CUSTOM_TICKETS,
}

ALLOCATION_FIELD_LABELS: Dict[AllocationField, str] = {
    AllocationField.GA_TICKETS: "General Admission",
    AllocationField.PRO_TICKETS: "Pro Pass",
    AllocationField.WHALE_TICKETS: "Whale Pass",
    AllocationField.CUSTOM_TICKETS: "Custom Pass",
    AllocationField.SYMPOSIUM_SEATS: "Symposium Seats",
    AllocationField.VIP_DINNER_SEATS: "VIP Dinner Seats",
}


class ConsumptionKind(str, Enum):
    """Discriminator for consumption records."""
    FULFILLMENT = "fulfillment"
    TICKET_CLAIM = "ticket_claim"
    SYMPOSIUM_REGISTRATION = "symposium_registration"
    VIP_DINNER_RSVP = "vip_dinner_rsvp"


# Reference data

@dataclass(frozen=True)
class BenefitDefinition:
    """A benefit in the catalog."""
    benefit_id: str
    label: str
    category: Optional[str] = None
    is_quantifiable: bool = True
    scope: BenefitScope = BenefitScope.ANNUAL
    unit_label: Optional[str] = None
    description: Optional[str] = None
    fulfillment_mode: FulfillmentMode = FulfillmentMode.ADMIN
    display_order: int = 0
    is_active: bool = True


@dataclass(frozen=True)
class TierPackage:
    """A (tier x track) package."""
    package_id: str
    tier: str
    track_id: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class PackageBenefit:
    """Tier-level default entitlement of a benefit within a package."""
    package_id: str
    benefit_id: str
    quantity: Optional[int] = None
    is_unlimited: bool = False
    notes: Optional[str] = None


@dataclass(frozen=True)
class EventDefinition:
    """An event occurrence."""
    event_id: str
    name: str
    event_type: Optional[str] = None
    start_date: Optional[date] = None
    is_active: bool = True


@dataclass(frozen=True)
class EventAllocation:
    """Tier-level default allocations for one event."""
    tier: str
    event_id: str
    ga_tickets: Optional[int] = None
    pro_tickets: Optional[int] = None
    whale_tickets: Optional[int] = None
    custom_tickets: Optional[int] = None
    symposium_seats: Optional[int] = None
    vip_dinner_seats: Optional[int] = None
    custom_pass_name: Optional[str] = None

    def quantity_for(self, allocation_field: AllocationField) -> Optional[int]:
        return getattr(self, allocation_field.value)


# Overrides

@dataclass(frozen=True)
class BenefitOverride:
    """Organization-specific adjustment of one benefit."""
    override_id: str
    organization_id: str
    benefit_id: str
    override_mode: OverrideMode = OverrideMode.ABSOLUTE
    quantity_override: Optional[int] = None
    is_unlimited_override: bool = False
    period_year: Optional[int] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class FieldOverride:
    """One allocation field's slice of an AllocationOverride.

    Shares attribute names with BenefitOverride so the resolver treats both
    the same way.
    """
    override_mode: OverrideMode
    quantity_override: Optional[int]
    is_unlimited_override: bool = False
    period_year: Optional[int] = None


@dataclass(frozen=True)
class AllocationOverride:
    """Organization-specific adjustment of an event's allocations."""
    override_id: str
    organization_id: str
    event_id: str
    override_mode: OverrideMode = OverrideMode.ABSOLUTE
    ga_tickets_override: Optional[int] = None
    pro_tickets_override: Optional[int] = None
    whale_tickets_override: Optional[int] = None
    custom_tickets_override: Optional[int] = None
    symposium_seats_override: Optional[int] = None
    vip_dinner_seats_override: Optional[int] = None
    is_unlimited_override: bool = False
    custom_pass_name: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def quantity_override_for(self, allocation_field: AllocationField) -> Optional[int]:
        return getattr(self, f"{allocation_field.value}_override")

    def field_override(self, allocation_field: AllocationField) -> Optional[FieldOverride]:
        """Return the override for one field, or None when it is not overridden."""
        quantity = self.quantity_override_for(allocation_field)
        if quantity is None and not self.is_unlimited_override:
            return None
        return FieldOverride(
            override_mode=self.override_mode,
            quantity_override=quantity,
            is_unlimited_override=self.is_unlimited_override,
        )

    def overridden_fields(self) -> List[AllocationField]:
        return [f for f in AllocationField if self.field_override(f) is not None]


# Consumption records

class ConsumptionRecord(ABC):
    """Common shape of every consumption record: status, quantity, period_year."""

    kind: ClassVar[ConsumptionKind]

    record_id: str
    organization_id: Optional[str]
    status: Optional[str]
    quantity: int
    period_year: Optional[int]

    @property
    @abstractmethod
    def subject_id(self) -> str:
        """The benefit or event this record consumes."""


@dataclass(frozen=True)
class Fulfillment(ConsumptionRecord):
    """Administrative delivery of a benefit."""
    kind: ClassVar[ConsumptionKind] = ConsumptionKind.FULFILLMENT

    record_id: str
    organization_id: str
    benefit_id: str
    status: str = FulfillmentStatus.COMPLETED.value
    quantity: int = 1
    period_year: Optional[int] = None
    event_id: Optional[str] = None
    title: Optional[str] = None
    proof_url: Optional[str] = None
    notes: Optional[str] = None
    scheduled_date: Optional[date] = None
    fulfilled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def subject_id(self) -> str:
        return self.benefit_id

    @property
    def is_completed(self) -> bool:
        return self.status == FulfillmentStatus.COMPLETED.value

    @property
    def is_scheduled(self) -> bool:
        return self.status == FulfillmentStatus.SCHEDULED.value


@dataclass(frozen=True)
class TicketClaim(ConsumptionRecord):
    """A claimed conference pass; always one unit."""
    kind: ClassVar[ConsumptionKind] = ConsumptionKind.TICKET_CLAIM

    record_id: str
    organization_id: Optional[str]
    event_id: str
    pass_type: PassType = PassType.GA
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_company: Optional[str] = None
    attendee_title: Optional[str] = None
    is_external_attendee: bool = False
    ticket_code: Optional[str] = None
    status: Optional[str] = RsvpStatus.PENDING.value
    claimed_at: Optional[datetime] = None
    quantity: int = field(default=1, init=False)
    period_year: Optional[int] = field(default=None, init=False)

    @property
    def subject_id(self) -> str:
        return self.event_id

    @property
    def allocation_field(self) -> AllocationField:
        return AllocationField.for_pass_type(self.pass_type)


@dataclass(frozen=True)
class SymposiumRegistration(ConsumptionRecord):
    """A symposium seat registration; always one unit."""
    kind: ClassVar[ConsumptionKind] = ConsumptionKind.SYMPOSIUM_REGISTRATION

    record_id: str
    organization_id: Optional[str]
    event_id: str
    attendee_name: Optional[str] = None
    attendee_email: Optional[str] = None
    attendee_company: Optional[str] = None
    attendee_title: Optional[str] = None
    is_external_attendee: bool = False
    registration_code: Optional[str] = None
    status: Optional[str] = RsvpStatus.PENDING.value
    registered_at: Optional[datetime] = None
    quantity: int = field(default=1, init=False)
    period_year: Optional[int] = field(default=None, init=False)

    @property
    def subject_id(self) -> str:
        return self.event_id

    @property
    def allocation_field(self) -> AllocationField:
        return AllocationField.SYMPOSIUM_SEATS


@dataclass(frozen=True)
class VipDinnerRsvp(ConsumptionRecord):
    """A VIP dinner seat RSVP; always one unit."""
    kind: ClassVar[ConsumptionKind] = ConsumptionKind.VIP_DINNER_RSVP

    record_id: str
    organization_id: Optional[str]
    event_id: str
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    guest_company: Optional[str] = None
    guest_title: Optional[str] = None
    is_external_attendee: bool = False
    confirmation_code: Optional[str] = None
    status: Optional[str] = RsvpStatus.PENDING.value
    rsvp_at: Optional[datetime] = None
    quantity: int = field(default=1, init=False)
    period_year: Optional[int] = field(default=None, init=False)

    @property
    def subject_id(self) -> str:
        return self.event_id

    @property
    def allocation_field(self) -> AllocationField:
        return AllocationField.VIP_DINNER_SEATS


AllocationConsumption = Union[TicketClaim, SymposiumRegistration, VipDinnerRsvp]
AnyConsumptionRecord = Union[Fulfillment, TicketClaim, SymposiumRegistration, VipDinnerRsvp]


@dataclass(frozen=True)
class EvaluationContext:
    """Explicit inputs of one evaluation."""
    organization_id: str
    tier: str
    target_year: int
    track_id: Optional[str] = None


# API response models

class FulfillmentDetail(BaseModel):
    """A fulfillment as rendered next to its benefit."""
    record_id: str
    status: str
    quantity: int
    period_year: Optional[int] = None
    title: Optional[str] = None
    proof_url: Optional[str] = None
    scheduled_date: Optional[date] = None
    fulfilled_at: Optional[datetime] = None


class BenefitBalanceResponse(BaseModel):
    """Per-benefit balance."""
    benefit_id: str
    label: str
    category: str
    scope: BenefitScope
    unit_label: Optional[str] = None
    is_quantifiable: bool
    entitled: int = Field(..., description="Effective entitlement, -1 when unlimited")
    fulfilled: int
    remaining: int = Field(..., description="Remaining balance, -1 when unlimited")
    is_unlimited: bool
    has_override: bool
    scheduled_count: int
    is_complete: bool
    progress_percent: float
    fulfillments: List[FulfillmentDetail] = Field(default_factory=list)


class BenefitCategoryResponse(BaseModel):
    """Benefits grouped by category."""
    category: str
    benefits: List[BenefitBalanceResponse]


class BenefitSummaryResponse(BaseModel):
    """Benefit balances of one organization for one year."""
    organization_id: str
    tier: str
    target_year: int
    total_entitled: int
    total_fulfilled: int
    overall_progress_percent: float
    categories: List[BenefitCategoryResponse]


class AllocationFieldResponse(BaseModel):
    """One ticket-type or seat row of an event allocation."""
    field: AllocationField
    label: str
    entitled: int
    fulfilled: int
    remaining: int
    is_unlimited: bool
    has_override: bool


class EventAllocationResponse(BaseModel):
    """Effective vs consumed vs remaining for one event."""
    event_id: str
    event_name: str
    event_type: Optional[str] = None
    custom_pass_name: Optional[str] = None
    has_override: bool
    tickets_entitled: int
    tickets_claimed: int
    tickets_remaining: int
    fields: List[AllocationFieldResponse]


class ClaimKind(str, Enum):
    """What a member-facing claim consumes."""
    TICKET = "ticket"
    SYMPOSIUM = "symposium"
    VIP_DINNER = "vip_dinner"


class ClaimRequest(BaseModel):
    """Request model for claiming one allocation unit."""
    tier: str = Field(..., description="Membership tier of the organization")
    kind: ClaimKind = Field(ClaimKind.TICKET, description="What is being claimed")
    pass_type: PassType = Field(PassType.GA, description="Pass type for ticket claims")
    attendee_name: str = Field(..., min_length=1)
    attendee_email: str = Field(..., min_length=3)
    attendee_company: Optional[str] = None
    attendee_title: Optional[str] = None
    is_external_attendee: bool = False
    profile_id: Optional[str] = None
    notes: Optional[str] = None


class FulfillmentRequest(BaseModel):
    """Request model for recording a benefit fulfillment."""
    tier: str = Field(..., description="Membership tier of the organization")
    period_year: int = Field(..., ge=2000, le=2100)
    quantity: int = Field(1, ge=1)
    status: FulfillmentStatus = FulfillmentStatus.COMPLETED
    title: Optional[str] = None
    notes: Optional[str] = None
    proof_url: Optional[str] = None
    scheduled_date: Optional[date] = None
    event_id: Optional[str] = None
    track_id: Optional[str] = None


class ConsumptionWriteResponse(BaseModel):
    """Outcome of a claim or fulfillment write."""
    record_id: str
    kind: ConsumptionKind
    subject_id: str
    remaining: int
    enforced: bool
