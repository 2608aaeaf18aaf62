"""
PostgreSQL storage collaborator for the Member Entitlements service.

Read queries feed one EntitlementSnapshot per evaluation. Consumption
inserts go through ``guarded_write`` so a claim can re-check the balance
under a transaction-scoped advisory lock before it lands.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, TypeVar

import asyncpg
from asyncpg.exceptions import InterfaceError, PostgresConnectionError

from shared.errors import StorageUnavailableError
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, call_with_retry
from ..engine.catalog import Catalog
from ..engine.models import (
    AllocationConsumption, AllocationOverride, BenefitDefinition, BenefitOverride,
    BenefitScope, EvaluationContext, EventAllocation, EventDefinition, Fulfillment,
    FulfillmentMode, OverrideMode, PackageBenefit, PassType, SymposiumRegistration,
    TicketClaim, TierPackage, VipDinnerRsvp
)
from ..engine.snapshot import EntitlementSnapshot

T = TypeVar("T")

TRANSIENT_ERRORS = (PostgresConnectionError, InterfaceError, OSError, asyncio.TimeoutError)


class PostgreSQLRepository:
    """asyncpg-backed reads and guarded consumption writes."""

    def __init__(self, dsn: str, retry_config: Optional[RetryConfig] = None):
        self.dsn = dsn
        self.retry_config = retry_config or RetryConfig()
        self.logger = get_logger("member_entitlements.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the connection pool."""
        try:
            self.pool = await call_with_retry(
                asyncpg.create_pool,
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                exceptions=TRANSIENT_ERRORS,
                config=self.retry_config
            )
            self.logger.info("PostgreSQL repository started")

        except RetryError as e:
            self.logger.error("Failed to start PostgreSQL repository", error=str(e.last_exception))
            raise StorageUnavailableError(str(e.last_exception)) from e

    async def stop(self):
        """Stop the connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None
            self.logger.info("PostgreSQL repository stopped")

    async def health_check(self) -> bool:
        """Check database health."""
        if self.pool is None:
            return False
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False

    @asynccontextmanager
    async def _connection(self, conn: Optional[asyncpg.Connection] = None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        if self.pool is None:
            raise StorageUnavailableError("Repository not started")
        async with self.pool.acquire() as acquired:
            yield acquired

    async def _fetch(self, query: str, *args, conn: Optional[asyncpg.Connection] = None) -> List[asyncpg.Record]:
        """Run a read query, retrying transport failures outside transactions."""
        async def run():
            async with self._connection(conn) as c:
                return await c.fetch(query, *args)

        if conn is not None:
            try:
                return await run()
            except TRANSIENT_ERRORS as e:
                raise StorageUnavailableError(str(e)) from e

        try:
            return await call_with_retry(run, exceptions=TRANSIENT_ERRORS, config=self.retry_config)
        except RetryError as e:
            raise StorageUnavailableError(str(e.last_exception)) from e

    async def _execute(self, query: str, *args, conn: Optional[asyncpg.Connection] = None) -> str:
        try:
            async with self._connection(conn) as c:
                return await c.execute(query, *args)
        except TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(str(e)) from e

    # Catalog

    async def fetch_benefit_definitions(self, conn: Optional[asyncpg.Connection] = None) -> List[BenefitDefinition]:
        rows = await self._fetch("""
            SELECT b.*, c.name AS category_name
            FROM benefits b
            LEFT JOIN benefit_categories c ON c.id = b.category_id
        """, conn=conn)
        return self._convert(rows, self._row_to_benefit, "benefit")

    async def fetch_packages(self, conn: Optional[asyncpg.Connection] = None) -> List[TierPackage]:
        rows = await self._fetch("""
            SELECT p.id, p.track_id, p.name, p.is_active, t.name AS tier_name
            FROM tier_track_packages p
            JOIN membership_tiers t ON t.id = p.tier_id
        """, conn=conn)
        return self._convert(rows, self._row_to_package, "package")

    async def fetch_package_benefits(self, package_id: str, conn: Optional[asyncpg.Connection] = None) -> List[PackageBenefit]:
        rows = await self._fetch("""
            SELECT * FROM package_benefits WHERE package_id = $1
        """, package_id, conn=conn)
        return self._convert(rows, self._row_to_package_benefit, "package_benefit")

    async def fetch_events(self, conn: Optional[asyncpg.Connection] = None) -> List[EventDefinition]:
        rows = await self._fetch("""
            SELECT id, name, event_type, start_date, is_active FROM events
        """, conn=conn)
        return self._convert(rows, self._row_to_event, "event")

    async def fetch_event_allocations(self, tier: str, conn: Optional[asyncpg.Connection] = None) -> List[EventAllocation]:
        rows = await self._fetch("""
            SELECT * FROM event_allocations WHERE lower(tier::text) = lower($1)
        """, tier, conn=conn)
        return self._convert(rows, self._row_to_event_allocation, "event_allocation")

    # Overrides

    async def fetch_benefit_overrides(
        self,
        organization_id: str,
        period_year: Optional[int] = None,
        conn: Optional[asyncpg.Connection] = None
    ) -> List[BenefitOverride]:
        if period_year is None:
            rows = await self._fetch("""
                SELECT * FROM company_benefit_overrides WHERE business_id = $1
            """, organization_id, conn=conn)
        else:
            rows = await self._fetch("""
                SELECT * FROM company_benefit_overrides
                WHERE business_id = $1 AND (period_year = $2 OR period_year IS NULL)
            """, organization_id, period_year, conn=conn)
        return self._convert(rows, self._row_to_benefit_override, "benefit_override")

    async def fetch_allocation_overrides(
        self,
        organization_id: str,
        conn: Optional[asyncpg.Connection] = None
    ) -> List[AllocationOverride]:
        rows = await self._fetch("""
            SELECT * FROM company_allocation_overrides WHERE business_id = $1
        """, organization_id, conn=conn)
        return self._convert(rows, self._row_to_allocation_override, "allocation_override")

    # Consumption

    async def fetch_fulfillments(
        self,
        organization_id: str,
        period_year: Optional[int] = None,
        conn: Optional[asyncpg.Connection] = None
    ) -> List[Fulfillment]:
        """Fulfillments of an organization, newest first.

        Snapshots load every year because one-time benefits accumulate
        consumption across years.
        """
        if period_year is None:
            rows = await self._fetch("""
                SELECT * FROM fulfillments WHERE business_id = $1 ORDER BY created_at DESC
            """, organization_id, conn=conn)
        else:
            rows = await self._fetch("""
                SELECT * FROM fulfillments
                WHERE business_id = $1 AND period_year = $2
                ORDER BY created_at DESC
            """, organization_id, period_year, conn=conn)
        return self._convert(rows, self._row_to_fulfillment, "fulfillment")

    async def fetch_allocation_consumption(
        self,
        organization_id: str,
        event_id: Optional[str] = None,
        conn: Optional[asyncpg.Connection] = None
    ) -> List[AllocationConsumption]:
        """Ticket claims, symposium registrations and VIP RSVPs of an organization."""
        event_filter = "" if event_id is None else "AND r.event_id = $2"
        args: List[Any] = [organization_id] if event_id is None else [organization_id, event_id]

        claims = await self._fetch(f"""
            SELECT r.*, r.business_id AS organization_id FROM ticket_claims r
            WHERE r.business_id = $1 {event_filter}
        """, *args, conn=conn)
        registrations = await self._fetch(f"""
            SELECT r.*, tm.business_id AS organization_id FROM symposium_registrations r
            JOIN team_memberships tm ON tm.profile_id = r.profile_id
            WHERE tm.business_id = $1 {event_filter}
        """, *args, conn=conn)
        rsvps = await self._fetch(f"""
            SELECT r.*, tm.business_id AS organization_id FROM vip_dinner_rsvps r
            JOIN team_memberships tm ON tm.profile_id = r.profile_id
            WHERE tm.business_id = $1 {event_filter}
        """, *args, conn=conn)

        records: List[AllocationConsumption] = []
        records.extend(self._convert(claims, self._row_to_ticket_claim, "ticket_claim"))
        records.extend(self._convert(registrations, self._row_to_symposium_registration, "symposium_registration"))
        records.extend(self._convert(rsvps, self._row_to_vip_dinner_rsvp, "vip_dinner_rsvp"))
        return records

    async def is_team_member(
        self,
        profile_id: str,
        organization_id: str,
        conn: Optional[asyncpg.Connection] = None
    ) -> bool:
        """Seat rows are attributed to organizations through team_memberships."""
        rows = await self._fetch("""
            SELECT 1 FROM team_memberships WHERE profile_id = $1 AND business_id = $2 LIMIT 1
        """, profile_id, organization_id, conn=conn)
        return bool(rows)

    async def load_snapshot(
        self,
        context: EvaluationContext,
        conn: Optional[asyncpg.Connection] = None
    ) -> EntitlementSnapshot:
        """Fetch everything one evaluation needs."""
        packages = await self.fetch_packages(conn=conn)
        package = Catalog(packages=packages).find_package(context.tier, context.track_id)
        package_benefits = (
            await self.fetch_package_benefits(package.package_id, conn=conn) if package else []
        )

        snapshot = EntitlementSnapshot(
            benefits=tuple(await self.fetch_benefit_definitions(conn=conn)),
            packages=tuple(packages),
            package_benefits=tuple(package_benefits),
            events=tuple(await self.fetch_events(conn=conn)),
            event_allocations=tuple(await self.fetch_event_allocations(context.tier, conn=conn)),
            benefit_overrides=tuple(await self.fetch_benefit_overrides(
                context.organization_id, context.target_year, conn=conn
            )),
            allocation_overrides=tuple(await self.fetch_allocation_overrides(context.organization_id, conn=conn)),
            records=tuple(
                await self.fetch_fulfillments(context.organization_id, conn=conn)
            ) + tuple(
                await self.fetch_allocation_consumption(context.organization_id, conn=conn)
            ),
        )

        self.logger.debug(
            "Snapshot loaded",
            organization_id=context.organization_id,
            tier=context.tier,
            target_year=context.target_year,
            records=len(snapshot.records)
        )
        return snapshot

    # Writes

    @asynccontextmanager
    async def guarded_write(self, *lock_parts: Any) -> AsyncIterator[asyncpg.Connection]:
        """Open a transaction holding an advisory lock on ``lock_parts``.

        Concurrent writers on the same (organization, subject, field-or-year)
        key are serialized until the transaction ends.
        """
        lock_key = ":".join(str(p) for p in lock_parts)
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    await conn.execute("SELECT pg_advisory_xact_lock(hashtext($1))", lock_key)
                    self.logger.debug("Advisory lock acquired", lock_key=lock_key)
                    yield conn
        except TRANSIENT_ERRORS as e:
            raise StorageUnavailableError(str(e)) from e

    async def insert_ticket_claim(
        self,
        claim: TicketClaim,
        profile_id: Optional[str] = None,
        notes: Optional[str] = None,
        conn: Optional[asyncpg.Connection] = None
    ) -> str:
        await self._execute("""
            INSERT INTO ticket_claims (
                id, business_id, event_id, pass_type, attendee_name, attendee_email,
                attendee_company, attendee_title, is_external_attendee, profile_id,
                notes, status
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        """,
            claim.record_id, claim.organization_id, claim.event_id, claim.pass_type.value,
            claim.attendee_name, claim.attendee_email, claim.attendee_company,
            claim.attendee_title, claim.is_external_attendee, profile_id, notes, claim.status,
            conn=conn
        )
        self.logger.info("Ticket claim inserted", record_id=claim.record_id, event_id=claim.event_id)
        return claim.record_id

    async def insert_symposium_registration(
        self,
        registration: SymposiumRegistration,
        profile_id: str,
        conn: Optional[asyncpg.Connection] = None
    ) -> str:
        await self._execute("""
            INSERT INTO symposium_registrations (
                id, event_id, profile_id, attendee_name, attendee_email,
                attendee_company, attendee_title, is_external_attendee, status
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        """,
            registration.record_id, registration.event_id, profile_id,
            registration.attendee_name, registration.attendee_email,
            registration.attendee_company, registration.attendee_title,
            registration.is_external_attendee, registration.status,
            conn=conn
        )
        self.logger.info("Symposium registration inserted", record_id=registration.record_id)
        return registration.record_id

    async def insert_vip_dinner_rsvp(
        self,
        rsvp: VipDinnerRsvp,
        profile_id: str,
        conn: Optional[asyncpg.Connection] = None
    ) -> str:
        await self._execute("""
            INSERT INTO vip_dinner_rsvps (
                id, event_id, profile_id, guest_name, guest_email,
                guest_company, guest_title, is_external_attendee, status
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
        """,
            rsvp.record_id, rsvp.event_id, profile_id, rsvp.guest_name, rsvp.guest_email,
            rsvp.guest_company, rsvp.guest_title, rsvp.is_external_attendee, rsvp.status,
            conn=conn
        )
        self.logger.info("VIP dinner RSVP inserted", record_id=rsvp.record_id)
        return rsvp.record_id

    async def insert_fulfillment(self, fulfillment: Fulfillment, conn: Optional[asyncpg.Connection] = None) -> str:
        await self._execute("""
            INSERT INTO fulfillments (
                id, business_id, benefit_id, event_id, period_year, quantity, status,
                title, notes, proof_url, scheduled_date, fulfilled_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
        """,
            fulfillment.record_id, fulfillment.organization_id, fulfillment.benefit_id,
            fulfillment.event_id, fulfillment.period_year, fulfillment.quantity,
            fulfillment.status, fulfillment.title, fulfillment.notes, fulfillment.proof_url,
            fulfillment.scheduled_date, fulfillment.fulfilled_at,
            conn=conn
        )
        self.logger.info(
            "Fulfillment inserted",
            record_id=fulfillment.record_id,
            benefit_id=fulfillment.benefit_id,
            status=fulfillment.status
        )
        return fulfillment.record_id

    # Row conversion

    def _convert(self, rows: Iterable[Any], converter: Callable[[Any], T], kind: str) -> List[T]:
        """Convert rows, skipping malformed ones."""
        result = []
        for row in rows:
            try:
                result.append(converter(row))
            except (KeyError, ValueError, TypeError) as e:
                self.logger.warning("Skipping malformed row", kind=kind, row_id=row.get("id"), error=str(e))
        return result

    @staticmethod
    def _row_to_benefit(row) -> BenefitDefinition:
        return BenefitDefinition(
            benefit_id=str(row["id"]),
            label=row["label"],
            category=row.get("category_name"),
            is_quantifiable=row.get("is_quantifiable") is not False,
            scope=BenefitScope(row.get("scope") or BenefitScope.ANNUAL.value),
            unit_label=row.get("unit_label"),
            description=row.get("description"),
            fulfillment_mode=FulfillmentMode(row.get("fulfillment_mode") or FulfillmentMode.ADMIN.value),
            display_order=row.get("display_order") or 0,
            is_active=row.get("is_active") is not False,
        )

    @staticmethod
    def _row_to_package(row) -> TierPackage:
        return TierPackage(
            package_id=str(row["id"]),
            tier=row["tier_name"],
            track_id=str(row["track_id"]) if row.get("track_id") else None,
            name=row.get("name"),
            is_active=row.get("is_active") is not False,
        )

    @staticmethod
    def _row_to_package_benefit(row) -> PackageBenefit:
        return PackageBenefit(
            package_id=str(row["package_id"]),
            benefit_id=str(row["benefit_id"]),
            quantity=row.get("quantity"),
            is_unlimited=bool(row.get("is_unlimited")),
            notes=row.get("notes"),
        )

    @staticmethod
    def _row_to_event(row) -> EventDefinition:
        return EventDefinition(
            event_id=str(row["id"]),
            name=row["name"],
            event_type=row.get("event_type"),
            start_date=row.get("start_date"),
            is_active=row.get("is_active") is not False,
        )

    @staticmethod
    def _row_to_event_allocation(row) -> EventAllocation:
        """Rows carrying only the legacy ``conference_tickets`` total get it as GA tickets."""
        ga_tickets = row.get("ga_tickets")
        if all(row.get(f"{t}_tickets") is None for t in ("ga", "pro", "whale", "custom")):
            ga_tickets = row.get("conference_tickets")
        return EventAllocation(
            tier=str(row["tier"]),
            event_id=str(row["event_id"]),
            ga_tickets=ga_tickets,
            pro_tickets=row.get("pro_tickets"),
            whale_tickets=row.get("whale_tickets"),
            custom_tickets=row.get("custom_tickets"),
            symposium_seats=row.get("symposium_seats"),
            vip_dinner_seats=row.get("vip_dinner_seats"),
            custom_pass_name=row.get("custom_pass_name"),
        )

    @staticmethod
    def _row_to_benefit_override(row) -> BenefitOverride:
        return BenefitOverride(
            override_id=str(row["id"]),
            organization_id=str(row["business_id"]),
            benefit_id=str(row["benefit_id"]),
            override_mode=OverrideMode(row["override_mode"]),
            quantity_override=row.get("quantity_override"),
            is_unlimited_override=bool(row.get("is_unlimited_override")),
            period_year=row.get("period_year"),
            reason=row.get("reason"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_allocation_override(row) -> AllocationOverride:
        return AllocationOverride(
            override_id=str(row["id"]),
            organization_id=str(row["business_id"]),
            event_id=str(row["event_id"]),
            override_mode=OverrideMode(row.get("override_mode") or OverrideMode.ABSOLUTE.value),
            ga_tickets_override=row.get("ga_tickets_override"),
            pro_tickets_override=row.get("pro_tickets_override"),
            whale_tickets_override=row.get("whale_tickets_override"),
            custom_tickets_override=row.get("custom_tickets_override"),
            symposium_seats_override=row.get("symposium_seats_override"),
            vip_dinner_seats_override=row.get("vip_dinner_seats_override"),
            is_unlimited_override=bool(row.get("is_unlimited_override")),
            custom_pass_name=row.get("custom_pass_name"),
            reason=row.get("reason"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @staticmethod
    def _row_to_fulfillment(row) -> Fulfillment:
        return Fulfillment(
            record_id=str(row["id"]),
            organization_id=str(row["business_id"]),
            benefit_id=str(row["benefit_id"]),
            status=row["status"],
            quantity=row.get("quantity") or 0,
            period_year=row.get("period_year"),
            event_id=str(row["event_id"]) if row.get("event_id") else None,
            title=row.get("title"),
            proof_url=row.get("proof_url"),
            notes=row.get("notes"),
            scheduled_date=row.get("scheduled_date"),
            fulfilled_at=row.get("fulfilled_at"),
            created_at=row.get("created_at"),
        )

    @staticmethod
    def _row_to_ticket_claim(row) -> TicketClaim:
        return TicketClaim(
            record_id=str(row["id"]),
            organization_id=str(row["organization_id"]) if row.get("organization_id") else None,
            event_id=str(row["event_id"]),
            pass_type=PassType(row.get("pass_type") or PassType.GA.value),
            attendee_name=row.get("attendee_name"),
            attendee_email=row.get("attendee_email"),
            attendee_company=row.get("attendee_company"),
            attendee_title=row.get("attendee_title"),
            is_external_attendee=bool(row.get("is_external_attendee")),
            ticket_code=row.get("ticket_code"),
            status=row.get("status"),
            claimed_at=row.get("claimed_at"),
        )

    @staticmethod
    def _row_to_symposium_registration(row) -> SymposiumRegistration:
        return SymposiumRegistration(
            record_id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            event_id=str(row["event_id"]),
            attendee_name=row.get("attendee_name"),
            attendee_email=row.get("attendee_email"),
            attendee_company=row.get("attendee_company"),
            attendee_title=row.get("attendee_title"),
            is_external_attendee=bool(row.get("is_external_attendee")),
            registration_code=row.get("registration_code"),
            status=row.get("status"),
            registered_at=row.get("registered_at"),
        )

    @staticmethod
    def _row_to_vip_dinner_rsvp(row) -> VipDinnerRsvp:
        return VipDinnerRsvp(
            record_id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            event_id=str(row["event_id"]),
            guest_name=row.get("guest_name"),
            guest_email=row.get("guest_email"),
            guest_company=row.get("guest_company"),
            guest_title=row.get("guest_title"),
            is_external_attendee=bool(row.get("is_external_attendee")),
            confirmation_code=row.get("confirmation_code"),
            status=row.get("status"),
            rsvp_at=row.get("rsvp_at"),
        )

    async def get_repository_stats(self) -> Dict[str, Any]:
        """Row counts of the consumption tables."""
        rows = await self._fetch("""
            SELECT
                (SELECT COUNT(*) FROM fulfillments) AS fulfillments,
                (SELECT COUNT(*) FROM ticket_claims) AS ticket_claims,
                (SELECT COUNT(*) FROM symposium_registrations) AS symposium_registrations,
                (SELECT COUNT(*) FROM vip_dinner_rsvps) AS vip_dinner_rsvps
        """)
        return dict(rows[0]) if rows else {}
