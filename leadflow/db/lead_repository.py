"""
Lead Repository
===============
The only writer of lead rows.

Every method takes the tenant id and filters on it. Concurrency is left to
the database: the natural key is a UNIQUE constraint, status changes are
conditional UPDATEs that report how many rows they touched, and counters
are incremented in SQL rather than read-modify-written in Python.
"""

import uuid as _uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from loguru import logger
from sqlalchemy import func, literal, select, update
from sqlalchemy.exc import IntegrityError

from leadflow.core.errors import LeadflowError, LeadNotFound
from leadflow.core.lead_states import (
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    LeadEvent,
    LeadStatus,
    source_statuses,
)
from leadflow.core.touch_point_schedule import MAX_TOUCH_POINTS, utcnow
from leadflow.db.models import Lead, LeadEventRecord, UTCDateTime


_OPEN = [status.value for status in OPEN_STATUSES]

# Columns that identify a lead and are never rewritten by an upsert
_NATURAL_KEY = ("crm_source", "crm_work_order_id")


# ── Input / Output Structures ─────────────────────────────────────────────────

@dataclass
class CreateLeadData:
    """CRM-sourced fields for one work order, as produced by an ingestion path"""
    crm_source: str
    crm_work_order_id: str
    service_type: str
    crm_work_order_number: str | None = None
    location_id: str | None = None
    customer_external_id: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None
    vehicle_external_id: str | None = None
    vehicle_year: int | None = None
    vehicle_make: str | None = None
    vehicle_model: str | None = None
    vehicle_description: str | None = None
    service_name: str | None = None
    service_specifications: str | None = None
    estimated_cost_cents: int | None = None
    crm_metadata: dict[str, Any] | None = field(default=None)

    def crm_fields(self) -> dict[str, Any]:
        """Populated fields only, so a sparse payload never blanks out known data"""
        return {key: value for key, value in asdict(self).items() if value is not None}

    @property
    def has_contact_info(self) -> bool:
        return bool(self.customer_email or self.customer_phone)


@dataclass
class UpsertResult:
    lead: Lead
    created: bool


# ── Repository ────────────────────────────────────────────────────────────────

class LeadRepository:

    def __init__(self, session_factory, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def find_by_id(self, tenant_id: str, lead_id) -> Optional[Lead]:
        async with self.session_factory() as session:
            return await self._get(session, tenant_id, lead_id)

    async def require(self, tenant_id: str, lead_id) -> Lead:
        """Like find_by_id, but a missing lead (or malformed id) raises LeadNotFound"""
        try:
            lead = await self.find_by_id(tenant_id, lead_id)
        except ValueError:
            lead = None
        if lead is None:
            raise LeadNotFound(tenant_id, lead_id)
        return lead

    async def find_by_tenant(self, tenant_id: str, limit: int | None = None) -> list[Lead]:
        query = select(Lead).where(Lead.tenant_id == tenant_id).order_by(Lead.created_at.desc())
        if limit:
            query = query.limit(limit)
        return await self._all(query)

    async def find_by_status(self, tenant_id: str, status: str, limit: int | None = None) -> list[Lead]:
        query = (
            select(Lead)
            .where(Lead.tenant_id == tenant_id, Lead.status == LeadStatus(status).value)
            .order_by(Lead.created_at.desc())
        )
        if limit:
            query = query.limit(limit)
        return await self._all(query)

    async def find_by_work_order_id(self, tenant_id: str, crm_source: str, work_order_id: str) -> Optional[Lead]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Lead)
                .where(
                    Lead.tenant_id == tenant_id,
                    Lead.crm_source == crm_source,
                    Lead.crm_work_order_id == work_order_id,
                )
                .execution_options(populate_existing=True)
            )
            return result.scalar_one_or_none()

    async def find_unprocessed(self, tenant_id: str) -> list[Lead]:
        """Leads admitted but never entered into the outreach sequence"""
        return await self._all(
            select(Lead)
            .where(Lead.tenant_id == tenant_id, Lead.processed_at.is_(None))
            .order_by(Lead.created_at.asc())
        )

    async def find_due_for_touch_point(self, tenant_id: str, limit: int = 100) -> list[Lead]:
        """
        Open leads whose next touch point time has passed, oldest due first.
        Leads that already had all touch points are never due.
        """
        now = self.clock()
        return await self._all(
            select(Lead)
            .where(
                Lead.tenant_id == tenant_id,
                Lead.status.in_(_OPEN),
                Lead.touch_point_count < MAX_TOUCH_POINTS,
                Lead.next_touch_point_at.is_not(None),
                Lead.next_touch_point_at <= now,
            )
            .order_by(Lead.next_touch_point_at.asc())
            .limit(limit)
        )

    async def find_exhausted(self, tenant_id: str, limit: int = 100) -> list[Lead]:
        """Open leads that used every touch point without a response"""
        return await self._all(
            select(Lead)
            .where(
                Lead.tenant_id == tenant_id,
                Lead.status.in_(_OPEN),
                Lead.touch_point_count >= MAX_TOUCH_POINTS,
                Lead.first_response_at.is_(None),
            )
            .order_by(Lead.last_contacted_at.asc())
            .limit(limit)
        )

    async def history(self, tenant_id: str, lead_id) -> list[LeadEventRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(LeadEventRecord)
                .where(LeadEventRecord.tenant_id == tenant_id, LeadEventRecord.lead_id == _as_uuid(lead_id))
                .order_by(LeadEventRecord.occurred_at)
            )
            return list(result.scalars().all())

    # ── Ingestion ─────────────────────────────────────────────────────────────

    async def upsert(self, tenant_id: str, data: CreateLeadData) -> UpsertResult:
        """
        Insert a lead by natural key, or refresh its CRM fields.

        Two ingestion paths may race on the same work order. The loser of the
        INSERT gets an IntegrityError from the unique constraint and falls
        through to the update path, so both callers end up with the same row.
        """
        existing = await self.find_by_work_order_id(tenant_id, data.crm_source, data.crm_work_order_id)

        if existing is None:
            lead = await self._insert(tenant_id, data)
            if lead is not None:
                return UpsertResult(lead=lead, created=True)
            logger.info(
                f"Lead {data.crm_source}:{data.crm_work_order_id} inserted concurrently, updating instead"
            )

        lead = await self._update_crm_fields(tenant_id, data)
        return UpsertResult(lead=lead, created=False)

    async def _insert(self, tenant_id: str, data: CreateLeadData) -> Optional[Lead]:
        now = self.clock()
        async with self.session_factory() as session:
            lead = Lead(
                id=_uuid.uuid4(),
                tenant_id=tenant_id,
                **data.crm_fields(),
                status=LeadStatus.NEW.value,
                touch_point_count=0,
                version=1,
                created_at=now,
                updated_at=now,
            )
            session.add(lead)
            session.add(self._event(
                lead, "NONE", LeadEvent.LEAD_CREATED, now,
                {"crm_source": data.crm_source, "crm_work_order_id": data.crm_work_order_id},
            ))

            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None

            return lead

    async def _update_crm_fields(self, tenant_id: str, data: CreateLeadData) -> Lead:
        now = self.clock()
        values = {key: value for key, value in data.crm_fields().items() if key not in _NATURAL_KEY}

        async with self.session_factory() as session:
            criteria = (
                Lead.tenant_id == tenant_id,
                Lead.crm_source == data.crm_source,
                Lead.crm_work_order_id == data.crm_work_order_id,
            )
            result = await session.execute(
                update(Lead)
                .where(*criteria)
                .values(**values, version=Lead.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise LeadflowError(
                    f"Lead {data.crm_source}:{data.crm_work_order_id} vanished during upsert"
                )

            lead = (
                await session.execute(select(Lead).where(*criteria).execution_options(populate_existing=True))
            ).scalar_one()
            await session.commit()
            return lead

    # ── State changes ─────────────────────────────────────────────────────────

    async def update_status(self, tenant_id: str, lead_id, new_status: str, expected_version: int) -> Optional[Lead]:
        """
        Optimistic status change.

        Applies only if the stored version still equals `expected_version` and
        the current status may legally move to `new_status`. Returns None when
        another writer got there first; the caller reloads and decides.
        """
        target = LeadStatus(new_status)
        now = self.clock()

        values = {"status": target.value}
        if target in TERMINAL_STATUSES:
            values["next_touch_point_at"] = None
        if target == LeadStatus.CHAT_ACTIVE:
            values["first_response_at"] = now

        lead = await self._transition(
            tenant_id,
            lead_id,
            Lead.version == expected_version,
            Lead.status.in_([status.value for status in source_statuses(target)]),
            values=values,
            event=LeadEvent.STATUS_CHANGED,
            now=now,
            payload={"expected_version": expected_version},
        )
        if lead is None:
            logger.debug(f"Stale status write for lead {lead_id} (expected version {expected_version})")
        return lead

    async def schedule_next_touch_point(self, tenant_id: str, lead_id, next_touch_point_at: datetime) -> Optional[Lead]:
        now = self.clock()
        return await self._transition(
            tenant_id,
            lead_id,
            Lead.status.in_(_OPEN),
            values={"next_touch_point_at": next_touch_point_at},
            event=LeadEvent.TOUCH_POINT_SCHEDULED,
            now=now,
            payload={"next_touch_point_at": next_touch_point_at.isoformat()},
        )

    async def record_touch_point(self, tenant_id: str, lead_id, next_touch_point_at: Optional[datetime]) -> Optional[Lead]:
        """
        Count one delivered touch point and store when the next one is due
        (None once the sequence is finished).

        The counter is bumped in SQL. The processor never works the same lead
        twice at once, so this is the only writer for these columns.
        """
        now = self.clock()
        return await self._transition(
            tenant_id,
            lead_id,
            Lead.status.in_(_OPEN),
            Lead.touch_point_count < MAX_TOUCH_POINTS,
            values={
                "touch_point_count": Lead.touch_point_count + 1,
                "status": LeadStatus.CONTACTED.value,
                "last_contacted_at": now,
                "invitation_sent_at": func.coalesce(Lead.invitation_sent_at, literal(now, UTCDateTime())),
                "next_touch_point_at": next_touch_point_at,
            },
            event=LeadEvent.TOUCH_POINT_SENT,
            now=now,
            payload={"next_touch_point_at": next_touch_point_at.isoformat() if next_touch_point_at else None},
        )

    async def mark_as_lost(self, tenant_id: str, lead_id) -> Optional[Lead]:
        """No response after all touch points. Terminal."""
        now = self.clock()
        return await self._transition(
            tenant_id,
            lead_id,
            Lead.status.in_(_OPEN),
            values={"status": LeadStatus.LOST.value, "next_touch_point_at": None},
            event=LeadEvent.SEQUENCE_EXHAUSTED,
            now=now,
        )

    async def mark_as_responded(self, tenant_id: str, lead_id) -> Optional[Lead]:
        """Customer replied; stops the follow-up sequence for good."""
        now = self.clock()
        return await self._transition(
            tenant_id,
            lead_id,
            Lead.status.in_(_OPEN),
            values={
                "status": LeadStatus.CHAT_ACTIVE.value,
                "first_response_at": now,
                "next_touch_point_at": None,
            },
            event=LeadEvent.CUSTOMER_RESPONDED,
            now=now,
        )

    async def mark_as_processed(self, tenant_id: str, lead_id) -> Optional[Lead]:
        now = self.clock()
        async with self.session_factory() as session:
            result = await session.execute(
                update(Lead)
                .where(Lead.tenant_id == tenant_id, Lead.id == _as_uuid(lead_id))
                .values(processed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            lead = await self._get(session, tenant_id, lead_id)
            await session.commit()
            return lead

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _transition(self, tenant_id: str, lead_id, *criteria, values: dict, event: LeadEvent,
                          now: datetime, payload: dict | None = None) -> Optional[Lead]:
        """
        Conditional UPDATE of one lead plus its history row, in one transaction.
        Zero affected rows means the condition no longer holds: nothing is
        written and None is returned.
        """
        async with self.session_factory() as session:
            current = await self._get(session, tenant_id, lead_id)
            if current is None:
                return None
            from_status = current.status

            result = await session.execute(
                update(Lead)
                .where(Lead.tenant_id == tenant_id, Lead.id == _as_uuid(lead_id), *criteria)
                .values(**values, version=Lead.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None

            lead = await self._get(session, tenant_id, lead_id)
            session.add(self._event(lead, from_status, event, now, payload))
            await session.commit()
            return lead

    @staticmethod
    async def _get(session, tenant_id: str, lead_id) -> Optional[Lead]:
        result = await session.execute(
            select(Lead)
            .where(Lead.tenant_id == tenant_id, Lead.id == _as_uuid(lead_id))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _all(self, query) -> list[Lead]:
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    @staticmethod
    def _event(lead: Lead, from_status: str, event: LeadEvent, now: datetime, payload: dict | None = None):
        return LeadEventRecord(
            id=_uuid.uuid4(),
            lead_id=lead.id,
            tenant_id=lead.tenant_id,
            from_status=from_status,
            event=event.value,
            to_status=lead.status,
            payload={"version": lead.version, "touch_point_count": lead.touch_point_count, **(payload or {})},
            occurred_at=now,
        )


def _as_uuid(value):
    if isinstance(value, _uuid.UUID):
        return value
    return _uuid.UUID(str(value))
