"""
Database Models
===============
Lead = current outreach state + CRM data
LeadEventRecord = immutable history (audit log)
JobExecution = one run of a named recurring job
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow():
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.
    Backends without native timezone support hand back naive values; those
    are read as UTC so comparisons with aware datetimes stay valid.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    pass


class Lead(Base):
    """
    Current state of one CRM work order tracked for outreach.
    (tenant_id, crm_source, crm_work_order_id) is the natural key.
    """
    __tablename__ = "leads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)

    # Natural key
    crm_source = Column(String(50), nullable=False)
    crm_work_order_id = Column(String(255), nullable=False)

    # CRM data
    crm_work_order_number = Column(String(100), nullable=True)
    location_id = Column(String(255), nullable=True)
    customer_external_id = Column(String(255), nullable=True)
    customer_name = Column(String(255), nullable=True)
    customer_phone = Column(String(32), nullable=True)
    customer_email = Column(String(320), nullable=True)
    vehicle_external_id = Column(String(255), nullable=True)
    vehicle_year = Column(Integer, nullable=True)
    vehicle_make = Column(String(100), nullable=True)
    vehicle_model = Column(String(100), nullable=True)
    vehicle_description = Column(Text, nullable=True)
    service_type = Column(String(100), nullable=False)
    service_name = Column(Text, nullable=True)
    service_specifications = Column(Text, nullable=True)
    estimated_cost_cents = Column(Integer, nullable=True)
    crm_metadata = Column(JSON, nullable=True)

    # Outreach state
    status = Column(String(50), nullable=False, default="new")
    touch_point_count = Column(Integer, nullable=False, default=0)
    next_touch_point_at = Column(UTCDateTime, nullable=True)
    last_contacted_at = Column(UTCDateTime, nullable=True)
    invitation_sent_at = Column(UTCDateTime, nullable=True)
    first_response_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)

    # Optimistic concurrency control
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow)

    events = relationship("LeadEventRecord", back_populates="lead", order_by="LeadEventRecord.occurred_at")

    __table_args__ = (
        UniqueConstraint("tenant_id", "crm_source", "crm_work_order_id", name="uq_leads_natural_key"),
        Index("ix_leads_tenant_status", "tenant_id", "status"),
        Index("ix_leads_tenant_next_touch", "tenant_id", "next_touch_point_at"),
        Index("ix_leads_tenant_created", "tenant_id", "created_at"),
    )

    @property
    def has_contact_info(self) -> bool:
        return bool(self.customer_email or self.customer_phone)

    @property
    def has_responded(self) -> bool:
        return self.first_response_at is not None


class LeadEventRecord(Base):
    """
    The Event Log - IMMUTABLE history.
    Every state change of a lead appends a row here, in the same
    transaction as the change itself.
    """
    __tablename__ = "lead_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id = Column(Uuid, ForeignKey("leads.id"), nullable=False)
    tenant_id = Column(String(64), nullable=False)

    from_status = Column(String(50), nullable=False)
    event = Column(String(100), nullable=False)
    to_status = Column(String(50), nullable=False)

    payload = Column(JSON, nullable=True)

    occurred_at = Column(UTCDateTime, default=utcnow, nullable=False)

    lead = relationship("Lead", back_populates="events")

    __table_args__ = (
        Index("ix_lead_events_tenant_lead", "tenant_id", "lead_id"),
    )


class JobExecution(Base):
    """
    Ledger row for one run of a recurring job.
    job_key is unique so a second run for the same key is rejected by the
    database itself.
    """
    __tablename__ = "job_executions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=True)

    job_type = Column(String(100), nullable=False)
    job_key = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="running")

    started_at = Column(UTCDateTime, nullable=False, default=utcnow)
    completed_at = Column(UTCDateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    leads_processed = Column(Integer, nullable=False, default=0)
    leads_created = Column(Integer, nullable=False, default=0)
    invitations_sent = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    error_stack = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("job_key", name="uq_job_executions_job_key"),
        Index("ix_job_executions_type_started", "job_type", "started_at"),
        Index("ix_job_executions_status", "status"),
    )
