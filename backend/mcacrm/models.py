# backend/mcacrm/models.py
"""
SQLAlchemy ORM models for the MCA lead pipeline.

Foreign keys cascade on delete, but no ORM relationships are declared:
services join explicitly so nothing lazy-loads inside an async session.
"""

from sqlalchemy import (
    Column, String, Boolean, Integer, Numeric, Text, Date, Index, Sequence,
    TIMESTAMP, ForeignKey
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.sql import func
from mcacrm.database import Base
from datetime import date, datetime
from decimal import Decimal
import uuid


class SerializeMixin:
    """Column-driven to_dict for API responses."""

    def to_dict(self, exclude=()):
        data = {}
        for column in self.__table__.columns:
            if column.name in exclude:
                continue
            # column.key is the mapped attribute (meta -> "metadata")
            data[column.name] = _json_value(getattr(self, column.key))
        return data


def _json_value(value):
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


# ============================================================================
# CONVERSATIONS (LEADS)
# ============================================================================

conversation_display_id_seq = Sequence("conversation_display_id_seq", start=1000)


class Conversation(SerializeMixin, Base):
    """A lead moving through the brokering pipeline."""
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    display_id = Column(
        Integer,
        conversation_display_id_seq,
        server_default=conversation_display_id_seq.next_value(),
        unique=True,
        index=True,
    )

    # Business
    business_name = Column(String(255))
    dba_name = Column(String(255))
    lead_phone = Column(String(50), unique=True, index=True)
    cell_phone = Column(String(50))
    email = Column(String(255))
    address = Column(String(255))
    city = Column(String(100))
    us_state = Column(String(50))
    zip = Column(String(20))
    entity_type = Column(String(100))
    lead_source = Column(String(100))
    notes = Column(Text)

    # Primary owner
    first_name = Column(String(100))
    last_name = Column(String(100))
    owner_email = Column(String(255))
    ownership_percent = Column(Numeric(5, 2))
    owner_home_address = Column(String(255))
    owner_home_address2 = Column(String(255))
    owner_home_city = Column(String(100))
    owner_home_state = Column(String(50))
    owner_home_zip = Column(String(20))
    owner_home_country = Column(String(100))

    # Second owner
    owner2_first_name = Column(String(100))
    owner2_last_name = Column(String(100))
    owner2_email = Column(String(255))
    owner2_phone = Column(String(50))
    owner2_ownership_percent = Column(Numeric(5, 2))
    owner2_address = Column(String(255))
    owner2_city = Column(String(100))
    owner2_state = Column(String(50))
    owner2_zip = Column(String(20))
    owner2_ssn = Column(String(20))
    owner2_dob = Column(Date)

    # Pipeline
    state = Column(String(50), nullable=False, default="NEW", index=True)
    current_step = Column(String(100))
    priority = Column(Integer, nullable=False, default=0)
    meta = Column("metadata", JSONB, default=dict)

    # Financial profile used to gate FCS
    monthly_revenue = Column(Numeric(14, 2))
    time_in_business_months = Column(Integer)
    credit_score = Column(Integer)

    csv_import_id = Column(UUID(as_uuid=True), ForeignKey("csv_imports.id", ondelete="SET NULL"), index=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())
    last_activity = Column(TIMESTAMP(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<Conversation(id={self.id}, display_id={self.display_id}, business_name='{self.business_name}')>"


class LeadDetails(SerializeMixin, Base):
    """Cold fields of a conversation; one row per conversation, upserted."""
    __tablename__ = "lead_details"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    business_type = Column(String(255))
    annual_revenue = Column(Numeric(14, 2))
    business_start_date = Column(Date)
    funding_amount = Column(Numeric(14, 2))
    factor_rate = Column(Numeric(6, 4))
    term_months = Column(Integer)
    campaign = Column(String(255))
    date_of_birth = Column(Date)
    tax_id = Column(String(20))
    ssn = Column(String(20))
    funding_date = Column(Date)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


# ============================================================================
# MESSAGES & DOCUMENTS
# ============================================================================

class Message(SerializeMixin, Base):
    """An SMS (or other channel) message to or from a lead."""
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    direction = Column(String(20), nullable=False)  # inbound | outbound
    content = Column(Text, nullable=False)
    message_type = Column(String(20), nullable=False, default="sms")
    sent_by = Column(String(50))
    status = Column(String(20), nullable=False, default="pending")
    external_id = Column(String(100), index=True)
    error_message = Column(Text)
    timestamp = Column(TIMESTAMP(timezone=True), server_default=func.now(), index=True)


class Document(SerializeMixin, Base):
    """Metadata for an uploaded file; bytes live in object storage."""
    __tablename__ = "documents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    filename = Column(String(500), nullable=False)
    original_filename = Column(String(500), nullable=False)
    file_size = Column(Integer)
    mime_type = Column(String(100))
    file_extension = Column(String(20))
    document_type = Column(String(100), default="Other")
    notes = Column(Text)
    s3_bucket = Column(String(255))
    s3_key = Column(String(1000))
    s3_url = Column(String(2000))
    ai_analysis = Column(JSONB)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


# ============================================================================
# FCS (FINANCIAL ANALYSIS)
# ============================================================================

class FCSResult(SerializeMixin, Base):
    """Worker-posted analysis result; history is kept."""
    __tablename__ = "fcs_results"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    max_funding_amount = Column(Numeric(14, 2))
    recommended_term_months = Column(Integer)
    estimated_payment = Column(Numeric(14, 2))
    factor_rate = Column(Numeric(6, 4))
    risk_tier = Column(String(10), default="C")
    approval_probability = Column(Numeric(4, 3), default=0.5)
    analysis_notes = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class FCSAnalysis(SerializeMixin, Base):
    """The generated FCS report; one row per conversation, latest wins."""
    __tablename__ = "fcs_analyses"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    extracted_business_name = Column(String(255))
    statement_count = Column(Integer, default=0)
    fcs_report = Column(Text)
    average_deposits = Column(Numeric(14, 2))
    average_revenue = Column(Numeric(14, 2))
    total_negative_days = Column(Integer)
    average_negative_days = Column(Numeric(8, 2))
    state = Column(String(2))
    industry = Column(String(255))
    position_count = Column(Integer)
    status = Column(String(20), nullable=False, default="processing")
    error_message = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    completed_at = Column(TIMESTAMP(timezone=True))


# ============================================================================
# LENDERS
# ============================================================================

class Lender(SerializeMixin, Base):
    """Master lender roster."""
    __tablename__ = "lenders"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50))
    company = Column(String(255))
    min_amount = Column(Numeric(14, 2), default=0)
    max_amount = Column(Numeric(14, 2))
    industries = Column(JSONB, default=list)
    states = Column(JSONB, default=list)
    credit_score_min = Column(Integer)
    time_in_business_min = Column(Integer)
    notes = Column(Text)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class LenderMatch(SerializeMixin, Base):
    """One lender's verdict for a conversation; the set is replaced per run."""
    __tablename__ = "lender_matches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    lender_id = Column(UUID(as_uuid=True))
    lender_name = Column(String(255), nullable=False)
    qualified = Column(Boolean, nullable=False, default=False)
    tier = Column(Integer)
    position = Column(Integer)
    match_score = Column(Numeric(5, 2))
    max_amount = Column(Numeric(14, 2))
    factor_rate = Column(Numeric(6, 4))
    term_months = Column(Integer)
    is_preferred = Column(Boolean, default=False)
    blocking_reason = Column(Text)
    requirements = Column(JSONB, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


# ============================================================================
# JOB QUEUE
# ============================================================================

class JobQueue(SerializeMixin, Base):
    """Async work item handed to the external workflow worker."""
    __tablename__ = "job_queue"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_type = Column(String(50), nullable=False)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=True,
    )
    input_data = Column(JSONB, default=dict)
    status = Column(String(20), nullable=False, default="queued")
    result_data = Column(JSONB)
    error_message = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    started_at = Column(TIMESTAMP(timezone=True))
    completed_at = Column(TIMESTAMP(timezone=True))
    failed_at = Column(TIMESTAMP(timezone=True))
    last_updated = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_job_queue_status_created", "status", "created_at"),
        Index("idx_job_queue_conversation_type", "conversation_id", "job_type", "created_at"),
    )


# ============================================================================
# CSV IMPORT & AI CHAT
# ============================================================================

class CsvImport(SerializeMixin, Base):
    """One uploaded CSV file and its import outcome."""
    __tablename__ = "csv_imports"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    filename = Column(String(500), nullable=False)
    original_filename = Column(String(500))
    status = Column(String(20), nullable=False, default="processing")
    total_rows = Column(Integer, default=0)
    imported_rows = Column(Integer, default=0)
    error_rows = Column(Integer, default=0)
    errors = Column(JSONB, default=list)
    column_mapping = Column(JSONB, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    completed_at = Column(TIMESTAMP(timezone=True))


class AIChatMessage(SerializeMixin, Base):
    """A persisted turn of the assistant chat."""
    __tablename__ = "ai_chat_messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    role = Column(String(20), nullable=False)  # user | assistant
    content = Column(Text, nullable=False)
    ai_model = Column(String(100))
    ai_tokens_used = Column(Integer)
    ai_response_time_ms = Column(Integer)
    ai_context_used = Column(Boolean, default=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


class AgentAction(SerializeMixin, Base):
    """Audit trail of what the workflow worker did to a conversation."""
    __tablename__ = "agent_actions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    action_type = Column(String(100), nullable=False)
    action_details = Column(JSONB, default=dict)
    performed_by = Column(String(100), nullable=False, default="workflow_agent")
    timestamp = Column(TIMESTAMP(timezone=True), server_default=func.now(), index=True)
