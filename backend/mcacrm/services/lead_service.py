# backend/mcacrm/services/lead_service.py
"""
Lead record manager.

CRUD over conversations + lead_details. Updates go through the declarative
field schema in field_mapping; state changes are not validated against a
transition table (any state may follow any other).
"""

import logging
import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, func, literal, select, text, update
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.exceptions import ConversationNotFound, FieldMappingError, ValidationFailed
from mcacrm.models import (
    AgentAction, AIChatMessage, Conversation, Document, FCSAnalysis, FCSResult, JobQueue,
    LeadDetails, LenderMatch, Message
)
from mcacrm.services.field_mapping import Table, normalize_fields, to_external

logger = logging.getLogger(__name__)


class LeadState(str, Enum):
    """Observed workflow states. Informational: any string is accepted."""
    NEW = "NEW"
    ACTIVE = "ACTIVE"
    INTERESTED = "INTERESTED"
    FCS_RUNNING = "FCS_RUNNING"
    COLLECTING_INFO = "COLLECTING_INFO"
    QUALIFIED = "QUALIFIED"
    SUBMITTED = "SUBMITTED"
    FUNDED = "FUNDED"
    DEAD = "DEAD"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


# Dependent tables cleared by bulk delete, children first
DEPENDENT_MODELS = [
    Document,
    Message,
    LeadDetails,
    FCSResult,
    FCSAnalysis,
    LenderMatch,
    JobQueue,
    AIChatMessage,
    AgentAction,
]

# Fields of lead_details merged into the lead view
DETAIL_FIELDS = [
    "business_type", "annual_revenue", "business_start_date", "funding_amount",
    "factor_rate", "term_months", "campaign", "date_of_birth", "tax_id", "ssn",
    "funding_date",
]

_MISSING_COLUMN = re.compile(r'column "(?P<column>[^"]+)" of relation "(?P<table>[^"]+)" does not exist')
_CONSTRAINT_COLUMN = re.compile(r'column "(?P<column>[^"]+)"(?: of relation "(?P<table>[^"]+)")?')
_CONSTRAINT_KEY = re.compile(r"Key \((?P<column>[^)=]+)\)=")
_CONSTRAINT_NAME = re.compile(r'constraint "(?P<constraint>[^"]+)"')


def parse_conversation_ref(ref: Union[str, int, uuid.UUID]):
    """
    Purely numeric refs are display ids; everything else must be a UUID.

    Returns a (column, value) pair for a where clause.
    """
    if isinstance(ref, uuid.UUID):
        return Conversation.id, ref
    text_ref = str(ref).strip()
    if text_ref.isdigit():
        return Conversation.display_id, int(text_ref)
    try:
        return Conversation.id, uuid.UUID(text_ref)
    except ValueError:
        raise ValidationFailed(f"Invalid conversation id: {text_ref}", fields=["id"])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mapping_error_from(exc: DBAPIError) -> Optional[FieldMappingError]:
    """Turn 'column "x" of relation "y" does not exist' into a FieldMappingError."""
    match = _MISSING_COLUMN.search(str(exc.orig) if exc.orig is not None else str(exc))
    if not match:
        return None
    return FieldMappingError(
        f"Database column error: {match.group('column')} on {match.group('table')}",
        problematic_field=match.group("column"),
        problematic_table=match.group("table"),
    )


def constraint_error_from(exc: IntegrityError, table: Optional[str] = None) -> FieldMappingError:
    """
    Name the column and table behind a constraint violation.

    asyncpg exposes the server diagnostics on the driver exception; when they
    are absent the message text (`Key (col)=`, `column "col" of relation "t"`)
    is parsed instead.
    """
    orig = exc.orig
    diag = getattr(orig, "__cause__", None) or orig
    text = str(orig) if orig is not None else str(exc)
    detail = getattr(diag, "detail", None) or ""

    column = getattr(diag, "column_name", None)
    table = getattr(diag, "table_name", None) or table
    constraint = getattr(diag, "constraint_name", None)

    if not column:
        match = _CONSTRAINT_KEY.search(detail) or _CONSTRAINT_KEY.search(text)
        if match:
            column = match.group("column").strip()
    if not column:
        match = _CONSTRAINT_COLUMN.search(text)
        if match:
            column = match.group("column")
            table = match.group("table") or table
    if not constraint:
        match = _CONSTRAINT_NAME.search(text)
        if match:
            constraint = match.group("constraint")

    label = f" ({constraint})" if constraint else ""
    return FieldMappingError(
        f"Database constraint violation{label}: {column or 'unknown column'} on {table or 'unknown table'}",
        problematic_field=column,
        problematic_table=table,
    )


class LeadService:
    """Create, read, update and delete leads."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get_conversation(self, ref, for_update: bool = False) -> Conversation:
        column, value = parse_conversation_ref(ref)
        stmt = select(Conversation).where(column == value)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        conversation = result.scalar_one_or_none()
        if conversation is None:
            raise ConversationNotFound(ref)
        return conversation

    async def get_lead(self, ref, external_names: bool = False) -> Dict[str, Any]:
        """Conversation joined with its lead details."""
        column, value = parse_conversation_ref(ref)
        result = await self.db.execute(
            select(Conversation, LeadDetails)
            .outerjoin(LeadDetails, LeadDetails.conversation_id == Conversation.id)
            .where(column == value)
        )
        row = result.first()
        if row is None:
            raise ConversationNotFound(ref)

        conversation, details = row
        lead = conversation.to_dict()
        details_data = details.to_dict() if details is not None else {}
        for field in DETAIL_FIELDS:
            lead[field] = details_data.get(field)

        if external_names:
            conversation_part = {k: v for k, v in lead.items() if k not in DETAIL_FIELDS}
            details_part = {k: lead[k] for k in DETAIL_FIELDS}
            return {
                **to_external(Table.CONVERSATIONS, conversation_part),
                **to_external(Table.LEAD_DETAILS, details_part),
            }
        return lead

    async def list_leads(
        self,
        state: Optional[str] = None,
        priority: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        stmt = select(Conversation)
        if state:
            stmt = stmt.where(Conversation.state == state)
        if priority is not None:
            stmt = stmt.where(Conversation.priority == priority)
        stmt = stmt.order_by(Conversation.created_at.desc()).limit(limit).offset(offset)

        result = await self.db.execute(stmt)
        return [c.to_dict() for c in result.scalars().all()]

    # ------------------------------------------------------------------
    # Create / update
    # ------------------------------------------------------------------

    async def create_lead(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a NEW lead. Business name and phone are required."""
        normalized = normalize_fields(fields)
        values = dict(normalized.conversation)

        missing = [f for f in ("business_name", "lead_phone") if not values.get(f)]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(missing)}", fields=missing)

        values.pop("state", None)
        values.setdefault("current_step", "initial_contact")
        if values.get("priority") is None:
            values["priority"] = 0

        conversation = Conversation(id=uuid.uuid4(), state=LeadState.NEW.value, meta={}, **values)
        self.db.add(conversation)
        try:
            await self.db.flush()
            if normalized.lead_details:
                await self.upsert_lead_details(conversation.id, normalized.lead_details)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            if "lead_phone" in str(e.orig):
                raise ValidationFailed(
                    f"A conversation with phone {values['lead_phone']} already exists",
                    fields=["lead_phone"],
                ) from e
            raise

        logger.info(f"Created conversation {conversation.id} ({conversation.business_name})")
        return await self.get_lead(conversation.id)

    async def update_lead(self, ref, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a normalized partial update.

        With no resolvable fields the current record is returned unchanged.
        """
        conversation = await self.get_conversation(ref)
        normalized = normalize_fields(fields)

        if normalized.is_empty:
            logger.info(f"No mappable fields in update for {conversation.id}")
            return await self.get_lead(conversation.id)

        table = Conversation.__tablename__
        try:
            if normalized.conversation:
                await self.db.execute(
                    update(Conversation)
                    .where(Conversation.id == conversation.id)
                    .values(**normalized.conversation, updated_at=func.now())
                    .execution_options(synchronize_session=False)
                )
            if normalized.lead_details:
                table = LeadDetails.__tablename__
                await self.upsert_lead_details(conversation.id, normalized.lead_details)
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            mapping_error = constraint_error_from(e, table)
            logger.error(
                f"Constraint violation on {mapping_error.problematic_table}."
                f"{mapping_error.problematic_field}"
            )
            raise mapping_error from e
        except DBAPIError as e:
            await self.db.rollback()
            mapping_error = mapping_error_from(e)
            if mapping_error is not None:
                logger.error(
                    f"Field mapping error on {mapping_error.problematic_table}."
                    f"{mapping_error.problematic_field}"
                )
                raise mapping_error from e
            raise

        logger.info(
            f"Updated conversation {conversation.id}: "
            f"{len(normalized.conversation)} conversation fields, "
            f"{len(normalized.lead_details)} detail fields"
        )
        return await self.get_lead(conversation.id)

    async def upsert_lead_details(self, conversation_id: uuid.UUID, fields: Dict[str, Any]):
        """Insert or update the single lead_details row of a conversation."""
        stmt = pg_insert(LeadDetails).values(
            id=uuid.uuid4(), conversation_id=conversation_id, **fields
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[LeadDetails.conversation_id],
            set_={
                **{name: stmt.excluded[name] for name in fields},
                "updated_at": func.now(),
            },
        )
        await self.db.execute(stmt)

    # ------------------------------------------------------------------
    # Pipeline markers
    # ------------------------------------------------------------------

    async def set_fields(self, conversation_id: uuid.UUID, **values):
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(**values, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )

    async def touch_activity(self, conversation_id: uuid.UUID):
        await self.set_fields(conversation_id, last_activity=func.now())

    async def merge_metadata(self, conversation_id: uuid.UUID, patch: Dict[str, Any], **values):
        """Shallow-merge `patch` into the metadata JSON, optionally setting columns."""
        merged = func.coalesce(Conversation.meta, text("'{}'::jsonb")).op("||")(
            literal(patch, type_=JSONB)
        )
        await self.set_fields(conversation_id, meta=merged, **values)

    async def set_state(self, ref, state: str) -> Dict[str, Any]:
        conversation = await self.get_conversation(ref)
        await self.set_fields(conversation.id, state=state)
        await self.db.commit()
        logger.info(f"Conversation {conversation.id} state {conversation.state} -> {state}")
        return await self.get_lead(conversation.id)

    async def set_current_step(self, ref, step: str) -> Dict[str, Any]:
        conversation = await self.get_conversation(ref)
        await self.set_fields(conversation.id, current_step=step, last_activity=func.now())
        await self.db.commit()
        return await self.get_lead(conversation.id)

    async def set_priority(self, ref, priority: int) -> Dict[str, Any]:
        conversation = await self.get_conversation(ref)
        await self.set_fields(conversation.id, priority=int(priority))
        await self.db.commit()
        return await self.get_lead(conversation.id)

    async def mark_dead(self, ref, reason: Optional[str] = None) -> Dict[str, Any]:
        conversation = await self.get_conversation(ref)
        await self.merge_metadata(
            conversation.id,
            {"dead_reason": reason, "marked_dead_at": utcnow().isoformat()},
            state=LeadState.DEAD.value,
        )
        await self.db.commit()
        logger.info(f"Conversation {conversation.id} marked DEAD: {reason}")
        return await self.get_lead(conversation.id)

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def bulk_delete(self, conversation_ids: List[Any]) -> Dict[str, Any]:
        """
        Delete conversations and everything that references them.

        Each dependent table is cleared inside its own savepoint; a failure
        there is logged and the remaining tables are still processed.
        """
        ids = []
        for raw in conversation_ids:
            try:
                ids.append(raw if isinstance(raw, uuid.UUID) else uuid.UUID(str(raw)))
            except ValueError:
                logger.warning(f"Skipping invalid conversation id in bulk delete: {raw}")
        if not ids:
            raise ValidationFailed("No conversation IDs provided", fields=["conversationIds"])

        failed_tables = []
        for model in DEPENDENT_MODELS:
            try:
                async with self.db.begin_nested():
                    result = await self.db.execute(
                        delete(model).where(model.conversation_id.in_(ids))
                    )
                logger.info(f"Deleted {result.rowcount} rows from {model.__tablename__}")
            except SQLAlchemyError as e:
                failed_tables.append(model.__tablename__)
                logger.error(f"Bulk delete: failed to clear {model.__tablename__}: {e}")

        result = await self.db.execute(
            delete(Conversation).where(Conversation.id.in_(ids)).returning(Conversation.id)
        )
        deleted_ids = [str(row[0]) for row in result.all()]
        await self.db.commit()

        logger.info(f"Bulk deleted {len(deleted_ids)} conversations")
        return {
            "deleted_count": len(deleted_ids),
            "deleted_ids": deleted_ids,
            "failed_tables": failed_tables,
        }
