# backend/mcacrm/services/agent_service.py
"""
Read models and bulk writes for the external workflow agent.

The agent works a queue of leads: it pulls a full conversation context,
lists leads waiting on it, moves many leads at once through a fixed set of
pipeline columns, and records what it did in agent_actions.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import extract, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.exceptions import ValidationFailed
from mcacrm.models import AgentAction, Conversation, Document, FCSResult, LenderMatch, Message
from mcacrm.services.field_mapping import ALIAS_MAP, convert_value
from mcacrm.services.lead_service import LeadState, LeadService

logger = logging.getLogger(__name__)

CONTEXT_MESSAGE_LIMIT = 20

# Columns the agent may set in bulk; everything else is refused
BATCH_UPDATE_COLUMNS = ("state", "current_step", "priority", "lead_source")

STATS_STATES = [
    LeadState.NEW, LeadState.ACTIVE, LeadState.QUALIFIED, LeadState.FUNDED, LeadState.DEAD,
]


def _minutes_since(column):
    return extract("epoch", func.now() - column) / 60


class AgentService:
    """Conversation context, pending leads, batch updates and the action log."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.leads = LeadService(db)

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def conversation_context(self, conversation_ref) -> Dict[str, Any]:
        """
        Everything the agent needs to act on one lead: the joined lead record,
        the last messages (oldest first), documents, the latest FCS result and
        the qualified lender matches.
        """
        lead = await self.leads.get_lead(conversation_ref)
        conversation_id = uuid.UUID(lead["id"])

        messages = (await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.desc())
            .limit(CONTEXT_MESSAGE_LIMIT)
        )).scalars().all()
        messages = list(reversed(messages))

        documents = (await self.db.execute(
            select(Document)
            .where(Document.conversation_id == conversation_id)
            .order_by(Document.created_at.asc())
        )).scalars().all()

        fcs_result = (await self.db.execute(
            select(FCSResult)
            .where(FCSResult.conversation_id == conversation_id)
            .order_by(FCSResult.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()

        lenders = (await self.db.execute(
            select(LenderMatch)
            .where(LenderMatch.conversation_id == conversation_id, LenderMatch.qualified.is_(True))
            .order_by(LenderMatch.tier.asc().nulls_last(), LenderMatch.match_score.desc().nulls_last())
        )).scalars().all()

        logger.info(
            f"Context for {lead.get('business_name') or 'Unknown'}: "
            f"{len(messages)} messages, {len(documents)} documents"
        )
        return {
            "conversation": lead,
            "messages": [m.to_dict() for m in messages],
            "documents": [d.to_dict() for d in documents],
            "fcs_results": fcs_result.to_dict() if fcs_result is not None else None,
            "qualified_lenders": [m.to_dict() for m in lenders],
            "summary": {
                "total_messages": len(messages),
                "total_documents": len(documents),
                "has_fcs_results": fcs_result is not None,
                "qualified_lenders_count": len(lenders),
            },
        }

    # ------------------------------------------------------------------
    # Queue views
    # ------------------------------------------------------------------

    async def pending_leads(self, state: Optional[str] = None, limit: int = 30,
                            offset: int = 0) -> Dict[str, Any]:
        """Leads ordered by priority then recency, each with its last message."""
        last_message = (
            select(Message.content)
            .where(Message.conversation_id == Conversation.id)
            .order_by(Message.timestamp.desc())
            .limit(1)
            .correlate(Conversation)
            .scalar_subquery()
        )
        stmt = select(
            Conversation,
            _minutes_since(Conversation.last_activity).label("minutes_since_last_activity"),
            last_message.label("last_message"),
        )
        count_stmt = select(func.count(Conversation.id))
        if state:
            stmt = stmt.where(Conversation.state == state)
            count_stmt = count_stmt.where(Conversation.state == state)
        stmt = (
            stmt.order_by(Conversation.priority.desc(), Conversation.last_activity.desc().nulls_last())
            .limit(limit)
            .offset(offset)
        )

        rows = (await self.db.execute(stmt)).all()
        total = (await self.db.execute(count_stmt)).scalar() or 0

        leads = []
        for conversation, minutes, message in rows:
            leads.append({
                "conversation_id": str(conversation.id),
                "display_id": conversation.display_id,
                "business_name": conversation.business_name,
                "phone": conversation.lead_phone,
                "state": conversation.state,
                "current_step": conversation.current_step,
                "priority": conversation.priority,
                "last_activity": conversation.last_activity.isoformat() if conversation.last_activity else None,
                "minutes_since_last_activity": float(minutes) if minutes is not None else None,
                "last_message": message,
            })
        return {"leads": leads, "total": total}

    async def conversation_stats(self) -> Dict[str, Any]:
        columns = [func.count(Conversation.id).label("total_conversations")]
        for lead_state in STATS_STATES:
            columns.append(
                func.count(Conversation.id)
                .filter(Conversation.state == lead_state.value)
                .label(f"{lead_state.value.lower()}_count")
            )
        columns.append(
            func.avg(_minutes_since(Conversation.last_activity)).label("avg_minutes_since_last_activity")
        )

        row = (await self.db.execute(select(*columns))).first()
        stats = dict(row._mapping)
        average = stats["avg_minutes_since_last_activity"]
        stats["avg_minutes_since_last_activity"] = float(average) if average is not None else None
        return stats

    # ------------------------------------------------------------------
    # Bulk writes
    # ------------------------------------------------------------------

    async def batch_update(self, conversation_ids: Any, updates: Any) -> Dict[str, Any]:
        """Set allowlisted pipeline columns on many conversations at once."""
        if not isinstance(conversation_ids, list) or not conversation_ids:
            raise ValidationFailed("conversation_ids must be a non-empty array", fields=["conversation_ids"])
        if not isinstance(updates, dict):
            raise ValidationFailed("updates must be an object", fields=["updates"])

        ids = []
        for raw in conversation_ids:
            try:
                ids.append(uuid.UUID(str(raw)))
            except ValueError:
                raise ValidationFailed(f"Invalid conversation id: {raw}", fields=["conversation_ids"])

        values: Dict[str, Any] = {}
        blocked = []
        for column, raw in updates.items():
            if column not in BATCH_UPDATE_COLUMNS:
                blocked.append(column)
                continue
            try:
                values[column] = convert_value(ALIAS_MAP[column], raw)
            except ValueError as e:
                raise ValidationFailed(f"Invalid value for {column}: {e}", fields=[column])
        if blocked:
            logger.warning(f"Batch update refused columns: {', '.join(blocked)}")
        if not values:
            raise ValidationFailed("No valid update fields provided", fields=blocked)

        result = await self.db.execute(
            update(Conversation)
            .where(Conversation.id.in_(ids))
            .values(**values, last_activity=func.now(), updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        logger.info(f"Batch update: {result.rowcount} of {len(ids)} conversations updated")
        return {
            "updated_count": result.rowcount,
            "conversation_ids": [str(i) for i in ids],
            "updated_fields": sorted(values),
            "blocked_fields": blocked,
        }

    # ------------------------------------------------------------------
    # Action log
    # ------------------------------------------------------------------

    async def log_action(self, conversation_ref, action_type: Optional[str],
                         action_details: Optional[Dict[str, Any]] = None,
                         performed_by: Optional[str] = None) -> Dict[str, Any]:
        if not action_type:
            raise ValidationFailed("action_type is required", fields=["action_type"])
        conversation = await self.leads.get_conversation(conversation_ref)

        action = AgentAction(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            action_type=action_type,
            action_details=action_details or {},
            performed_by=performed_by or "workflow_agent",
        )
        self.db.add(action)
        await self.db.commit()
        await self.db.refresh(action)
        logger.info(f"Agent action {action_type} logged for {conversation.id}")
        return action.to_dict()

    async def list_actions(self, conversation_ref, limit: int = 50) -> List[Dict[str, Any]]:
        """Newest first."""
        conversation = await self.leads.get_conversation(conversation_ref)
        result = await self.db.execute(
            select(AgentAction)
            .where(AgentAction.conversation_id == conversation.id)
            .order_by(AgentAction.timestamp.desc())
            .limit(limit)
        )
        return [a.to_dict() for a in result.scalars().all()]
