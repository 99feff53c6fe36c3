# backend/mcacrm/services/messaging.py
"""
Messaging gateway: records messages, dispatches outbound SMS and routes
inbound carrier webhooks back to a conversation.

Send failures are data, not exceptions: the message row is left `failed`
and the caller gets an unsuccessful SendResult.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.models import Conversation, Message
from mcacrm.services.lead_service import LeadService
from mcacrm.services.normalization import normalization_service
from mcacrm.services.sms_client import TwilioSMSClient, sms_client as default_sms_client
from mcacrm.websocket import broadcast, emit_to_conversation

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    message: Dict[str, Any]
    success: bool
    error: Optional[str] = None


class MessagingService:
    """Send, receive and list conversation messages."""

    def __init__(self, db: AsyncSession, sms: Optional[TwilioSMSClient] = None):
        self.db = db
        self.sms = sms or default_sms_client
        self.leads = LeadService(db)

    async def send_message(
        self,
        conversation_ref,
        content: str,
        direction: str = "outbound",
        message_type: str = "sms",
        sent_by: str = "user",
    ) -> SendResult:
        conversation = await self.leads.get_conversation(conversation_ref)

        message = Message(
            conversation_id=conversation.id,
            direction=direction,
            content=content,
            message_type=message_type,
            sent_by=sent_by,
            status="pending",
        )
        self.db.add(message)
        await self.db.flush()

        success, error = True, None
        if direction == "outbound" and message_type == "sms":
            result = await self.sms.send(conversation.lead_phone, content)
            if result.success:
                message.status = "sent"
                message.external_id = result.external_id
            else:
                success, error = False, result.error
                message.status = "failed"
                message.error_message = result.error
                logger.warning(f"Message {message.id} to {conversation.id} failed: {result.error}")
        elif direction == "outbound":
            # non-SMS channels are recorded only
            message.status = "sent"

        await self.leads.touch_activity(conversation.id)
        await self.db.commit()
        await self.db.refresh(message)

        payload = message.to_dict()
        await emit_to_conversation("new_message", conversation.id, {
            "conversation_id": str(conversation.id),
            "message": payload,
        })
        return SendResult(message=payload, success=success, error=error)

    async def receive_inbound(
        self,
        from_number: str,
        to_number: Optional[str],
        body: str,
        external_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        """
        Attach an inbound SMS to the conversation whose phone ends with the
        sender's digits. Returns None when nothing matches.
        """
        key = normalization_service.phone_match_key(from_number)
        if not key:
            logger.warning(f"Inbound SMS with unusable sender {from_number!r} dropped")
            return None

        conversation = await self.find_by_phone_suffix(key)
        if conversation is None:
            logger.warning(f"No conversation found for inbound SMS from {from_number}")
            return None

        message = Message(
            conversation_id=conversation.id,
            direction="inbound",
            content=body or "",
            message_type="sms",
            sent_by="lead",
            status="delivered",
            external_id=external_id,
        )
        self.db.add(message)
        await self.leads.touch_activity(conversation.id)
        await self.db.commit()
        await self.db.refresh(message)

        logger.info(f"Inbound SMS {external_id} attached to conversation {conversation.id}")

        payload = message.to_dict()
        # Global: an anonymous webhook has no room to target
        await broadcast("new_message", {
            "conversation_id": str(conversation.id),
            "business_name": conversation.business_name,
            "message": payload,
        })
        return payload

    async def find_by_phone_suffix(self, digits: str) -> Optional[Conversation]:
        """Most recently active conversation whose phone digits end with `digits`."""
        stored_digits = func.regexp_replace(Conversation.lead_phone, r"\D", "", "g")
        result = await self.db.execute(
            select(Conversation)
            .where(stored_digits.like(f"%{digits}"))
            .order_by(Conversation.last_activity.desc().nulls_last())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_messages(self, conversation_ref, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        conversation = await self.leads.get_conversation(conversation_ref)
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation.id)
            .order_by(Message.timestamp.asc())
            .limit(limit)
            .offset(offset)
        )
        return [m.to_dict() for m in result.scalars().all()]

    async def count_messages(self, conversation_ref) -> int:
        conversation = await self.leads.get_conversation(conversation_ref)
        result = await self.db.execute(
            select(func.count(Message.id)).where(Message.conversation_id == conversation.id)
        )
        return result.scalar_one()

    async def update_status(self, external_id: str, status: str) -> int:
        """Carrier delivery-status callback."""
        result = await self.db.execute(
            update(Message).where(Message.external_id == external_id).values(status=status)
        )
        await self.db.commit()
        return result.rowcount
