"""SMS routes: carrier webhooks and direct sends."""
from fastapi import APIRouter, Depends, Form, Query
from fastapi.responses import Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from pydantic import BaseModel
import logging

from mcacrm.database import get_db
from mcacrm.exceptions import CRMError
from mcacrm.services.messaging import MessagingService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/messages", tags=["Messages"])

EMPTY_TWIML = "<Response></Response>"

# ============================================================================
# SCHEMAS
# ============================================================================

class SendRequest(BaseModel):
    conversation_id: str
    content: str
    message_type: str = "sms"
    sent_by: str = "user"

# ============================================================================
# CARRIER WEBHOOKS
# ============================================================================

@router.post("/webhook/receive")
async def receive_sms(
    From: str = Form(""),
    To: Optional[str] = Form(None),
    Body: str = Form(""),
    MessageSid: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Inbound SMS from the carrier.

    Always answers 200 with empty TwiML so the carrier does not retry;
    unmatched senders and storage failures are only logged.
    """
    try:
        await MessagingService(db).receive_inbound(From, To, Body, MessageSid)
    except (CRMError, SQLAlchemyError) as e:
        logger.error(f"Inbound SMS {MessageSid} from {From} not stored: {e}")
    return Response(content=EMPTY_TWIML, media_type="text/xml")


@router.post("/webhook/status")
async def sms_status(
    MessageSid: str = Form(...),
    MessageStatus: str = Form(...),
    db: AsyncSession = Depends(get_db),
):
    """Delivery status callback."""
    updated = await MessagingService(db).update_status(MessageSid, MessageStatus)
    if not updated:
        logger.warning(f"Status {MessageStatus} for unknown message {MessageSid}")
    return Response(content=EMPTY_TWIML, media_type="text/xml")

# ============================================================================
# SEND / LIST
# ============================================================================

@router.post("/send")
async def send_sms(request: SendRequest, db: AsyncSession = Depends(get_db)):
    result = await MessagingService(db).send_message(
        request.conversation_id,
        request.content,
        message_type=request.message_type,
        sent_by=request.sent_by,
    )
    return {"success": result.success, "message": result.message, "error": result.error}


@router.get("/{conversation_id}")
async def list_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    messages = await MessagingService(db).list_messages(conversation_id, limit=limit, offset=offset)
    return {"success": True, "messages": messages}


@router.get("/{conversation_id}/count")
async def count_messages(conversation_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "count": await MessagingService(db).count_messages(conversation_id)}
