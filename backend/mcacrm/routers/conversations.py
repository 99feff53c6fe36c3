"""
Conversation (lead) routes.

`{conversation_id}` accepts the durable UUID or the numeric display id.
"""
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
import logging

from mcacrm.database import AsyncSessionLocal, get_db
from mcacrm.exceptions import CRMError
from mcacrm.services.document_service import DocumentService
from mcacrm.services.fcs_service import FCSService
from mcacrm.services.lead_service import LeadService
from mcacrm.services.messaging import MessagingService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/conversations", tags=["Conversations"])

# ============================================================================
# SCHEMAS
# ============================================================================

class BulkDeleteRequest(BaseModel):
    conversationIds: List[str]

class SendMessageRequest(BaseModel):
    content: str
    direction: str = "outbound"
    message_type: str = "sms"
    sent_by: str = "user"

class StateUpdate(BaseModel):
    state: str

class StepUpdate(BaseModel):
    current_step: str

class PriorityUpdate(BaseModel):
    priority: int

class MarkDeadRequest(BaseModel):
    reason: Optional[str] = None

class FCSGenerateRequest(BaseModel):
    businessName: Optional[str] = None

# ============================================================================
# LEADS
# ============================================================================

@router.get("")
async def list_conversations(
    state: Optional[str] = None,
    priority: Optional[int] = None,
    limit: int = Query(50, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """List leads, newest first."""
    return await LeadService(db).list_leads(state=state, priority=priority, limit=limit, offset=offset)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    fields: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
):
    conversation = await LeadService(db).create_lead(fields)
    return {"success": True, "conversation": conversation}


@router.post("/bulk-delete")
async def bulk_delete_conversations(
    request: BulkDeleteRequest,
    db: AsyncSession = Depends(get_db),
):
    """Delete conversations and all their dependent rows."""
    result = await LeadService(db).bulk_delete(request.conversationIds)
    return {
        "success": True,
        "deletedCount": result["deleted_count"],
        "deletedIds": result["deleted_ids"],
        "failedTables": result["failed_tables"],
    }


@router.get("/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    view: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """Lead with its details. `?view=external` returns external field names."""
    return await LeadService(db).get_lead(conversation_id, external_names=(view == "external"))


@router.put("/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    fields: Dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
):
    conversation = await LeadService(db).update_lead(conversation_id, fields)
    return {"success": True, "conversation": conversation}

# ============================================================================
# PIPELINE MARKERS
# ============================================================================

@router.post("/{conversation_id}/state")
async def update_state(conversation_id: str, request: StateUpdate, db: AsyncSession = Depends(get_db)):
    return {"success": True, "conversation": await LeadService(db).set_state(conversation_id, request.state)}


@router.post("/{conversation_id}/step")
async def update_step(conversation_id: str, request: StepUpdate, db: AsyncSession = Depends(get_db)):
    return {
        "success": True,
        "conversation": await LeadService(db).set_current_step(conversation_id, request.current_step),
    }


@router.post("/{conversation_id}/priority")
async def update_priority(conversation_id: str, request: PriorityUpdate, db: AsyncSession = Depends(get_db)):
    return {"success": True, "conversation": await LeadService(db).set_priority(conversation_id, request.priority)}


@router.post("/{conversation_id}/mark-dead")
async def mark_dead(conversation_id: str, request: MarkDeadRequest, db: AsyncSession = Depends(get_db)):
    return {"success": True, "conversation": await LeadService(db).mark_dead(conversation_id, request.reason)}

# ============================================================================
# MESSAGES & DOCUMENTS
# ============================================================================

@router.get("/{conversation_id}/messages")
async def list_conversation_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await MessagingService(db).list_messages(conversation_id, limit=limit, offset=offset)


@router.post("/{conversation_id}/messages")
async def send_conversation_message(
    conversation_id: str,
    request: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Record a message and, for outbound SMS, dispatch it.
    A carrier failure is reported in the body; the row is kept as `failed`.
    """
    result = await MessagingService(db).send_message(
        conversation_id,
        request.content,
        direction=request.direction,
        message_type=request.message_type,
        sent_by=request.sent_by,
    )
    return {"success": result.success, "message": result.message, "error": result.error}


@router.get("/{conversation_id}/messages/count")
async def count_conversation_messages(conversation_id: str, db: AsyncSession = Depends(get_db)):
    return {"count": await MessagingService(db).count_messages(conversation_id)}


@router.get("/{conversation_id}/documents")
async def list_conversation_documents(conversation_id: str, db: AsyncSession = Depends(get_db)):
    documents = await DocumentService(db).list_documents(conversation_id)
    return {"success": True, "documents": documents}

# ============================================================================
# FCS (IN-PROCESS GENERATION)
# ============================================================================

async def run_fcs_generation(conversation_id: str, business_name: Optional[str]):
    """Background task; owns its session since the request's is closed by then."""
    async with AsyncSessionLocal() as db:
        try:
            await FCSService(db).generate_and_save_fcs(conversation_id, business_name)
        except CRMError as e:
            # already recorded on the analysis row
            logger.error(f"FCS generation for {conversation_id} failed: {e.message}")


@router.post("/{conversation_id}/fcs/generate", status_code=status.HTTP_202_ACCEPTED)
async def generate_fcs(
    conversation_id: str,
    background_tasks: BackgroundTasks,
    request: Optional[FCSGenerateRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Start report generation; poll /fcs/status for the outcome."""
    conversation = await LeadService(db).get_conversation(conversation_id)
    business_name = (request.businessName if request else None) or conversation.business_name
    background_tasks.add_task(run_fcs_generation, str(conversation.id), business_name)
    return {"success": True, "status": "processing", "conversation_id": str(conversation.id)}


@router.get("/{conversation_id}/fcs/status")
async def fcs_status(conversation_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, **await FCSService(db).get_status(conversation_id)}


@router.get("/{conversation_id}/fcs")
async def get_fcs(conversation_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "analysis": await FCSService(db).get_analysis(conversation_id)}
