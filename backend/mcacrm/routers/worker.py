"""
Routes for the external workflow worker.

The worker claims jobs here, does the work, then reports through the
FCS / lender callbacks, which settle the job.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
import logging

from mcacrm.database import get_db
from mcacrm.exceptions import ValidationFailed
from mcacrm.services.agent_service import AgentService
from mcacrm.services.job_queue import JobQueueService
from mcacrm.services.lead_service import LeadService
from mcacrm.services.messaging import MessagingService
from mcacrm.services.normalization import normalization_service
from mcacrm.websocket import broadcast, emit_to_conversation

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/worker", tags=["Worker"])

# ============================================================================
# SCHEMAS
# ============================================================================

class JobUpdate(BaseModel):
    status: str
    result_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None


class BatchUpdateRequest(BaseModel):
    conversation_ids: Optional[List[Any]] = None
    updates: Dict[str, Any] = {}


class AgentActionRequest(BaseModel):
    conversation_id: str
    action_type: Optional[str] = None
    action_details: Optional[Dict[str, Any]] = None
    performed_by: Optional[str] = None


class EmitRequest(BaseModel):
    event: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    conversation_id: Optional[str] = None

# ============================================================================
# JOBS
# ============================================================================

@router.get("/jobs")
async def list_jobs(
    conversation_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    """Recent jobs, newest first, optionally for one conversation."""
    conversation_uuid = None
    if conversation_id:
        conversation_uuid = (await LeadService(db).get_conversation(conversation_id)).id
    jobs = await JobQueueService(db).list_jobs(conversation_uuid, status=status, limit=limit)
    return {"success": True, "jobs": jobs}


@router.get("/jobs/next")
async def next_job(job_type: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    """Claim the oldest queued job, or return job=None when the queue is empty."""
    job = await JobQueueService(db).claim_next(job_type)
    return {"success": True, "job": job.to_dict() if job else None}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await JobQueueService(db).get_job(job_id)
    return {"success": True, "job": job.to_dict()}


@router.post("/jobs/{job_id}/update")
async def update_job(job_id: str, update: JobUpdate, db: AsyncSession = Depends(get_db)):
    job = await JobQueueService(db).update_job(
        job_id, update.status, result_data=update.result_data, error_message=update.error_message
    )
    return {"success": True, "job": job.to_dict()}

# ============================================================================
# LOOKUPS
# ============================================================================

@router.get("/conversations/by-phone/{phone}")
async def conversation_by_phone(phone: str, db: AsyncSession = Depends(get_db)):
    key = normalization_service.phone_match_key(phone)
    conversation = await MessagingService(db).find_by_phone_suffix(key) if key else None
    if conversation is None:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return await LeadService(db).get_lead(conversation.id)


@router.get("/conversations/{conversation_id}/context")
async def conversation_context(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Lead record plus recent messages, documents, FCS result and qualified lenders."""
    context = await AgentService(db).conversation_context(conversation_id)
    return {"success": True, "context": context}

# ============================================================================
# BATCH OPERATIONS
# ============================================================================

@router.get("/leads/pending")
async def pending_leads(
    state: Optional[str] = None,
    limit: int = Query(30, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    result = await AgentService(db).pending_leads(state, limit=limit, offset=offset)
    return {"success": True, **result}


@router.post("/batch-update")
async def batch_update(request: BatchUpdateRequest, db: AsyncSession = Depends(get_db)):
    result = await AgentService(db).batch_update(request.conversation_ids, request.updates)
    return {"success": True, **result}

# ============================================================================
# AGENT ACTIONS
# ============================================================================

@router.post("/agent-actions/log")
async def log_agent_action(request: AgentActionRequest, db: AsyncSession = Depends(get_db)):
    action = await AgentService(db).log_action(
        request.conversation_id,
        request.action_type,
        action_details=request.action_details,
        performed_by=request.performed_by,
    )
    return {"success": True, "action": action}


@router.get("/agent-actions/{conversation_id}")
async def list_agent_actions(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    actions = await AgentService(db).list_actions(conversation_id, limit=limit)
    return {"success": True, "actions": actions, "total": len(actions)}

# ============================================================================
# WEBSOCKET & STATS
# ============================================================================

@router.post("/websocket/emit")
async def websocket_emit(request: EmitRequest):
    """Relay an event to the UI, to one conversation room or to everyone."""
    if not request.event:
        raise ValidationFailed("event name is required", fields=["event"])
    if request.conversation_id:
        await emit_to_conversation(request.event, request.conversation_id, request.data or {})
    else:
        await broadcast(request.event, request.data or {})
    logger.info(f"Relayed websocket event {request.event}")
    return {"success": True, "event": request.event, "emitted": True}


@router.get("/stats/conversations")
async def conversation_stats(db: AsyncSession = Depends(get_db)):
    return {"success": True, "stats": await AgentService(db).conversation_stats()}
