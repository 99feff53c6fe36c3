"""FCS queue trigger and worker-result routes."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from pydantic import BaseModel
import logging

from mcacrm.database import get_db
from mcacrm.services.fcs_service import FCSService
from mcacrm.services.job_queue import JobQueueService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/fcs", tags=["FCS"])

# ============================================================================
# SCHEMAS
# ============================================================================

class FCSResultPayload(BaseModel):
    conversation_id: str
    max_funding_amount: Optional[float] = None
    recommended_term_months: Optional[int] = None
    estimated_payment: Optional[float] = None
    factor_rate: Optional[float] = None
    risk_tier: Optional[str] = None
    approval_probability: Optional[float] = None
    analysis_notes: Optional[str] = None

# ============================================================================
# ROUTES
# ============================================================================

@router.post("/trigger/{conversation_id}")
async def trigger_fcs(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Queue an FCS analysis job; repeated triggers inside the window are skipped."""
    return await FCSService(db).trigger_fcs(conversation_id)


@router.get("/results/{conversation_id}")
async def latest_result(conversation_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "fcs_result": await FCSService(db).get_latest_result(conversation_id)}


@router.get("/results/{conversation_id}/history")
async def result_history(conversation_id: str, db: AsyncSession = Depends(get_db)):
    history = await FCSService(db).get_history(conversation_id)
    return {"success": True, "history": history, "total": len(history)}


@router.post("/results")
async def save_result(payload: FCSResultPayload, db: AsyncSession = Depends(get_db)):
    """Worker callback with the analysis outcome."""
    result = await FCSService(db).save_fcs_results(payload.model_dump())
    return {"success": True, "fcs_result": result}


@router.delete("/results/{result_id}")
async def delete_result(result_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, **await FCSService(db).delete_result(result_id)}


@router.get("/job/{job_id}")
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    job = await JobQueueService(db).get_job(job_id)
    return {"success": True, "job": job.to_dict()}
