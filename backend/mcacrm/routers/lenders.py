"""Lender roster and qualification routes."""
from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from uuid import UUID
import logging

from mcacrm.database import get_db
from mcacrm.models import Lender
from mcacrm.services.lender_matcher import LenderQualificationService, lender_matcher

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/lenders", tags=["Lenders"])

# ============================================================================
# SCHEMAS
# ============================================================================

class LenderCreate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    min_amount: Optional[float] = 0
    max_amount: Optional[float] = None
    industries: List[str] = []
    states: List[str] = []
    credit_score_min: Optional[int] = None
    time_in_business_min: Optional[int] = None
    notes: Optional[str] = None

class LenderUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    industries: Optional[List[str]] = None
    states: Optional[List[str]] = None
    credit_score_min: Optional[int] = None
    time_in_business_min: Optional[int] = None
    notes: Optional[str] = None

class LenderMatchPayload(BaseModel):
    conversation_id: str
    lender_name: str
    lender_id: Optional[UUID] = None
    qualified: bool = True
    tier: Optional[Any] = None
    position: Optional[int] = None
    match_score: Optional[float] = None
    max_amount: Optional[float] = None
    factor_rate: Optional[float] = None
    term_months: Optional[int] = None
    is_preferred: bool = False
    blocking_reason: Optional[str] = None
    requirements: Optional[Dict[str, Any]] = None


async def _get_lender(db: AsyncSession, lender_id: UUID) -> Lender:
    lender = await db.get(Lender, lender_id)
    if not lender:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lender not found")
    return lender

# ============================================================================
# ROSTER
# ============================================================================

@router.get("")
async def list_lenders(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Lender).order_by(Lender.name.asc()))
    return [lender.to_dict() for lender in result.scalars().all()]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_lender(data: LenderCreate, db: AsyncSession = Depends(get_db)):
    missing = [field for field in ("name", "email") if not getattr(data, field)]
    if missing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing required fields: {', '.join(missing)}",
        )

    lender = Lender(**data.model_dump())
    db.add(lender)
    await db.commit()
    await db.refresh(lender)
    logger.info(f"Created lender {lender.id} ({lender.name})")
    return lender.to_dict()


@router.get("/available")
async def available_lenders(db: AsyncSession = Depends(get_db)):
    """Lender names for pickers."""
    result = await db.execute(select(Lender.id, Lender.name, Lender.email).order_by(Lender.name.asc()))
    return [{"id": str(row.id), "name": row.name, "email": row.email} for row in result.all()]


@router.put("/{lender_id}")
async def update_lender(lender_id: UUID, data: LenderUpdate, db: AsyncSession = Depends(get_db)):
    lender = await _get_lender(db, lender_id)
    update_data = data.model_dump(exclude_unset=True)
    for field in ("name", "email"):
        if field in update_data and not update_data[field]:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{field} cannot be empty")

    for key, value in update_data.items():
        setattr(lender, key, value)
    await db.commit()
    await db.refresh(lender)
    return lender.to_dict()


@router.delete("/{lender_id}")
async def delete_lender(lender_id: UUID, db: AsyncSession = Depends(get_db)):
    await _get_lender(db, lender_id)
    await db.execute(delete(Lender).where(Lender.id == lender_id))
    await db.commit()
    return {"success": True, "id": str(lender_id), "deleted": True}

# ============================================================================
# QUALIFICATION
# ============================================================================

@router.post("/qualify/{conversation_id}")
async def queue_qualification(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Queue a lender_qualification job for the worker. Requires FCS results."""
    return await LenderQualificationService(db).trigger_qualification(conversation_id)


@router.post("/run-qualification/{conversation_id}")
async def run_qualification(
    conversation_id: str,
    overrides: Optional[Dict[str, Any]] = Body(None),
    db: AsyncSession = Depends(get_db),
):
    """Call the qualification service now and replace the stored matches."""
    result = await LenderQualificationService(db).requalify_lenders(conversation_id, overrides)
    return {"success": True, **result}


@router.get("/matches/{conversation_id}")
async def qualified_matches(conversation_id: str, db: AsyncSession = Depends(get_db)):
    matches = await LenderQualificationService(db).get_matches(conversation_id)
    return {
        "success": True,
        "matches": matches,
        "total": len(matches),
        "display": lender_matcher.format_for_display(matches),
        "sms": lender_matcher.format_for_sms(matches),
    }


@router.get("/matches/{conversation_id}/all")
async def all_matches(conversation_id: str, db: AsyncSession = Depends(get_db)):
    matches = await LenderQualificationService(db).get_matches(conversation_id, include_unqualified=True)
    qualified = [m for m in matches if m["qualified"]]
    return {
        "success": True,
        "matches": matches,
        "summary": {
            "qualified": len(qualified),
            "non_qualified": len(matches) - len(qualified),
            "total": len(matches),
        },
    }


@router.get("/top/{conversation_id}")
async def top_recommendation(conversation_id: str, db: AsyncSession = Depends(get_db)):
    top = await LenderQualificationService(db).get_top_lender_recommendation(conversation_id)
    return {"success": True, "lender": top}


@router.post("/matches")
async def add_match(payload: LenderMatchPayload, db: AsyncSession = Depends(get_db)):
    """Worker callback: one lender verdict."""
    match = await LenderQualificationService(db).add_match(payload.model_dump())
    return {"success": True, "match": match}


@router.post("/qualification-complete/{conversation_id}")
async def qualification_complete(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Worker callback: all verdicts are posted."""
    return await LenderQualificationService(db).complete_qualification(conversation_id)


@router.get("/{lender_id}")
async def get_lender(lender_id: UUID, db: AsyncSession = Depends(get_db)):
    return (await _get_lender(db, lender_id)).to_dict()
