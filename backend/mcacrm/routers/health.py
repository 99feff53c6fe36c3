"""Health check and pipeline stats."""
from fastapi import APIRouter, Depends
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from datetime import datetime, timedelta, timezone
import logging

from mcacrm.database import Base, get_db
from mcacrm.models import Conversation
from mcacrm.websocket import get_connection_stats

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["Health"])

EMPTY_STATS = {
    "totalConversations": 0,
    "stateBreakdown": {},
    "recentActivity": 0,
    "newLeads": 0,
    "qualified": 0,
    "funded": 0,
}


@router.get("/health")
async def health():
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "registered_tables": len(Base.metadata.tables),
        "websocket": get_connection_stats(),
    }


@router.get("/stats")
async def stats(db: AsyncSession = Depends(get_db)):
    """Pipeline counters. A database failure answers zeros with error=true."""
    try:
        total = (await db.execute(select(func.count(Conversation.id)))).scalar() or 0

        rows = (await db.execute(
            select(Conversation.state, func.count(Conversation.id)).group_by(Conversation.state)
        )).all()
        breakdown = {(state or "UNKNOWN"): count for state, count in rows}

        week_ago = datetime.now(timezone.utc) - timedelta(days=7)
        recent = (await db.execute(
            select(func.count(Conversation.id)).where(Conversation.last_activity > week_ago)
        )).scalar() or 0
    except SQLAlchemyError as e:
        logger.error(f"Stats query failed: {e}")
        return {**EMPTY_STATS, "error": True}

    return {
        "totalConversations": total,
        "stateBreakdown": breakdown,
        "recentActivity": recent,
        "newLeads": breakdown.get("NEW", 0),
        "qualified": breakdown.get("QUALIFIED", 0),
        "funded": breakdown.get("FUNDED", 0),
    }
