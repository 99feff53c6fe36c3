"""AI assistant chat routes."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from pydantic import BaseModel

from mcacrm.database import get_db
from mcacrm.services.ai_service import AIChatService

router = APIRouter(prefix="/api/ai", tags=["AI"])

# ============================================================================
# SCHEMAS
# ============================================================================

class ChatRequest(BaseModel):
    query: Optional[str] = None
    conversationId: Optional[str] = None
    includeContext: bool = True


class ChatMessageRequest(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None
    ai_model: Optional[str] = None
    ai_tokens_used: Optional[int] = None
    ai_response_time_ms: Optional[int] = None


FULL_HISTORY_LIMIT = 1000

# ============================================================================
# ROUTES
# ============================================================================

@router.post("/chat")
async def chat(request: ChatRequest, db: AsyncSession = Depends(get_db)):
    """
    Ask the assistant. Model failures still answer 200 with success=false
    and a fallback response.
    """
    return await AIChatService(db).chat(
        request.query,
        conversation_id=request.conversationId,
        include_context=request.includeContext,
    )


@router.get("/history/{conversation_id}")
async def chat_history(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    messages = await AIChatService(db).get_history(conversation_id, limit=limit)
    return {"success": True, "messages": messages}


@router.get("/chat/{conversation_id}")
async def chat_messages(conversation_id: str, db: AsyncSession = Depends(get_db)):
    """Full chat history of a conversation, oldest first."""
    messages = await AIChatService(db).get_history(conversation_id, limit=FULL_HISTORY_LIMIT)
    return {"success": True, "messages": messages}


@router.post("/chat/{conversation_id}/messages")
async def save_chat_message(conversation_id: str, request: ChatMessageRequest,
                            db: AsyncSession = Depends(get_db)):
    message = await AIChatService(db).save_message(
        conversation_id,
        request.role,
        request.content,
        ai_model=request.ai_model,
        ai_tokens_used=request.ai_tokens_used,
        ai_response_time_ms=request.ai_response_time_ms,
    )
    return {"success": True, "message": message}


@router.get("/status")
async def ai_status():
    return {"success": True, **AIChatService.get_status()}
