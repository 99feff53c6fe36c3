"""
AI assistant chat for brokers.

Builds a lead context (profile, messages, documents, FCS report, lender
matches) and asks the LLM for guidance. Failures never surface as errors:
the caller always gets a response, with success=False and a canned answer
when the model could not be reached.
"""

import asyncio
import logging
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from openai import OpenAIError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.config import settings
from mcacrm.exceptions import ValidationFailed
from mcacrm.models import (
    AIChatMessage, Document, FCSAnalysis, FCSResult, LenderMatch, Message
)
from mcacrm.services.lead_service import LeadService
from mcacrm.services.openai_client import get_openai_client

logger = logging.getLogger(__name__)


# ============================================================================
# PROMPTS
# ============================================================================

BASE_PROMPT = """You are the assistant of an MCA (merchant cash advance) brokerage CRM.
You help brokers qualify leads, read FCS bank-statement reports, pick lenders and
write SMS messages to merchants.

Guidelines:
- Be concise and actionable. Brokers read your answer between calls.
- When asked for a message to the merchant, write it ready to paste, in a code block.
- The first outreach to a merchant is professional and states the average deposits
  and position count from the FCS report. Later follow-ups are short and casual.
- Point out missing data that blocks underwriting: monthly revenue, time in
  business, credit score, bank statements.
- Flag red flags: declining revenue, many negative days, stacked positions,
  restricted industries.
- Never guarantee an approval and never describe an MCA as a loan."""

STAGE_FOCUS = {
    'initial_contact': 'Focus on initial qualification and rapport. Gather key business metrics.',
    'fcs_completed': 'The FCS report is ready. Use it to frame an offer and move to lender submission.',
    'lender_qualification_completed': 'Lenders are matched. Recommend submission order and next steps.',
}

FALLBACK_PATTERNS = [
    (re.compile(r'analyz|assess|review|understand|evaluate', re.I),
     "I'd help analyze this lead's data, message history and readiness for the next step "
     "once the AI service is reachable."),
    (re.compile(r'respond|reply|answer|suggest.*messag|what.*say', re.I),
     "I'd suggest a reply based on the merchant's situation once the AI service is reachable."),
    (re.compile(r'fcs|financial|credit|score|report', re.I),
     "I'd review the FCS report for revenue, negative days and positions once the AI service is reachable."),
    (re.compile(r'lender|match|qualify|submit|send', re.I),
     "I'd help pick lenders for this profile once the AI service is reachable."),
    (re.compile(r'next.*step|what.*do|recommend|action', re.I),
     "I'd recommend next steps for this lead once the AI service is reachable."),
]
DEFAULT_FALLBACK = (
    "The AI assistant is unavailable right now. Check the OpenAI configuration and try again."
)


def fallback_response(query: str) -> str:
    for pattern, answer in FALLBACK_PATTERNS:
        if pattern.search(query or ''):
            return answer
    return DEFAULT_FALLBACK


def build_system_prompt(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return BASE_PROMPT

    outbound = context.get('outbound_message_count') or 0
    message_lines = []
    # recent_messages is newest first; list the last 10 oldest to newest
    for index, msg in enumerate(reversed(context.get('recent_messages', [])[:10]), start=1):
        speaker = 'Merchant' if msg.get('direction') == 'inbound' else 'Agent'
        message_lines.append(f"{index}. [{msg.get('timestamp') or 'unknown'}] {speaker}: \"{msg.get('content')}\"")

    lender_lines = [
        f"- {m['lender_name']} (tier {m.get('tier') or '?'}, score {m.get('match_score') or 0})"
        for m in context.get('lender_matches', [])[:10]
    ]

    fcs = context.get('fcs_report')
    fcs_section = "No FCS report available."
    if fcs:
        fcs_section = (
            f"Generated: {fcs.get('generated_at') or 'N/A'}\n"
            f"Business: {fcs.get('business_name') or 'N/A'}\n"
            f"Statements reviewed: {fcs.get('statement_count') or 0}\n\n"
            f"{fcs.get('report_content') or 'No report content available'}"
        )

    sections = [
        BASE_PROMPT,
        "",
        "## MESSAGE TYPE",
        f"Outbound messages sent: {outbound}",
        f"Last outbound message: {context.get('last_outbound_time') or 'Never'}",
        "-> Write an INITIAL OUTREACH message." if outbound == 0 else "-> Write a CASUAL FOLLOW-UP message.",
        "",
        "## LEAD PROFILE",
        f"Business name: {context.get('business_name') or 'Unknown'}",
        f"Phone: {context.get('lead_phone') or 'No phone'}",
        f"Email: {context.get('email') or 'No email'}",
        f"Industry: {context.get('industry') or 'Not specified'}",
        f"State: {context.get('us_state') or 'Unknown'}",
        f"Pipeline state: {context.get('state') or 'NEW'} / step {context.get('stage') or 'initial'}",
        f"Days in pipeline: {context.get('days_in_pipeline', 0)}",
        f"Monthly revenue: {context.get('monthly_revenue') or 'Not provided'}",
        f"Time in business: {context.get('time_in_business') or 'Unknown'}",
        f"Funding requested: {context.get('funding_amount') or 'Not specified'}",
        f"Credit score: {context.get('credit_score') or 'Unknown'}",
        f"Documents on file: {context.get('documents_count', 0)}",
        "",
        "## FCS REPORT",
        fcs_section,
        "",
        "## CONVERSATION HISTORY",
        "\n".join(message_lines) or "No conversation history available",
        "",
        "## LENDER MATCHES",
        "\n".join(lender_lines) or "No lender matches yet",
    ]

    focus = STAGE_FOCUS.get(context.get('stage') or '')
    if focus:
        sections += ["", "## STAGE FOCUS", focus]
    return "\n".join(sections)


# ============================================================================
# SERVICE
# ============================================================================

CHAT_ROLES = ('user', 'assistant')


class AIChatService:
    """Context-aware chat backed by the OpenAI chat completions API."""

    def __init__(self, db: AsyncSession, client_factory: Callable = get_openai_client,
                 timeout: Optional[float] = None):
        self.db = db
        self.client_factory = client_factory
        self.timeout = timeout or settings.AI_CHAT_TIMEOUT_SECONDS
        self.leads = LeadService(db)

    async def build_context(self, conversation_ref, query: str) -> Dict[str, Any]:
        lead = await self.leads.get_lead(conversation_ref)
        conversation_id = uuid.UUID(lead['id'])

        messages = (await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.timestamp.desc())
            .limit(20)
        )).scalars().all()

        outbound_count, last_outbound = (await self.db.execute(
            select(func.count(Message.id), func.max(Message.timestamp))
            .where(Message.conversation_id == conversation_id, Message.direction == 'outbound')
        )).one()

        documents_count = (await self.db.execute(
            select(func.count(Document.id)).where(Document.conversation_id == conversation_id)
        )).scalar() or 0

        fcs_report = None
        analysis = (await self.db.execute(
            select(FCSAnalysis).where(
                FCSAnalysis.conversation_id == conversation_id,
                FCSAnalysis.status == 'completed',
            )
        )).scalar_one_or_none()
        if analysis is not None:
            fcs_report = {
                'generated_at': analysis.completed_at.isoformat() if analysis.completed_at else None,
                'business_name': analysis.extracted_business_name,
                'statement_count': analysis.statement_count,
                'report_content': analysis.fcs_report,
            }
        else:
            legacy = (await self.db.execute(
                select(FCSResult)
                .where(FCSResult.conversation_id == conversation_id)
                .order_by(FCSResult.created_at.desc())
                .limit(1)
            )).scalar_one_or_none()
            if legacy is not None:
                fcs_report = {
                    'generated_at': legacy.created_at.isoformat() if legacy.created_at else None,
                    'report_content': legacy.analysis_notes,
                }

        matches = (await self.db.execute(
            select(LenderMatch)
            .where(LenderMatch.conversation_id == conversation_id, LenderMatch.qualified.is_(True))
            .order_by(LenderMatch.tier.asc().nulls_last(), LenderMatch.match_score.desc().nulls_last())
        )).scalars().all()

        days_in_pipeline = 0
        if lead.get('created_at'):
            created = datetime.fromisoformat(lead['created_at'])
            days_in_pipeline = (datetime.now(timezone.utc) - created).days

        return {
            'conversation_id': conversation_id,
            'user_query': query,
            'business_name': lead.get('business_name'),
            'lead_phone': lead.get('lead_phone'),
            'email': lead.get('email'),
            'industry': lead.get('business_type'),
            'us_state': lead.get('us_state'),
            'state': lead.get('state'),
            'stage': lead.get('current_step'),
            'monthly_revenue': lead.get('monthly_revenue'),
            'time_in_business': (
                f"{lead['time_in_business_months']} months"
                if lead.get('time_in_business_months') is not None else None
            ),
            'funding_amount': lead.get('funding_amount'),
            'credit_score': lead.get('credit_score'),
            'documents_count': documents_count,
            'fcs_report': fcs_report,
            'recent_messages': [
                {
                    'content': m.content,
                    'direction': m.direction,
                    'timestamp': m.timestamp.isoformat() if m.timestamp else None,
                    'sent_by': m.sent_by,
                }
                for m in messages
            ],
            'outbound_message_count': outbound_count or 0,
            'last_outbound_time': last_outbound.isoformat() if last_outbound else None,
            'lender_matches': [m.to_dict() for m in matches],
            'days_in_pipeline': days_in_pipeline,
        }

    async def generate_response(self, query: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        client = self.client_factory()
        if client is None:
            return {'success': False, 'response': fallback_response(query),
                    'error': 'OpenAI API key not configured', 'usage': None}

        try:
            completion = await asyncio.wait_for(
                client.chat.completions.create(
                    model=settings.OPENAI_MODEL,
                    messages=[
                        {'role': 'system', 'content': build_system_prompt(context)},
                        {'role': 'user', 'content': query},
                    ],
                    max_tokens=settings.AI_CHAT_MAX_TOKENS,
                    temperature=settings.AI_CHAT_TEMPERATURE,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"AI chat request exceeded {self.timeout}s")
            return {'success': False, 'response': fallback_response(query),
                    'error': 'Request timed out. The AI service is taking too long to respond.', 'usage': None}
        except OpenAIError as e:
            logger.error(f"AI chat request failed: {e}")
            return {'success': False, 'response': fallback_response(query), 'error': str(e), 'usage': None}

        content = completion.choices[0].message.content if completion.choices else None
        usage = completion.usage.model_dump() if completion.usage is not None else None
        return {
            'success': True,
            'response': content or "I apologize, but I couldn't generate a response.",
            'error': None,
            'usage': usage,
        }

    async def chat(self, query: Optional[str], conversation_id=None, include_context: bool = True) -> Dict[str, Any]:
        if not query or not query.strip():
            raise ValidationFailed("Query is required", fields=["query"])

        started = time.monotonic()
        context = None
        conversation_uuid = None
        if conversation_id:
            conversation_uuid = (await self.leads.get_conversation(conversation_id)).id
            if include_context:
                context = await self.build_context(conversation_uuid, query)
                logger.info(
                    f"AI context for {conversation_uuid}: {len(context['recent_messages'])} messages, "
                    f"{context['documents_count']} documents, fcs={'yes' if context['fcs_report'] else 'no'}"
                )

        result = await self.generate_response(query, context)
        response_time_ms = int((time.monotonic() - started) * 1000)

        if conversation_uuid is not None:
            await self.save_turns(conversation_uuid, query, result, response_time_ms, context is not None)

        logger.info(f"AI response generated in {response_time_ms}ms (success={result['success']})")
        return {
            'success': result['success'],
            'response': result['response'],
            'responseTime': response_time_ms,
            'usage': result['usage'],
            'error': result['error'],
        }

    async def save_turns(self, conversation_id: uuid.UUID, query: str, result: Dict[str, Any],
                         response_time_ms: int, context_used: bool):
        """Persist both turns; a failed save is logged and the chat still answers."""
        usage = result.get('usage') or {}
        try:
            self.db.add(AIChatMessage(
                id=uuid.uuid4(), conversation_id=conversation_id, role='user', content=query,
            ))
            self.db.add(AIChatMessage(
                id=uuid.uuid4(),
                conversation_id=conversation_id,
                role='assistant',
                content=result['response'],
                ai_model=settings.OPENAI_MODEL,
                ai_tokens_used=usage.get('total_tokens') or 0,
                ai_response_time_ms=response_time_ms,
                ai_context_used=context_used,
            ))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Could not save AI chat messages for {conversation_id}: {e}")

    async def get_history(self, conversation_ref, limit: int = 50) -> List[Dict[str, Any]]:
        conversation = await self.leads.get_conversation(conversation_ref)
        result = await self.db.execute(
            select(AIChatMessage)
            .where(AIChatMessage.conversation_id == conversation.id)
            .order_by(AIChatMessage.created_at.asc())
            .limit(limit)
        )
        return [m.to_dict() for m in result.scalars().all()]

    async def save_message(self, conversation_ref, role: Optional[str], content: Optional[str],
                           ai_model: Optional[str] = None, ai_tokens_used: Optional[int] = None,
                           ai_response_time_ms: Optional[int] = None) -> Dict[str, Any]:
        """Store one chat turn produced outside chat(), e.g. by the frontend."""
        if not role or not content:
            raise ValidationFailed('Role and content are required', fields=['role', 'content'])
        if role not in CHAT_ROLES:
            raise ValidationFailed('Role must be either "user" or "assistant"', fields=['role'])

        conversation = await self.leads.get_conversation(conversation_ref)
        message = AIChatMessage(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            role=role,
            content=content,
            ai_model=ai_model,
            ai_tokens_used=ai_tokens_used,
            ai_response_time_ms=ai_response_time_ms,
        )
        self.db.add(message)
        await self.db.commit()
        await self.db.refresh(message)
        logger.info(f"Saved AI chat message for {conversation.id}: {role} - {content[:50]}")
        return message.to_dict()

    @staticmethod
    def get_status() -> Dict[str, Any]:
        return {
            'configured': bool(settings.OPENAI_API_KEY),
            'model': settings.OPENAI_MODEL,
            'maxTokens': settings.AI_CHAT_MAX_TOKENS,
            'temperature': settings.AI_CHAT_TEMPERATURE,
        }
