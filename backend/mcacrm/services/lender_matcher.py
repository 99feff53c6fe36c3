"""Lender qualification: normalize webhook verdicts into scored, persisted matches."""

import logging
import re
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.config import settings
from mcacrm.exceptions import ExternalServiceError, PreconditionFailed
from mcacrm.models import FCSAnalysis, FCSResult, LeadDetails, LenderMatch
from mcacrm.services.field_mapping import parse_decimal, parse_integer
from mcacrm.services.job_queue import JobQueueService, JobType
from mcacrm.services.lead_service import LeadService, utcnow
from mcacrm.websocket import emit_to_conversation

logger = logging.getLogger(__name__)


def _first_number(entry: Dict[str, Any], keys) -> Optional[float]:
    for key in keys:
        value = entry.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value:
            return value
    return None


def _coerce(value: Any, name: str, parser=parse_decimal):
    """Numbers or currency strings; unparseable input is dropped with a warning."""
    try:
        return parser(value)
    except ValueError:
        logger.warning(f"Ignoring unparseable {name}: {value!r}")
        return None


def _as_tier(value: Any) -> Optional[int]:
    """Tiers arrive as ints or numeric strings ("2"); anything else is no tier."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


class LenderMatcher:
    """Pure scoring and extraction rules for lender verdicts."""

    BASE_SCORE = 50
    PREFERRED_BONUS = 20
    REVENUE_MULTIPLE = 3
    REVENUE_BONUS = 15
    DEFAULT_FICO = 650
    DEFAULT_TERM_MONTHS = 12

    AMOUNT_FIELDS = ['maxAmount', 'max_amount', 'amount', 'fundingAmount']
    RATE_FIELDS = ['factorRate', 'factor_rate', 'rate']
    TERM_FIELDS = ['termMonths', 'term_months', 'term']

    REQUIREMENT_FIELDS = {
        'min_revenue': ['minRevenue', 'min_revenue', 'minimumRevenue'],
        'min_fico': ['minFico', 'min_fico', 'minimumFico'],
        'min_tib': ['minTIB', 'min_tib', 'minimumTIB'],
        'max_negative_days': ['maxNegativeDays', 'max_negative_days'],
        'states_excluded': ['excludedStates', 'excluded_states'],
        'industries_excluded': ['excludedIndustries', 'excluded_industries'],
    }

    AMOUNT_RE = re.compile(r'\$?\s*(\d[\d,]*(?:\.\d+)?)\s*([kK])?\b')
    RATE_RE = re.compile(r'(\d+(?:\.\d+)?)\s*x\b', re.IGNORECASE)
    TERM_RE = re.compile(r'(\d+)\s*month', re.IGNORECASE)
    TIB_DATE_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')

    @staticmethod
    def _description(entry: Dict[str, Any]) -> str:
        return str(entry.get('description') or entry.get('notes') or '')

    @staticmethod
    def calculate_tib(start_date: Optional[str], today: Optional[date] = None) -> int:
        """
        Whole months since an MM/DD/YYYY start date.
        Other formats, invalid dates and future dates give 0.
        """
        if not start_date:
            return 0
        match = LenderMatcher.TIB_DATE_RE.match(str(start_date).strip())
        if not match:
            return 0
        month, day, year = (int(part) for part in match.groups())
        if not 1 <= month <= 12:
            return 0
        today = today or date.today()
        months = (today.year - year) * 12 + (today.month - month)
        return months if months >= 0 else 0

    @staticmethod
    def extract_max_amount(entry: Dict[str, Any]) -> Optional[float]:
        explicit = _first_number(entry, LenderMatcher.AMOUNT_FIELDS)
        if explicit is not None:
            return explicit

        match = LenderMatcher.AMOUNT_RE.search(LenderMatcher._description(entry))
        if not match:
            return None
        amount = float(match.group(1).replace(',', ''))
        if match.group(2):
            amount *= 1000
        return amount

    @staticmethod
    def extract_factor_rate(entry: Dict[str, Any]) -> Optional[float]:
        explicit = _first_number(entry, LenderMatcher.RATE_FIELDS)
        if explicit is not None:
            return explicit

        match = LenderMatcher.RATE_RE.search(LenderMatcher._description(entry))
        return float(match.group(1)) if match else None

    @staticmethod
    def extract_term_months(entry: Dict[str, Any]) -> int:
        explicit = _first_number(entry, LenderMatcher.TERM_FIELDS)
        if explicit is not None:
            return int(explicit)

        match = LenderMatcher.TERM_RE.search(LenderMatcher._description(entry))
        return int(match.group(1)) if match else LenderMatcher.DEFAULT_TERM_MONTHS

    @staticmethod
    def extract_requirements(entry: Dict[str, Any]) -> Dict[str, Any]:
        requirements = {}
        for key, fields in LenderMatcher.REQUIREMENT_FIELDS.items():
            for field in fields:
                if field in entry:
                    requirements[key] = entry[field]
                    break
        return requirements

    @staticmethod
    def calculate_match_score(entry: Dict[str, Any], profile: Dict[str, Any]) -> float:
        """
        Heuristic 0-100 fit score.

        Base 50; tier bonus (6 - min(tier, 5)) * 10; +20 preferred; +15 when
        the lender's max covers 3x monthly revenue; FICO +10/+5 at 700/650;
        time in business +10/+5 at 24/12 months; negative days -10/-5 above
        30/15. Clamped to [0, 100].
        """
        score = LenderMatcher.BASE_SCORE

        tier = _as_tier(entry.get('Tier', entry.get('tier')))
        if tier is not None:
            score += (6 - min(tier, 5)) * 10

        if entry.get('isPreferred') or entry.get('is_preferred'):
            score += LenderMatcher.PREFERRED_BONUS

        max_amount = LenderMatcher.extract_max_amount(entry)
        monthly_revenue = profile.get('monthlyRevenue') or 0
        if max_amount and monthly_revenue:
            if max_amount >= monthly_revenue * LenderMatcher.REVENUE_MULTIPLE:
                score += LenderMatcher.REVENUE_BONUS

        fico = profile.get('fico') or 0
        if fico >= 700:
            score += 10
        elif fico >= 650:
            score += 5

        tib = profile.get('tib') or 0
        if tib >= 24:
            score += 10
        elif tib >= 12:
            score += 5

        negative_days = profile.get('negativeDays') or 0
        if negative_days > 30:
            score -= 10
        elif negative_days > 15:
            score -= 5

        return round(min(max(score, 0), 100), 2)

    @staticmethod
    def prepare_qualification_data(business: Dict[str, Any],
                                   fcs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Build the qualification service request; FCS figures win over business data."""
        fcs = fcs or {}
        start_date = business.get('startDate') or ''
        revenue = (
            _coerce(fcs.get('monthly_revenue'), 'monthly_revenue')
            or _coerce(business.get('monthlyRevenue'), 'monthlyRevenue')
            or _coerce(business.get('revenue'), 'revenue')
            or 0
        )
        tib = _coerce(business.get('tib'), 'tib', parse_integer) or 0
        position = _coerce(business.get('position'), 'position', parse_integer) or 1

        return {
            'businessName': business.get('businessName') or business.get('business_name') or 'Business',
            'requestedPosition': business.get('requestedPosition') or position,
            'position': position,
            'startDate': start_date,
            'tib': LenderMatcher.calculate_tib(start_date) if start_date else tib,
            'monthlyRevenue': float(revenue),
            'revenue': float(revenue),
            'fico': _coerce(business.get('fico'), 'fico', parse_integer) or LenderMatcher.DEFAULT_FICO,
            'state': (business.get('state') or '').upper(),
            'industry': business.get('industry') or '',
            'depositsPerMonth': (
                _coerce(fcs.get('deposits_per_month'), 'deposits_per_month', parse_integer)
                or _coerce(business.get('depositsPerMonth'), 'depositsPerMonth', parse_integer)
                or 0
            ),
            'negativeDays': (
                _coerce(fcs.get('negative_days'), 'negative_days', parse_integer)
                or _coerce(business.get('negativeDays'), 'negativeDays', parse_integer)
                or 0
            ),
            'isSoleProp': bool(business.get('isSoleProp') or business.get('soleProp')),
            'isNonProfit': bool(business.get('isNonProfit') or business.get('nonProfit')),
            'hasMercuryBank': bool(business.get('hasMercuryBank') or business.get('mercuryBank')),
            'currentPositions': business.get('currentPositions') or '',
            'additionalNotes': business.get('additionalNotes') or '',
        }

    @staticmethod
    def normalize_results(results: Dict[str, Any], profile: Dict[str, Any]) -> Dict[str, Any]:
        """Turn the service's qualified / nonQualified lists into match rows."""
        qualified = []
        for index, entry in enumerate(results.get('qualified') or []):
            if not isinstance(entry, dict):
                continue
            qualified.append({
                'lender_name': entry.get('Lender Name') or entry.get('name') or f'Lender {index + 1}',
                'tier': _as_tier(entry.get('Tier', entry.get('tier'))),
                'position': profile.get('position'),
                'qualified': True,
                'is_preferred': bool(entry.get('isPreferred') or entry.get('is_preferred')),
                'max_amount': LenderMatcher.extract_max_amount(entry),
                'factor_rate': LenderMatcher.extract_factor_rate(entry),
                'term_months': LenderMatcher.extract_term_months(entry),
                'match_score': LenderMatcher.calculate_match_score(entry, profile),
                'blocking_reason': None,
                'requirements': LenderMatcher.extract_requirements(entry),
            })

        non_qualified = []
        for index, entry in enumerate(results.get('nonQualified') or []):
            if not isinstance(entry, dict):
                continue
            non_qualified.append({
                'lender_name': entry.get('lender') or entry.get('name') or f'Lender {index + 1}',
                'tier': _as_tier(entry.get('Tier', entry.get('tier'))),
                'position': profile.get('position'),
                'qualified': False,
                'is_preferred': False,
                'max_amount': LenderMatcher.extract_max_amount(entry),
                'factor_rate': LenderMatcher.extract_factor_rate(entry),
                'term_months': LenderMatcher.extract_term_months(entry),
                'match_score': None,
                'blocking_reason': entry.get('blockingRule') or entry.get('reason') or 'Criteria not met',
                'requirements': LenderMatcher.extract_requirements(entry),
            })

        return {
            'qualified': qualified,
            'non_qualified': non_qualified,
            'summary': {
                'qualified': len(qualified),
                'non_qualified': len(non_qualified),
                'total_processed': len(qualified) + len(non_qualified),
            },
        }

    @staticmethod
    def rank(matches: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Tier ascending (no tier last), then match score descending."""
        return sorted(
            matches,
            key=lambda m: (
                m.get('tier') if m.get('tier') is not None else 999,
                -(m.get('match_score') or 0),
            ),
        )

    @staticmethod
    def format_for_display(lenders: List[Dict[str, Any]], max_lenders: int = 5) -> str:
        if not lenders:
            return "No qualified lenders found."

        top = lenders[:max_lenders]
        lines = [f"Found {len(lenders)} qualified lender{'s' if len(lenders) > 1 else ''}:", ""]

        groups: Dict[Any, List[Dict[str, Any]]] = {}
        for lender in top:
            groups.setdefault(lender.get('tier') or 'Other', []).append(lender)

        for tier in sorted(groups, key=lambda t: (t == 'Other', t if t != 'Other' else 0)):
            lines.append(f"Tier {tier}:")
            for lender in groups[tier]:
                preferred = ' (preferred)' if lender.get('is_preferred') else ''
                lines.append(f"- {lender.get('lender_name')}{preferred}")
            lines.append("")

        if len(lenders) > max_lenders:
            lines.append(f"...and {len(lenders) - max_lenders} more lenders available.")
        return "\n".join(lines).strip()

    @staticmethod
    def format_for_sms(lenders: List[Dict[str, Any]], max_lenders: int = 3) -> str:
        if not lenders:
            return "No qualified lenders found."

        lines = [f"{len(lenders)} lender{'s' if len(lenders) > 1 else ''} qualified:"]
        for index, lender in enumerate(lenders[:max_lenders], start=1):
            preferred = '*' if lender.get('is_preferred') else ''
            lines.append(f"{index}. {lender.get('lender_name')} (T{lender.get('tier') or '?'}){preferred}")
        if len(lenders) > max_lenders:
            lines.append(f"+{len(lenders) - max_lenders} more available")
        return "\n".join(lines)


# Singleton instance
lender_matcher = LenderMatcher()


class LenderQualificationService:
    """Run qualification for a conversation and manage its match set."""

    def __init__(self, db: AsyncSession, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.db = db
        self.webhook_url = webhook_url or settings.LENDER_QUALIFICATION_URL
        self.timeout = timeout or settings.LENDER_QUALIFICATION_TIMEOUT_SECONDS
        self.leads = LeadService(db)
        self.jobs = JobQueueService(db)

    async def call_qualification_service(self, profile: Dict[str, Any]) -> Dict[str, Any]:
        if not self.webhook_url:
            raise ExternalServiceError("lender_qualification", "Qualification service URL is not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=profile)
        except httpx.HTTPError as e:
            raise ExternalServiceError("lender_qualification", f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise ExternalServiceError("lender_qualification", f"HTTP {response.status_code}")

        try:
            results = response.json()
        except ValueError:
            logger.error(f"Unparseable qualification response: {response.text[:500]}")
            return {'qualified': [], 'nonQualified': []}
        if not isinstance(results, dict):
            logger.error("Qualification response is not an object")
            return {'qualified': [], 'nonQualified': []}
        return results

    async def qualify_lenders(self, conversation_ref, business: Dict[str, Any],
                              fcs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        conversation = await self.leads.get_conversation(conversation_ref)
        profile = lender_matcher.prepare_qualification_data(business, fcs)
        logger.info(f"Running lender qualification for {conversation.id}")

        results = await self.call_qualification_service(profile)
        processed = lender_matcher.normalize_results(results, profile)

        await self.save_lender_matches(
            conversation.id, processed['qualified'] + processed['non_qualified']
        )
        await self.db.commit()

        logger.info(
            f"Lender qualification for {conversation.id}: "
            f"{processed['summary']['qualified']} qualified, "
            f"{processed['summary']['non_qualified']} not qualified"
        )
        processed['qualification_data'] = profile
        return processed

    async def requalify_lenders(self, conversation_ref, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Qualify from stored lead data and the latest FCS analysis."""
        conversation = await self.leads.get_conversation(conversation_ref)
        details = (await self.db.execute(
            select(LeadDetails).where(LeadDetails.conversation_id == conversation.id)
        )).scalar_one_or_none()
        analysis = (await self.db.execute(
            select(FCSAnalysis).where(
                FCSAnalysis.conversation_id == conversation.id,
                FCSAnalysis.status == 'completed',
            )
        )).scalar_one_or_none()

        start = details.business_start_date if details is not None else None
        business = {
            'businessName': conversation.business_name,
            'position': (analysis.position_count if analysis is not None else None) or 1,
            'monthlyRevenue': float(conversation.monthly_revenue) if conversation.monthly_revenue is not None else None,
            'fico': conversation.credit_score,
            'state': conversation.us_state or '',
            'industry': (details.business_type if details is not None else None) or '',
            'startDate': start.strftime('%m/%d/%Y') if start else '',
            'tib': conversation.time_in_business_months,
        }
        fcs = None
        if analysis is not None:
            fcs = {
                'monthly_revenue': float(analysis.average_revenue) if analysis.average_revenue is not None else None,
                'negative_days': analysis.total_negative_days,
            }
        business.update(overrides or {})
        return await self.qualify_lenders(conversation.id, business, fcs)

    async def save_lender_matches(self, conversation_id: uuid.UUID, matches: List[Dict[str, Any]]):
        """
        Replace the conversation's match set. Delete and insert share the
        caller's transaction, so a failure leaves the previous set intact.
        """
        await self.db.execute(delete(LenderMatch).where(LenderMatch.conversation_id == conversation_id))
        for match in matches:
            self.db.add(LenderMatch(id=uuid.uuid4(), conversation_id=conversation_id, **match))
        await self.db.flush()

    async def get_matches(self, conversation_ref, include_unqualified: bool = False) -> List[Dict[str, Any]]:
        conversation = await self.leads.get_conversation(conversation_ref)
        stmt = select(LenderMatch).where(LenderMatch.conversation_id == conversation.id)
        if include_unqualified:
            stmt = stmt.order_by(
                LenderMatch.qualified.desc(),
                LenderMatch.tier.asc().nulls_last(),
                LenderMatch.match_score.desc().nulls_last(),
            )
        else:
            stmt = stmt.where(LenderMatch.qualified.is_(True)).order_by(
                LenderMatch.tier.asc().nulls_last(),
                LenderMatch.match_score.desc().nulls_last(),
            )
        result = await self.db.execute(stmt)
        return [m.to_dict() for m in result.scalars().all()]

    async def get_top_lender_recommendation(self, conversation_ref) -> Optional[Dict[str, Any]]:
        matches = await self.get_matches(conversation_ref)
        ranked = lender_matcher.rank(matches)
        return ranked[0] if ranked else None

    # ------------------------------------------------------------------
    # Queue hand-off
    # ------------------------------------------------------------------

    async def trigger_qualification(self, conversation_ref) -> Dict[str, Any]:
        conversation = await self.leads.get_conversation(conversation_ref)
        fcs_result = (await self.db.execute(
            select(FCSResult)
            .where(FCSResult.conversation_id == conversation.id)
            .order_by(FCSResult.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()
        if fcs_result is None:
            raise PreconditionFailed(
                "FCS results required before lender qualification", missing_fields=["fcs_results"]
            )

        job = await self.jobs.enqueue(JobType.LENDER_QUALIFICATION, conversation.id, {
            "conversation": conversation.to_dict(exclude=("metadata",)),
            "fcs_results": fcs_result.to_dict(),
        })
        await self.db.commit()

        await emit_to_conversation("lender_qualification_triggered", conversation.id, {
            "conversation_id": str(conversation.id),
            "job_id": str(job.id),
        })
        return {"success": True, "status": "queued", "job_id": str(job.id)}

    async def add_match(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Worker callback: record a single lender verdict."""
        conversation = await self.leads.get_conversation(payload["conversation_id"])
        qualified = bool(payload.get("qualified", True))
        match = LenderMatch(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            lender_id=payload.get("lender_id"),
            lender_name=payload["lender_name"],
            qualified=qualified,
            tier=_as_tier(payload.get("tier")),
            position=payload.get("position"),
            match_score=payload.get("match_score") if payload.get("match_score") is not None else 0,
            max_amount=payload.get("max_amount"),
            factor_rate=payload.get("factor_rate"),
            term_months=payload.get("term_months"),
            is_preferred=bool(payload.get("is_preferred", False)),
            blocking_reason=None if qualified else (payload.get("blocking_reason") or "Criteria not met"),
            requirements=payload.get("requirements") or {},
        )
        self.db.add(match)
        await self.db.commit()
        await self.db.refresh(match)
        return match.to_dict()

    async def complete_qualification(self, conversation_ref) -> Dict[str, Any]:
        """Worker callback: the match set is in place; settle the job and notify."""
        conversation = await self.leads.get_conversation(conversation_ref)
        matches = await self.get_matches(conversation.id)
        top = lender_matcher.rank(matches)[0] if matches else None

        await self.leads.merge_metadata(
            conversation.id,
            {
                "lender_qualification_completed_at": utcnow().isoformat(),
                "total_qualified_lenders": len(matches),
                "top_lender": top["lender_name"] if top else None,
            },
            current_step="lender_qualification_completed",
            last_activity=func.now(),
        )
        await self.jobs.complete_jobs_for(
            conversation.id, JobType.LENDER_QUALIFICATION,
            {"total_qualified_lenders": len(matches)},
        )
        await self.db.commit()

        await emit_to_conversation("lender_qualification_completed", conversation.id, {
            "conversation_id": str(conversation.id),
            "total_qualified_lenders": len(matches),
            "top_lender": top,
        })
        return {"success": True, "total_qualified_lenders": len(matches), "top_lender": top}
