# backend/mcacrm/services/fcs_service.py
"""
FCS (File Control Sheet) pipeline.

Two entry points:
- trigger_fcs queues an `fcs_analysis` job for the external worker, guarded
  against duplicate triggers within FCS_TRIGGER_WINDOW_SECONDS. The guard reads
  the job table under a row lock on the conversation, so it holds across
  restarts and across server instances.
- generate_and_save_fcs builds the report in-process: documents -> OCR ->
  LLM -> parsed metrics, stored as the single fcs_analyses row of the
  conversation.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from openai import APIConnectionError, APITimeoutError
from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.config import settings
from mcacrm.exceptions import ExternalServiceError, FCSGenerationError, NotFound, PreconditionFailed, ValidationFailed
from mcacrm.models import Document, FCSAnalysis, FCSResult, LeadDetails
from mcacrm.services.fcs_report_parser import REPORT_FORMAT_VERSION, parse_fcs_report
from mcacrm.services.job_queue import JobQueueService, JobType
from mcacrm.services.lead_service import LeadService, utcnow
from mcacrm.services.ocr_service import TextExtractor, text_extractor as default_extractor
from mcacrm.services.openai_client import get_openai_client
from mcacrm.services.storage import S3Storage, storage as default_storage
from mcacrm.websocket import emit_to_conversation

logger = logging.getLogger(__name__)

FCS_REQUIRED_FIELDS = ("monthly_revenue", "time_in_business_months")


@dataclass
class ExtractedDocument:
    filename: str
    text: str


# ============================================================================
# PROMPT & TEMPLATE
# ============================================================================

def build_statements_text(documents: List[ExtractedDocument], max_chars: Optional[int] = None) -> str:
    """Concatenate statements, each capped to keep the prompt bounded."""
    max_chars = max_chars or settings.FCS_MAX_CHARS_PER_DOCUMENT
    parts = []
    for doc in documents:
        text = doc.text
        if len(text) > max_chars:
            text = (
                text[:max_chars]
                + f"\n\n[Document truncated for analysis - showing first {max_chars:,} characters]"
            )
        parts.append(f"=== {doc.filename} ===\n{text}")
    return "\n\n".join(parts)


def build_fcs_prompt(documents: List[ExtractedDocument], business_name: str) -> str:
    count = len(documents)
    statements = build_statements_text(documents)
    return f"""First identify the business name from the bank statements: the account holder,
the header of each statement, and any "DBA" or "d/b/a" designation (include the DBA).

Start your response with exactly one line:
EXTRACTED_BUSINESS_NAME: <business name including DBA>
If no business name is visible, use:
EXTRACTED_BUSINESS_NAME: {business_name}

You are an experienced MCA (merchant cash advance) underwriter. Produce a File Control
Sheet (FCS) covering {count} month(s) of bank statements, inside one code block.
Do not use asterisks anywhere.

Combined bank statement data ({count} statements):
{statements}

Sections:

Monthly Financial Summary
One line per month with aligned columns:
Month Year  Deposits: $amount  Revenue: $amount  Neg Days: #  End Bal: $amount  #Dep: #

True Revenue
Count card/ACH sales, processor payouts (Stripe, Square, Shopify, PayPal), wires and
ordinary cash/ATM/mobile deposits. Exclude Zelle/Venmo transfers without a customer
memo, transfers between the merchant's own accounts, MCA or loan proceeds, tax refunds
and chargebacks. List exclusions month by month under "1a. Revenue Deductions" with
amount, date and the transaction description. Large unlabeled deposits stay in revenue
but are listed under "Items for Review".

MCA Deposits
Only ACH or wire credits naming a funder or containing Funding/Advance/Capital.

Recurring MCA Payments
List every active position separately: lender, amount, daily or weekly, and 3-5 sample
pull dates. Monthly debits are loans, except Headway, Channel Partners and OnDeck.

Recurring Transactions (Potential Hidden MCA)
Only debits with a fixed daily or weekly pattern and no clear lender name.

Debt-Consolidation Warnings
Flag the file ineligible if RAM Payment, Nexi, Fundamental or United First appears.

Observations
3-5 short notes on cash flow, overdrafts and MCA indicators.

Finish with a block titled "{count}-Month Summary" using exactly these lines:
- Business Name: <extracted business name>
- Position (ASSUME NEXT): <next position number>, e.g. 2 active -> 3
- Industry: <industry>
- Time in Business: <estimate>
- Average Deposits: $<amount>
- Average True Revenue: $<amount>
- Negative Days: <total across all months>
- Average Negative Days: <total / {count}>
- Average Number of Deposits: <number>
- Average Bank Balance: $<amount>
- State: <two-letter state>
- Positions: <lender $amount frequency, comma separated>

The number of lenders on the Positions line must match the active position count.
"""


def template_report(documents: List[ExtractedDocument], business_name: str) -> str:
    """Deterministic report used when the LLM is unavailable."""
    count = len(documents)
    total_chars = sum(len(doc.text) for doc in documents)
    listing = "\n".join(f"- {doc.filename}: {len(doc.text):,} characters extracted" for doc in documents)
    return f"""EXTRACTED_BUSINESS_NAME: {business_name}

FCS FINANCIAL ANALYSIS REPORT (TEMPLATE)

Automated analysis was unavailable; statements were extracted but not analyzed.
Manual underwriting review is required.

DOCUMENTS PROCESSED
{listing}
Total extracted text: {total_chars:,} characters

{count}-Month Summary
- Business Name: {business_name}
- Position (ASSUME NEXT): N/A
- Industry: N/A
- Time in Business: N/A
- Average Deposits: N/A
- Average True Revenue: N/A
- Negative Days: N/A
- Average Negative Days: N/A
- Average Number of Deposits: N/A
- Average Bank Balance: N/A
- State: N/A
- Positions: N/A
"""


# ============================================================================
# REPORT GENERATOR (LLM)
# ============================================================================

class FCSReportGenerator:
    """Ask the LLM for a report; fall back to the template when it is unreachable."""

    def __init__(self, client_factory: Callable = get_openai_client, timeout: Optional[float] = None):
        self.client_factory = client_factory
        self.timeout = timeout or settings.FCS_LLM_TIMEOUT_SECONDS

    async def generate(self, documents: List[ExtractedDocument], business_name: str) -> str:
        client = self.client_factory()
        if client is None:
            logger.warning("OpenAI not configured, using template FCS report")
            return template_report(documents, business_name)

        prompt = build_fcs_prompt(documents, business_name)
        logger.info(f"Requesting FCS report: {len(documents)} statements, prompt {len(prompt):,} chars")

        try:
            completion = await asyncio.wait_for(
                client.chat.completions.create(
                    model=settings.FCS_MODEL,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=0.2,
                    max_tokens=8192,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"FCS LLM call exceeded {self.timeout}s, using template report")
            return template_report(documents, business_name)
        except (APIConnectionError, APITimeoutError) as e:
            logger.error(f"FCS LLM unreachable ({e}), using template report")
            return template_report(documents, business_name)

        content = completion.choices[0].message.content if completion.choices else None
        if not content or not content.strip():
            logger.warning("FCS LLM returned empty content, using template report")
            return template_report(documents, business_name)

        logger.info(f"FCS report received ({len(content):,} chars)")
        return content


# ============================================================================
# SERVICE
# ============================================================================

class FCSService:
    """Trigger, generate and read FCS analyses for a conversation."""

    def __init__(
        self,
        db: AsyncSession,
        store: Optional[S3Storage] = None,
        extractor: Optional[TextExtractor] = None,
        generator: Optional[FCSReportGenerator] = None,
    ):
        self.db = db
        self.store = store or default_storage
        self.extractor = extractor or default_extractor
        self.generator = generator or FCSReportGenerator()
        self.leads = LeadService(db)
        self.jobs = JobQueueService(db)

    # ------------------------------------------------------------------
    # Queue trigger
    # ------------------------------------------------------------------

    async def trigger_fcs(self, conversation_ref) -> Dict[str, Any]:
        # Row lock serializes concurrent triggers for the same conversation
        conversation = await self.leads.get_conversation(conversation_ref, for_update=True)

        recent = await self.jobs.recent_job(
            conversation.id, JobType.FCS_ANALYSIS, settings.FCS_TRIGGER_WINDOW_SECONDS
        )
        if recent is not None:
            await self.db.rollback()
            logger.info(f"FCS trigger for {conversation.id} skipped: job {recent.id} is recent")
            return {
                "success": True,
                "status": "skipped",
                "job_id": str(recent.id),
                "message": "FCS was already triggered for this conversation in the last "
                           f"{settings.FCS_TRIGGER_WINDOW_SECONDS // 60} minutes",
            }

        # zero counts as missing
        missing = [field for field in FCS_REQUIRED_FIELDS if not getattr(conversation, field)]
        if missing:
            await self.db.rollback()
            raise PreconditionFailed(
                f"Missing required fields for FCS: {', '.join(missing)}", missing_fields=missing
            )

        industry = (await self.db.execute(
            select(LeadDetails.business_type).where(LeadDetails.conversation_id == conversation.id)
        )).scalar_one_or_none()

        job = await self.jobs.enqueue(JobType.FCS_ANALYSIS, conversation.id, {
            "monthly_revenue": float(conversation.monthly_revenue),
            "time_in_business_months": conversation.time_in_business_months,
            "credit_score": conversation.credit_score,
            "industry": industry,
        })
        await self.db.commit()

        await emit_to_conversation("fcs_triggered", conversation.id, {
            "conversation_id": str(conversation.id),
            "job_id": str(job.id),
        })
        return {"success": True, "status": "queued", "job_id": str(job.id)}

    # ------------------------------------------------------------------
    # In-process generation
    # ------------------------------------------------------------------

    async def generate_and_save_fcs(self, conversation_ref, business_name: Optional[str] = None) -> Dict[str, Any]:
        conversation = await self.leads.get_conversation(conversation_ref)
        business_name = business_name or conversation.business_name or "Unknown Business"
        logger.info(f"Starting FCS generation for {conversation.id} ({business_name})")

        analysis_id = await self._start_analysis(conversation.id)

        try:
            documents = (await self.db.execute(
                select(Document)
                .where(Document.conversation_id == conversation.id)
                .order_by(Document.created_at.asc())
            )).scalars().all()
            if not documents:
                raise FCSGenerationError("No documents found for this conversation")

            extracted = await self.extract_documents(documents)
            if not extracted:
                raise FCSGenerationError("No text could be extracted from any documents")
            logger.info(f"Extracted text from {len(extracted)}/{len(documents)} documents")

            report = await self.generator.generate(extracted, business_name)
            metrics = parse_fcs_report(report)

            await self.db.execute(
                update(FCSAnalysis)
                .where(FCSAnalysis.id == analysis_id)
                .values(
                    extracted_business_name=metrics.extracted_business_name or business_name,
                    statement_count=len(extracted),
                    fcs_report=report,
                    average_deposits=metrics.average_deposits,
                    average_revenue=metrics.average_revenue,
                    total_negative_days=metrics.total_negative_days,
                    average_negative_days=metrics.average_negative_days,
                    state=metrics.state,
                    industry=metrics.industry,
                    position_count=metrics.position_count,
                    status="completed",
                    error_message=None,
                    completed_at=func.now(),
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self._mark_failed(analysis_id, str(e))
            logger.error(f"FCS generation failed for {conversation.id}: {e}")
            raise

        logger.info(f"FCS generation completed for {conversation.id} (analysis {analysis_id})")
        return {
            "success": True,
            "analysis_id": str(analysis_id),
            "statement_count": len(extracted),
            "report_format_version": REPORT_FORMAT_VERSION,
            "metrics": metrics.to_dict(),
        }

    async def extract_documents(self, documents) -> List[ExtractedDocument]:
        """One failed document never stops the others."""
        extracted = []
        for index, doc in enumerate(documents, start=1):
            logger.info(f"Processing {index}/{len(documents)}: {doc.original_filename}")
            try:
                data = await self.store.download_bytes(doc.s3_key, bucket=doc.s3_bucket)
                text = await self.extractor.extract(data, doc.original_filename)
            except ExternalServiceError as e:
                logger.error(f"Failed to process {doc.original_filename}: {e.message}")
                continue
            except Exception as e:
                logger.exception(f"Unexpected error processing {doc.original_filename}: {e}")
                continue
            if text and text.strip():
                extracted.append(ExtractedDocument(filename=doc.original_filename, text=text))
            else:
                logger.warning(f"No text extracted from {doc.original_filename}")
        return extracted

    async def _start_analysis(self, conversation_id: uuid.UUID) -> uuid.UUID:
        """Upsert the conversation's analysis row into `processing`."""
        stmt = pg_insert(FCSAnalysis).values(
            id=uuid.uuid4(),
            conversation_id=conversation_id,
            status="processing",
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FCSAnalysis.conversation_id],
            set_={
                "status": "processing",
                "created_at": func.now(),
                "error_message": None,
                "completed_at": None,
            },
        ).returning(FCSAnalysis.id)
        analysis_id = (await self.db.execute(stmt)).scalar_one()
        await self.db.commit()
        return analysis_id

    async def _mark_failed(self, analysis_id: uuid.UUID, message: str):
        await self.db.execute(
            update(FCSAnalysis)
            .where(FCSAnalysis.id == analysis_id)
            .values(status="failed", error_message=message, completed_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def get_analysis(self, conversation_ref) -> Dict[str, Any]:
        conversation = await self.leads.get_conversation(conversation_ref)
        analysis = (await self.db.execute(
            select(FCSAnalysis).where(FCSAnalysis.conversation_id == conversation.id)
        )).scalar_one_or_none()
        if analysis is None:
            raise NotFound("No FCS analysis found", conversation_id=str(conversation.id))
        return analysis.to_dict()

    async def get_status(self, conversation_ref) -> Dict[str, Any]:
        analysis = await self.get_analysis(conversation_ref)
        return {
            "status": analysis["status"],
            "error_message": analysis["error_message"],
            "created_at": analysis["created_at"],
            "completed_at": analysis["completed_at"],
        }

    # ------------------------------------------------------------------
    # Worker results
    # ------------------------------------------------------------------

    async def save_fcs_results(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Worker callback: persist the result, settle the job, notify."""
        conversation_ref = payload.get("conversation_id")
        if not conversation_ref:
            raise ValidationFailed("conversation_id is required", fields=["conversation_id"])
        conversation = await self.leads.get_conversation(conversation_ref)

        result = FCSResult(
            id=uuid.uuid4(),
            conversation_id=conversation.id,
            max_funding_amount=payload.get("max_funding_amount"),
            recommended_term_months=payload.get("recommended_term_months"),
            estimated_payment=payload.get("estimated_payment"),
            factor_rate=payload.get("factor_rate"),
            risk_tier=payload.get("risk_tier") or "C",
            approval_probability=payload.get("approval_probability")
            if payload.get("approval_probability") is not None else 0.5,
            analysis_notes=payload.get("analysis_notes"),
        )
        self.db.add(result)
        await self.db.flush()

        result_data = result.to_dict()
        await self.leads.merge_metadata(
            conversation.id,
            {"fcs_completed_at": utcnow().isoformat(), "fcs_result_id": str(result.id)},
            current_step="fcs_completed",
            last_activity=func.now(),
        )
        await self.jobs.complete_jobs_for(conversation.id, JobType.FCS_ANALYSIS, result_data)
        await self.db.commit()

        logger.info(f"FCS results saved for {conversation.id}: tier {result.risk_tier}")
        await emit_to_conversation("fcs_completed", conversation.id, {
            "conversation_id": str(conversation.id),
            "fcs_result": result_data,
        })
        return result_data

    async def get_latest_result(self, conversation_ref) -> Dict[str, Any]:
        conversation = await self.leads.get_conversation(conversation_ref)
        result = (await self.db.execute(
            select(FCSResult)
            .where(FCSResult.conversation_id == conversation.id)
            .order_by(FCSResult.created_at.desc())
            .limit(1)
        )).scalar_one_or_none()
        if result is None:
            raise NotFound("No FCS results found", conversation_id=str(conversation.id))
        return result.to_dict()

    async def get_history(self, conversation_ref) -> List[Dict[str, Any]]:
        conversation = await self.leads.get_conversation(conversation_ref)
        results = (await self.db.execute(
            select(FCSResult)
            .where(FCSResult.conversation_id == conversation.id)
            .order_by(FCSResult.created_at.desc())
        )).scalars().all()
        return [r.to_dict() for r in results]

    async def delete_result(self, result_id) -> Dict[str, Any]:
        try:
            result_uuid = uuid.UUID(str(result_id))
        except ValueError:
            raise ValidationFailed(f"Invalid result id: {result_id}", fields=["id"])
        deleted = await self.db.execute(
            delete(FCSResult).where(FCSResult.id == result_uuid).returning(FCSResult.id)
        )
        if deleted.scalar_one_or_none() is None:
            await self.db.rollback()
            raise NotFound("FCS result not found", id=str(result_id))
        await self.db.commit()
        return {"id": str(result_uuid), "deleted": True}
