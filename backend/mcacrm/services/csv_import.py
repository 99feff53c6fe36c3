"""Bulk lead upload from CSV files."""

import csv
import io
import logging
import re
import uuid
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.config import settings
from mcacrm.exceptions import NotFound, ValidationFailed
from mcacrm.models import Conversation, CsvImport, LeadDetails
from mcacrm.services.field_mapping import parse_date

logger = logging.getLogger(__name__)


# Ordered header synonyms; the first header present with a value wins
HEADER_SYNONYMS = {
    'business_name': ['Company Name', 'Company', 'Business', 'Business Name', 'Legal Name'],
    'lead_phone': ['Phone', 'Phone Number', 'Mobile', 'Cell'],
    'email': ['Email', 'Business Email'],
    'us_state': ['State', 'Business State', 'Province'],
    'city': ['City', 'Business City'],
    'zip': ['Zip', 'Zip Code'],
    'address': ['Address', 'Business Address'],
    'first_name': ['First Name', 'Owner First Name'],
    'last_name': ['Last Name', 'Owner Last Name'],
    'business_type': ['Industry', 'Business Type'],
    'annual_revenue': ['Annual Revenue', 'Revenue', 'Sales'],
    'monthly_revenue': ['Monthly Revenue'],
    'funding_amount': ['Requested Amount', 'Funding Amount', 'Funding'],
    'tax_id': ['Tax ID', 'TaxID', 'EIN'],
    'ssn': ['SSN', 'Social Security'],
    'date_of_birth': ['DOB', 'Date of Birth'],
    'business_start_date': ['Start Date', 'Business Start Date', 'Est. Date'],
}

CONVERSATION_COLUMNS = [
    'business_name', 'lead_phone', 'email', 'us_state', 'city', 'zip', 'address',
    'first_name', 'last_name', 'monthly_revenue',
]
DETAIL_COLUMNS = [
    'business_type', 'annual_revenue', 'funding_amount', 'tax_id', 'ssn',
    'date_of_birth', 'business_start_date',
]
MONEY_FIELDS = {'annual_revenue', 'monthly_revenue', 'funding_amount'}
DATE_FIELDS = {'date_of_birth', 'business_start_date'}

_HEADER_NOISE = re.compile(r'[\s_\-]')
_NON_NUMERIC = re.compile(r'[^0-9.]')


def normalize_header(header: Optional[str]) -> str:
    return _HEADER_NOISE.sub('', str(header or '').lower())


def parse_csv_file(file_content: bytes) -> Tuple[List[str], List[Dict[str, Any]]]:
    """Parse CSV file and return headers and rows."""
    try:
        text_content = file_content.decode('utf-8-sig')
    except UnicodeDecodeError:
        text_content = file_content.decode('latin-1')

    csv_reader = csv.DictReader(io.StringIO(text_content))
    headers = csv_reader.fieldnames or []
    rows = list(csv_reader)
    return headers, rows


def build_column_mapping(headers: List[str]) -> Dict[str, List[str]]:
    """For each lead field, the file's headers that match its synonyms, in priority order."""
    by_normalized: Dict[str, List[str]] = {}
    for header in headers:
        by_normalized.setdefault(normalize_header(header), []).append(header)

    mapping = {}
    for field, synonyms in HEADER_SYNONYMS.items():
        matched = []
        for synonym in synonyms:
            for header in by_normalized.get(normalize_header(synonym), []):
                if header not in matched:
                    matched.append(header)
        if matched:
            mapping[field] = matched
    return mapping


def clean_money(value: Optional[str]) -> Optional[Decimal]:
    if not value:
        return None
    cleaned = _NON_NUMERIC.sub('', value)
    if not cleaned or cleaned.count('.') > 1:
        return None
    return Decimal(cleaned)


def clean_date(value: Optional[str]) -> Optional[date]:
    """None when the value is not a recognizable date."""
    try:
        return parse_date(value)
    except ValueError:
        return None


def map_row(row: Dict[str, Any], mapping: Dict[str, List[str]]) -> Optional[Dict[str, Any]]:
    """
    Map one CSV row onto lead fields.

    Returns None for rows with neither a business name nor a phone.
    """
    values: Dict[str, Any] = {}
    for field, headers in mapping.items():
        for header in headers:
            raw = row.get(header)
            if raw is not None and str(raw).strip():
                values[field] = str(raw).strip()
                break

    if not values.get('business_name') and not values.get('lead_phone'):
        return None

    for field in MONEY_FIELDS:
        values[field] = clean_money(values.get(field))
    for field in DATE_FIELDS:
        values[field] = clean_date(values.get(field))

    if not values.get('monthly_revenue') and values.get('annual_revenue'):
        values['monthly_revenue'] = (values['annual_revenue'] / 12).quantize(Decimal('0.01'))

    return values


class CsvImportService:
    """Import leads from CSV uploads and report on past imports."""

    def __init__(self, db: AsyncSession, batch_size: Optional[int] = None):
        self.db = db
        self.batch_size = batch_size or settings.CSV_IMPORT_BATCH_SIZE

    async def import_file(self, filename: str, content: bytes) -> Dict[str, Any]:
        if not content:
            raise ValidationFailed("File is empty", fields=["csvFile"])

        try:
            headers, rows = parse_csv_file(content)
        except csv.Error as e:
            raise ValidationFailed(f"Failed to parse CSV file: {e}", fields=["csvFile"]) from e

        mapping = build_column_mapping(headers)
        record = CsvImport(
            id=uuid.uuid4(),
            filename=f"{uuid.uuid4().hex}-{filename}",
            original_filename=filename,
            status='processing',
            total_rows=len(rows),
            imported_rows=0,
            error_rows=0,
            errors=[],
            column_mapping=mapping,
        )
        self.db.add(record)
        await self.db.commit()
        import_id = record.id

        logger.info(f"Processing CSV {filename}: {len(rows)} rows, mapped fields {sorted(mapping)}")

        errors: List[Dict[str, Any]] = []
        leads: List[Dict[str, Any]] = []
        for index, row in enumerate(rows, start=1):
            try:
                lead = map_row(row, mapping)
            except (ValueError, ArithmeticError) as e:
                errors.append({'row': index, 'error': str(e)})
                continue
            if lead is not None:
                leads.append(lead)

        imported = 0
        skipped = 0
        try:
            for start in range(0, len(leads), self.batch_size):
                batch = leads[start:start + self.batch_size]
                inserted = await self._insert_batch(import_id, batch)
                imported += inserted
                skipped += len(batch) - inserted
                await self.db.commit()
                logger.info(f"CSV import {import_id}: {imported} imported so far")
        except Exception as e:
            await self.db.rollback()
            logger.error(f"CSV import {import_id} failed: {e}")
            await self._finish(import_id, 'failed', imported, errors + [{'row': None, 'error': str(e)}])
            raise

        await self._finish(import_id, 'completed', imported, errors)
        logger.info(
            f"CSV import {import_id} completed: {imported} imported, "
            f"{skipped} duplicate phones skipped, {len(errors)} errors"
        )
        return {
            'success': True,
            'import_id': str(import_id),
            'imported_count': imported,
            'skipped_count': skipped,
            'errors': errors,
        }

    async def _insert_batch(self, import_id: uuid.UUID, batch: List[Dict[str, Any]]) -> int:
        """Insert conversations (duplicate phones skipped), then upsert details for the new ones."""
        rows = []
        for lead in batch:
            lead['id'] = uuid.uuid4()
            rows.append({
                'id': lead['id'],
                'csv_import_id': import_id,
                'state': 'NEW',
                'current_step': 'initial_contact',
                'priority': 0,
                **{column: lead.get(column) for column in CONVERSATION_COLUMNS},
            })

        stmt = (
            pg_insert(Conversation)
            .values(rows)
            .on_conflict_do_nothing(index_elements=[Conversation.lead_phone])
            .returning(Conversation.id)
        )
        result = await self.db.execute(stmt)
        inserted_ids = {row[0] for row in result.all()}

        details = [
            {
                'id': uuid.uuid4(),
                'conversation_id': lead['id'],
                **{column: lead.get(column) for column in DETAIL_COLUMNS},
            }
            for lead in batch
            if lead['id'] in inserted_ids and any(lead.get(column) for column in DETAIL_COLUMNS)
        ]
        if details:
            detail_stmt = pg_insert(LeadDetails).values(details)
            detail_stmt = detail_stmt.on_conflict_do_update(
                index_elements=[LeadDetails.conversation_id],
                set_={
                    **{column: detail_stmt.excluded[column] for column in DETAIL_COLUMNS},
                    'updated_at': func.now(),
                },
            )
            await self.db.execute(detail_stmt)

        return len(inserted_ids)

    async def _finish(self, import_id: uuid.UUID, status: str, imported: int, errors: List[Dict[str, Any]]):
        await self.db.execute(
            update(CsvImport)
            .where(CsvImport.id == import_id)
            .values(
                status=status,
                imported_rows=imported,
                error_rows=len(errors),
                errors=errors[:100],
                completed_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def get_history(self, limit: int = 20, offset: int = 0) -> Dict[str, Any]:
        result = await self.db.execute(
            select(CsvImport).order_by(CsvImport.created_at.desc()).limit(limit).offset(offset)
        )
        total = (await self.db.execute(select(func.count()).select_from(CsvImport))).scalar()
        return {
            'imports': [i.to_dict() for i in result.scalars().all()],
            'total': total or 0,
        }

    async def get_import(self, import_id) -> Dict[str, Any]:
        record = await self.db.get(CsvImport, self._parse_id(import_id))
        if record is None:
            raise NotFound("Import not found", import_id=str(import_id))
        return record.to_dict()

    async def get_import_conversations(self, import_id) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(Conversation)
            .where(Conversation.csv_import_id == self._parse_id(import_id))
            .order_by(Conversation.created_at.desc())
        )
        return [c.to_dict() for c in result.scalars().all()]

    @staticmethod
    def _parse_id(import_id) -> uuid.UUID:
        try:
            return import_id if isinstance(import_id, uuid.UUID) else uuid.UUID(str(import_id))
        except ValueError:
            raise ValidationFailed(f"Invalid import id: {import_id}", fields=["importId"])
