# tests/integration/test_lead_store_integration.py
"""
Lead store behaviour against a real database

Coverage:
- Display id sequence and lookup by either reference
- lead_details stays a single row per conversation across updates
- Duplicate phone rejected
- Lender match set replaced, never appended
- Bulk delete clears dependents

Run with: TEST_DATABASE_URL=postgresql://... pytest tests/integration -v
"""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select, text

from mcacrm.exceptions import ValidationFailed
from mcacrm.models import Conversation, LeadDetails, LenderMatch, Message
from mcacrm.services.lead_service import LeadService
from mcacrm.services.lender_matcher import LenderQualificationService


@pytest.fixture
def leads(db_session):
    return LeadService(db_session)


@pytest.mark.asyncio
async def test_database_connection(db_session):
    result = await db_session.execute(text("SELECT 1"))
    assert result.scalar() == 1


@pytest.mark.asyncio
async def test_create_and_lookup_by_display_id(leads):
    lead = await leads.create_lead({
        "businessName": "Integration Plumbing",
        "primaryPhone": "+15165550101",
        "industryType": "Plumbing",
    })

    assert lead["display_id"] >= 1000
    assert lead["state"] == "NEW"
    assert lead["business_type"] == "Plumbing"

    by_display = await leads.get_lead(str(lead["display_id"]))
    by_uuid = await leads.get_lead(lead["id"])
    assert by_display["id"] == by_uuid["id"] == lead["id"]


@pytest.mark.asyncio
async def test_details_upserted_in_place(leads, db_session):
    lead = await leads.create_lead({"businessName": "Upsert Co", "primaryPhone": "+15165550102"})

    await leads.update_lead(lead["id"], {"annualRevenue": "540000", "industryType": "Retail"})
    updated = await leads.update_lead(lead["id"], {"annualRevenue": "600000"})

    count = await db_session.execute(
        select(func.count()).select_from(LeadDetails).where(LeadDetails.conversation_id == uuid.UUID(updated["id"]))
    )
    assert count.scalar() == 1
    assert updated["annual_revenue"] == 600000.0
    assert updated["business_type"] == "Retail"


@pytest.mark.asyncio
async def test_duplicate_phone_rejected(leads):
    await leads.create_lead({"businessName": "First", "primaryPhone": "+15165550103"})

    with pytest.raises(ValidationFailed) as exc_info:
        await leads.create_lead({"businessName": "Second", "primaryPhone": "+15165550103"})

    assert exc_info.value.fields == ["lead_phone"]


@pytest.mark.asyncio
async def test_lender_matches_replaced(leads, db_session):
    lead = await leads.create_lead({"businessName": "Match Co", "primaryPhone": "+15165550104"})
    conversation_id = uuid.UUID(lead["id"])
    service = LenderQualificationService(db_session)

    await service.save_lender_matches(conversation_id, [
        {"lender_name": "Alpha Funding", "qualified": True, "tier": 1},
        {"lender_name": "Beta Capital", "qualified": False, "blocking_reason": "Credit too low"},
    ])
    await service.save_lender_matches(conversation_id, [
        {"lender_name": "Gamma Advance", "qualified": True, "tier": 2, "match_score": Decimal("81.50")},
    ])
    await db_session.commit()

    result = await db_session.execute(
        select(LenderMatch.lender_name).where(LenderMatch.conversation_id == conversation_id)
    )
    assert result.scalars().all() == ["Gamma Advance"]


@pytest.mark.asyncio
async def test_bulk_delete_removes_dependents(leads, db_session):
    lead = await leads.create_lead({
        "businessName": "Gone Co", "primaryPhone": "+15165550105", "industryType": "Retail",
    })
    conversation_id = uuid.UUID(lead["id"])
    db_session.add(Message(conversation_id=conversation_id, direction="outbound", content="Hi", status="sent"))
    await db_session.commit()

    result = await leads.bulk_delete([conversation_id, "not-a-uuid"])

    assert result["deleted_count"] == 1
    assert result["failed_tables"] == []
    for model in (Conversation, LeadDetails, Message):
        column = Conversation.id if model is Conversation else model.conversation_id
        count = await db_session.execute(select(func.count()).select_from(model).where(column == conversation_id))
        assert count.scalar() == 0
