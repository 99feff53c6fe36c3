# tests/services/test_agent_service.py
"""
Tests for the workflow agent read models and bulk writes

Coverage:
- Conversation context: chronological messages, summary counts
- Pending leads flattened with minutes idle and last message
- Batch update allowlist, value coercion and id validation
- Agent action log and listing
- Conversation stats

Run with: pytest tests/services/test_agent_service.py -v
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
from unittest.mock import AsyncMock, Mock

from sqlalchemy.dialects import postgresql

from mcacrm.exceptions import ConversationNotFound, ValidationFailed
from mcacrm.models import AgentAction, FCSResult, LenderMatch, Message
from mcacrm.services.agent_service import BATCH_UPDATE_COLUMNS, AgentService


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def service(mock_db, sample_conversation):
    service = AgentService(mock_db)
    service.leads.get_conversation = AsyncMock(return_value=sample_conversation)
    return service


def message(conversation_id, content, hour):
    return Message(
        id=uuid4(),
        conversation_id=conversation_id,
        direction="inbound",
        content=content,
        timestamp=datetime(2024, 1, 12, hour, tzinfo=timezone.utc),
    )


class TestConversationContext:

    @pytest.mark.asyncio
    async def test_context_assembled(self, service, mock_db, db_result, sample_conversation, sample_documents):
        conversation_id = sample_conversation.id
        service.leads.get_lead = AsyncMock(return_value={
            "id": str(conversation_id), "business_name": "Acme Plumbing LLC",
        })
        newest_first = [message(conversation_id, "second", 11), message(conversation_id, "first", 10)]
        fcs = FCSResult(id=uuid4(), conversation_id=conversation_id, risk_tier="B",
                        max_funding_amount=Decimal("40000"))
        match = LenderMatch(id=uuid4(), conversation_id=conversation_id, lender_name="Alpha Funding",
                            qualified=True, tier=1)
        mock_db.execute.side_effect = [
            db_result(scalars=newest_first),
            db_result(scalars=sample_documents),
            db_result(scalar=fcs),
            db_result(scalars=[match]),
        ]

        context = await service.conversation_context("1001")

        assert [m["content"] for m in context["messages"]] == ["first", "second"]
        assert context["fcs_results"]["risk_tier"] == "B"
        assert context["fcs_results"]["max_funding_amount"] == 40000.0
        assert context["qualified_lenders"][0]["lender_name"] == "Alpha Funding"
        assert context["summary"] == {
            "total_messages": 2,
            "total_documents": 3,
            "has_fcs_results": True,
            "qualified_lenders_count": 1,
        }

    @pytest.mark.asyncio
    async def test_context_without_fcs(self, service, mock_db, db_result, sample_conversation):
        service.leads.get_lead = AsyncMock(return_value={"id": str(sample_conversation.id)})
        mock_db.execute.side_effect = [db_result(), db_result(), db_result(), db_result()]

        context = await service.conversation_context(str(sample_conversation.id))

        assert context["fcs_results"] is None
        assert context["summary"]["has_fcs_results"] is False
        assert context["messages"] == []

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, mock_db):
        service = AgentService(mock_db)
        service.leads.get_lead = AsyncMock(side_effect=ConversationNotFound("999999"))

        with pytest.raises(ConversationNotFound):
            await service.conversation_context("999999")

        mock_db.execute.assert_not_awaited()


class TestPendingLeads:

    @pytest.mark.asyncio
    async def test_rows_flattened(self, service, mock_db, db_result, sample_conversation):
        mock_db.execute.side_effect = [
            db_result(rows=[(sample_conversation, Decimal("42.5"), "Send me the offer")]),
            db_result(scalar=7),
        ]

        result = await service.pending_leads("NEW", limit=10)

        assert result["total"] == 7
        lead = result["leads"][0]
        assert lead["conversation_id"] == str(sample_conversation.id)
        assert lead["phone"] == "(516) 555-0123"
        assert lead["minutes_since_last_activity"] == 42.5
        assert lead["last_message"] == "Send me the offer"
        assert lead["last_activity"] == "2024-01-12T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_state_filter_applies_to_total(self, service, mock_db, db_result):
        mock_db.execute.side_effect = [db_result(), db_result(scalar=0)]

        result = await service.pending_leads("QUALIFIED")

        count_stmt = mock_db.execute.await_args_list[1].args[0]
        assert count_stmt.compile(dialect=postgresql.dialect()).params == {"state_1": "QUALIFIED"}
        assert result == {"leads": [], "total": 0}


class TestBatchUpdate:

    @pytest.mark.asyncio
    async def test_allowlisted_columns_written(self, service, mock_db, db_result):
        ids = [str(uuid4()), str(uuid4())]
        mock_db.execute.return_value = db_result(rowcount=2)

        result = await service.batch_update(ids, {"state": "ACTIVE", "priority": "2", "ssn": "123-45-6789"})

        assert result["updated_count"] == 2
        assert result["updated_fields"] == ["priority", "state"]
        assert result["blocked_fields"] == ["ssn"]
        params = mock_db.execute.await_args.args[0].compile(dialect=postgresql.dialect()).params
        assert params["priority"] == 2
        assert params["state"] == "ACTIVE"
        assert "ssn" not in params
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_only_blocked_columns_rejected(self, service, mock_db):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.batch_update([str(uuid4())], {"business_name": "x; DROP TABLE"})

        assert exc_info.value.fields == ["business_name"]
        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("ids", [[], None, "abc"])
    async def test_ids_must_be_non_empty_list(self, service, ids):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.batch_update(ids, {"state": "ACTIVE"})

        assert exc_info.value.fields == ["conversation_ids"]

    @pytest.mark.asyncio
    async def test_invalid_id_rejected(self, service, mock_db):
        with pytest.raises(ValidationFailed):
            await service.batch_update([str(uuid4()), "1001"], {"state": "ACTIVE"})

        mock_db.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unparseable_priority_rejected(self, service, mock_db):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.batch_update([str(uuid4())], {"priority": "high"})

        assert exc_info.value.fields == ["priority"]
        mock_db.execute.assert_not_awaited()

    def test_allowlist_is_pipeline_columns_only(self):
        assert set(BATCH_UPDATE_COLUMNS) == {"state", "current_step", "priority", "lead_source"}


class TestAgentActions:

    @pytest.mark.asyncio
    async def test_action_logged(self, service, mock_db, sample_conversation):
        result = await service.log_action("1001", "follow_up_sent", {"channel": "sms"})

        action = mock_db.add.call_args.args[0]
        assert isinstance(action, AgentAction)
        assert action.conversation_id == sample_conversation.id
        assert action.performed_by == "workflow_agent"
        assert result["action_details"] == {"channel": "sms"}
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_action_type_required(self, service, mock_db):
        with pytest.raises(ValidationFailed) as exc_info:
            await service.log_action("1001", "")

        assert exc_info.value.fields == ["action_type"]
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_actions_listed(self, service, mock_db, db_result, sample_conversation):
        action = AgentAction(id=uuid4(), conversation_id=sample_conversation.id,
                             action_type="step_updated", action_details={}, performed_by="workflow_agent")
        mock_db.execute.return_value = db_result(scalars=[action])

        actions = await service.list_actions("1001", limit=5)

        assert [a["action_type"] for a in actions] == ["step_updated"]


class TestStats:

    @pytest.mark.asyncio
    async def test_stats_row(self, service, mock_db, db_result):
        row = Mock()
        row._mapping = {
            "total_conversations": 10, "new_count": 4, "active_count": 3, "qualified_count": 1,
            "funded_count": 1, "dead_count": 1, "avg_minutes_since_last_activity": Decimal("90.25"),
        }
        mock_db.execute.return_value = db_result(rows=[row])

        stats = await service.conversation_stats()

        assert stats["total_conversations"] == 10
        assert stats["new_count"] == 4
        assert stats["avg_minutes_since_last_activity"] == 90.25

    @pytest.mark.asyncio
    async def test_stats_empty_table(self, service, mock_db, db_result):
        row = Mock()
        row._mapping = {"total_conversations": 0, "avg_minutes_since_last_activity": None}
        mock_db.execute.return_value = db_result(rows=[row])

        stats = await service.conversation_stats()

        assert stats["avg_minutes_since_last_activity"] is None
