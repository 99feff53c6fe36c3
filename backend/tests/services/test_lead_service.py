# tests/services/test_lead_service.py
"""
Tests for the lead record manager

Coverage:
- Conversation references (display id vs UUID)
- Missing-column and constraint errors surfaced as field mapping errors (column + table)
- Create validation, empty updates, bulk delete bookkeeping

Run with: pytest tests/services/test_lead_service.py -v
"""

import pytest
from uuid import uuid4
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError

from mcacrm.exceptions import ConversationNotFound, FieldMappingError, ValidationFailed
from mcacrm.models import Conversation
from mcacrm.services.lead_service import (
    DEPENDENT_MODELS,
    LeadService,
    constraint_error_from,
    mapping_error_from,
    parse_conversation_ref,
)


def duplicate_phone_error():
    return IntegrityError(
        "UPDATE conversations SET lead_phone=$1",
        {},
        Exception(
            'duplicate key value violates unique constraint "ix_conversations_lead_phone"\n'
            "DETAIL:  Key (lead_phone)=(+15165550199) already exists."
        ),
    )


def missing_column_error():
    return DBAPIError(
        "UPDATE conversations SET funding_source=$1",
        {},
        Exception('column "funding_source" of relation "conversations" does not exist'),
    )


class TestConversationRef:

    def test_numeric_ref_is_display_id(self):
        column, value = parse_conversation_ref("1001")

        assert column is Conversation.display_id
        assert value == 1001

    def test_uuid_ref(self):
        ref = uuid4()

        for raw in (str(ref), ref):
            column, value = parse_conversation_ref(raw)
            assert column is Conversation.id
            assert value == ref

    def test_garbage_ref_rejected(self):
        with pytest.raises(ValidationFailed) as exc_info:
            parse_conversation_ref("lead-abc")

        assert exc_info.value.status_code == 400
        assert exc_info.value.fields == ["id"]


class TestMappingError:

    def test_missing_column_parsed(self):
        error = mapping_error_from(missing_column_error())

        assert isinstance(error, FieldMappingError)
        assert error.problematic_field == "funding_source"
        assert error.problematic_table == "conversations"
        assert error.to_dict()["problematicField"] == "funding_source"

    def test_other_errors_ignored(self):
        error = DBAPIError("SELECT 1", {}, Exception("deadlock detected"))

        assert mapping_error_from(error) is None


class TestConstraintError:

    def test_message_text_parsed(self):
        error = constraint_error_from(duplicate_phone_error(), "conversations")

        assert error.problematic_field == "lead_phone"
        assert error.problematic_table == "conversations"
        assert "ix_conversations_lead_phone" in error.message

    def test_driver_diagnostics_preferred(self):
        class UniqueViolation(Exception):
            column_name = None
            table_name = "lead_details"
            constraint_name = "lead_details_conversation_id_key"
            detail = "Key (conversation_id)=(abc) already exists."

        wrapped = Exception("duplicate key")
        wrapped.__cause__ = UniqueViolation()

        error = constraint_error_from(IntegrityError("INSERT", {}, wrapped))

        assert error.problematic_field == "conversation_id"
        assert error.problematic_table == "lead_details"
        assert error.to_dict()["problematicTable"] == "lead_details"


class TestLeadService:

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, mock_db):
        with pytest.raises(ConversationNotFound) as exc_info:
            await LeadService(mock_db).get_conversation("1001")

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_create_requires_name_and_phone(self, mock_db):
        with pytest.raises(ValidationFailed) as exc_info:
            await LeadService(mock_db).create_lead({"businessName": "Acme", "email": "a@b.com"})

        assert exc_info.value.fields == ["lead_phone"]
        mock_db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_starts_in_new_state(self, mock_db):
        service = LeadService(mock_db)
        service.get_lead = AsyncMock(return_value={"state": "NEW"})

        await service.create_lead({
            "businessName": "Acme",
            "primaryPhone": "5165550123",
            "leadStatus": "FUNDED",
            "industryType": "Retail",
        })

        conversation = mock_db.add.call_args.args[0]
        assert conversation.state == "NEW"
        assert conversation.current_step == "initial_contact"
        assert conversation.priority == 0
        # lead_details upsert
        mock_db.execute.assert_awaited_once()
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_update_returns_current_record(self, mock_db, sample_conversation):
        service = LeadService(mock_db)
        service.get_conversation = AsyncMock(return_value=sample_conversation)
        service.get_lead = AsyncMock(return_value={"business_name": "Acme Plumbing LLC"})

        result = await service.update_lead("1001", {"unknownField": 1})

        assert result == {"business_name": "Acme Plumbing LLC"}
        mock_db.execute.assert_not_awaited()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_missing_column_raises_mapping_error(self, mock_db, sample_conversation):
        service = LeadService(mock_db)
        service.get_conversation = AsyncMock(return_value=sample_conversation)
        mock_db.execute.side_effect = missing_column_error()

        with pytest.raises(FieldMappingError) as exc_info:
            await service.update_lead("1001", {"businessName": "Renamed"})

        assert exc_info.value.problematic_table == "conversations"
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_duplicate_phone_is_client_error(self, mock_db, sample_conversation):
        service = LeadService(mock_db)
        service.get_conversation = AsyncMock(return_value=sample_conversation)
        mock_db.execute.side_effect = duplicate_phone_error()

        with pytest.raises(FieldMappingError) as exc_info:
            await service.update_lead("1001", {"primaryPhone": "+15165550199"})

        assert exc_info.value.status_code == 400
        assert exc_info.value.problematic_field == "lead_phone"
        assert exc_info.value.problematic_table == "conversations"
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_details_constraint_names_details_table(self, mock_db, sample_conversation):
        service = LeadService(mock_db)
        service.get_conversation = AsyncMock(return_value=sample_conversation)
        service.upsert_lead_details = AsyncMock(side_effect=IntegrityError(
            "INSERT INTO lead_details", {},
            Exception('null value in column "conversation_id" violates not-null constraint'),
        ))

        with pytest.raises(FieldMappingError) as exc_info:
            await service.update_lead("1001", {"industryType": "Retail"})

        assert exc_info.value.problematic_field == "conversation_id"
        assert exc_info.value.problematic_table == "lead_details"


class TestBulkDelete:

    @pytest.mark.asyncio
    async def test_invalid_ids_only(self, mock_db):
        with pytest.raises(ValidationFailed):
            await LeadService(mock_db).bulk_delete(["nope", ""])

    @pytest.mark.asyncio
    async def test_failed_dependent_table_reported(self, mock_db, db_result):
        conversation_id = uuid4()
        savepoint = MagicMock()
        savepoint.__aenter__.return_value = None
        savepoint.__aexit__.return_value = False
        mock_db.begin_nested = MagicMock(return_value=savepoint)

        outcomes = [db_result(rowcount=1) for _ in DEPENDENT_MODELS]
        outcomes[2] = SQLAlchemyError("permission denied")
        outcomes.append(db_result(rows=[(conversation_id,)]))
        mock_db.execute.side_effect = outcomes

        result = await LeadService(mock_db).bulk_delete([str(conversation_id), "not-a-uuid"])

        assert result["deleted_count"] == 1
        assert result["deleted_ids"] == [str(conversation_id)]
        assert result["failed_tables"] == [DEPENDENT_MODELS[2].__tablename__]
        mock_db.commit.assert_awaited_once()
