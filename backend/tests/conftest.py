# tests/conftest.py

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from sqlalchemy.ext.asyncio import AsyncSession

from mcacrm.models import Conversation, Document


def make_result(scalar=None, scalars=None, rows=None, rowcount=0):
    """A stand-in for an AsyncSession.execute() result."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = scalar
    result.scalar_one.return_value = scalar
    result.scalar.return_value = scalar
    result.scalars.return_value.all.return_value = scalars or []
    result.all.return_value = rows or []
    result.first.return_value = rows[0] if rows else None
    result.rowcount = rowcount
    return result


@pytest.fixture
def db_result():
    """Factory for execute() results."""
    return make_result


@pytest.fixture
def mock_db():
    """Mock async DB session; execute() returns an empty result by default."""
    db = Mock(spec=AsyncSession)
    db.execute = AsyncMock(return_value=make_result())
    db.get = AsyncMock(return_value=None)
    db.add = Mock()
    db.flush = AsyncMock()
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    db.refresh = AsyncMock()
    db.close = AsyncMock()
    return db


@pytest.fixture(autouse=True)
def silence_socketio():
    """No real Socket.IO fan-out during unit tests."""
    emit = AsyncMock()
    targets = [
        'mcacrm.services.messaging.emit_to_conversation',
        'mcacrm.services.messaging.broadcast',
        'mcacrm.services.fcs_service.emit_to_conversation',
        'mcacrm.services.lender_matcher.emit_to_conversation',
        'mcacrm.services.document_service.emit_to_conversation',
    ]
    patchers = [patch(target, emit) for target in targets]
    for p in patchers:
        p.start()
    yield emit
    for p in patchers:
        p.stop()


@pytest.fixture
def sample_conversation():
    return Conversation(
        id=uuid4(),
        display_id=1001,
        business_name="Acme Plumbing LLC",
        lead_phone="(516) 555-0123",
        email="owner@acmeplumbing.com",
        us_state="NY",
        state="NEW",
        current_step="initial_contact",
        priority=0,
        meta={},
        monthly_revenue=Decimal("45000.00"),
        time_in_business_months=36,
        credit_score=680,
        created_at=datetime(2024, 1, 10, tzinfo=timezone.utc),
        last_activity=datetime(2024, 1, 12, tzinfo=timezone.utc),
    )


@pytest.fixture
def sample_documents(sample_conversation):
    return [
        Document(
            id=uuid4(),
            conversation_id=sample_conversation.id,
            filename=f"stmt-{month}.pdf",
            original_filename=f"{month} statement.pdf",
            mime_type="application/pdf",
            s3_bucket="test-bucket",
            s3_key=f"documents/stmt-{month}.pdf",
        )
        for month in ("january", "february", "march")
    ]


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: unit tests")
    config.addinivalue_line("markers", "integration: integration tests")
    config.addinivalue_line("markers", "slow: slow running tests")
