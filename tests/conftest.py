"""Shared pytest fixtures and configuration."""

import os
import pytest
from unittest.mock import AsyncMock, MagicMock
from freezegun import freeze_time

# Set test environment variables
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-key")
os.environ.setdefault("FARMVISIT_API_URL", "http://farmvisit.test")
os.environ.setdefault("RECONCILE_POLL_INTERVAL_SECONDS", "2")
os.environ.setdefault("RECONCILE_MAX_ATTEMPTS", "6")
os.environ.setdefault("RECONCILE_FLAG_TTL_SECONDS", "30")

from src.models.visit import Visit
from src.models.visit_detail import FilledForm, LayerVisitDetail
from src.services.gateway import MutationGateway, VisitPage
from src.services.reconciliation_flags import ReconciliationFlags
from src.utils.config import ReconciliationConfig
from tests.utils.factories import create_location, create_visit_data
from tests.utils.fakes import FakeClock, FakeSupabaseClient


@pytest.fixture
def draft_visit() -> Visit:
    return Visit.model_validate(create_visit_data())


@pytest.fixture
def pending_visit() -> Visit:
    return Visit.model_validate(create_visit_data(visit_status="Scheduled", approval_status="Pending"))


@pytest.fixture
def approved_visit() -> Visit:
    """Scheduled and approved, no location yet."""
    return Visit.model_validate(create_visit_data(visit_status="Scheduled", approval_status="Approved"))


@pytest.fixture
def in_progress_visit() -> Visit:
    return Visit.model_validate(create_visit_data(
        visit_status="InProgress",
        approval_status="Approved",
        location=create_location(),
        ActualVisitDate="2024-12-09T08:30:00Z",
    ))


@pytest.fixture
def flags() -> ReconciliationFlags:
    return ReconciliationFlags()


@pytest.fixture
def reconcile_config() -> ReconciliationConfig:
    return ReconciliationConfig(poll_interval_seconds=2, max_attempts=6, flag_ttl_seconds=30)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_gateway():
    """AsyncMock gateway whose reads return empty results by default."""
    gateway = MagicMock(spec=MutationGateway)
    for name in (
        "list_visits", "get", "create", "update", "submit", "process_approval",
        "start", "fill", "complete", "delete", "get_filled_form", "close",
    ):
        setattr(gateway, name, AsyncMock(name=name))
    gateway.list_visits.return_value = VisitPage()
    gateway.get_filled_form.return_value = FilledForm()
    gateway.fill.return_value = LayerVisitDetail(detail_id="D-1")
    return gateway


@pytest.fixture
def fake_supabase() -> FakeSupabaseClient:
    return FakeSupabaseClient()


@pytest.fixture
def freeze_time_fixture():
    """Fixture for freezing time in tests."""
    with freeze_time("2024-12-09 12:00:00") as frozen_time:
        yield frozen_time
