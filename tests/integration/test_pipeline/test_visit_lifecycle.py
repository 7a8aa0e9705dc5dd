"""End-to-end tests: session actions through the Supabase gateway."""

import pytest
from datetime import datetime, timezone

from src.models.visit import ApprovalStatus, VisitStatus
from src.models.visit_actions import CompleteRequest, VisitAction
from src.models.visit_detail import LayerVisitDetail
from src.services.reconciliation_flags import FillFlag
from src.services.supabase_gateway import DETAIL_TABLES, HISTORY_TABLE, SupabaseVisitGateway
from src.services.visit_session import VisitScheduleSession
from src.utils.errors import InvalidTransitionError
from tests.utils.assertions import assert_visit_state
from tests.utils.factories import create_layer_form_data, create_visit_data

NOW = datetime(2024, 12, 9, 12, 0, tzinfo=timezone.utc)
LOCATION = "9.03,38.74"
LAYER_TABLE = DETAIL_TABLES[LayerVisitDetail]


@pytest.fixture
def session(fake_supabase, reconcile_config, fake_clock):
    gateway = SupabaseVisitGateway(client=fake_supabase, now=lambda: NOW)
    return VisitScheduleSession(
        gateway,
        actor_id="A-1",
        config=reconcile_config,
        sleep=fake_clock.sleep,
        clock=fake_clock.time,
    )


def _row(session, schedule_id):
    return next(row for row in session.rows() if row.visit.key == schedule_id.lower())


@pytest.mark.integration
@pytest.mark.asyncio
async def test_visit_lifecycle_from_draft_to_completed(session, fake_supabase, fake_clock):
    """Test create, submit, approve, fill (auto-start), confirm and complete."""
    created = await session.create(create_visit_data())
    assert created.ok, created.message
    schedule_id = created.visit.schedule_id
    assert _row(session, schedule_id).visit.created_by == "A-1"

    submitted = await session.submit(schedule_id)
    assert submitted.ok, submitted.message

    approved = await session.process_approval(schedule_id, {"Action": "Approve", "ApprovedBy": "M-1"})
    assert approved.ok, approved.message
    row = _row(session, schedule_id)
    assert_visit_state(row.visit, VisitStatus.SCHEDULED, ApprovalStatus.APPROVED)
    assert row.actions[VisitAction.FILL].enabled is True
    assert row.actions[VisitAction.EDIT].enabled is False

    filled = await session.fill(schedule_id, create_layer_form_data(location=LOCATION))
    assert filled.ok, filled.message
    row = _row(session, schedule_id)
    assert_visit_state(row.visit, VisitStatus.IN_PROGRESS, ApprovalStatus.APPROVED)
    assert row.visit.location == LOCATION
    assert row.fill_flag is FillFlag.RECENTLY_FILLED

    await session.reconciler.wait()
    assert fake_clock.now == 2
    assert _row(session, schedule_id).fill_flag is FillFlag.CONFIRMED_FILLED

    refreshed = await session.refresh()
    assert refreshed.ok
    assert session.flags.state(schedule_id) is FillFlag.ABSENT

    incomplete = await session.complete(schedule_id, {})
    assert incomplete.ok is False
    assert incomplete.reasons == ["Visit summary is required"]

    completed = await session.complete(schedule_id, {"VisitSummary": "Flock healthy, vaccination due"})
    assert completed.ok, completed.message
    row = _row(session, schedule_id)
    assert_visit_state(row.visit, VisitStatus.COMPLETED, ApprovalStatus.APPROVED)
    assert row.visit.actual_visit_date == NOW
    assert row.actions[VisitAction.FILL].enabled is False

    history = [entry["action"] for entry in fake_supabase.tables[HISTORY_TABLE]]
    assert history == ["Create", "Submit", "Approve", "Start", "Complete"]

    repeat = await session.gateway.complete(schedule_id, CompleteRequest(visit_summary="Flock healthy, vaccination due"))
    assert repeat.visit_status is VisitStatus.COMPLETED
    assert len(fake_supabase.tables[HISTORY_TABLE]) == len(history)

    viewed = await session.view_filled_form(schedule_id)
    assert viewed.ok
    assert viewed.filled_form.saved_location == LOCATION

    await session.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rejected_then_postponed_then_deleted(session, fake_supabase):
    created = await session.create(create_visit_data())
    schedule_id = created.visit.schedule_id
    await session.submit(schedule_id)

    rejected = await session.process_approval(schedule_id, {"Action": "Reject", "ApprovedBy": "M-1"})
    assert rejected.ok is False
    assert "Reason" in rejected.field_errors

    rejected = await session.process_approval(
        schedule_id, {"Action": "Reject", "ApprovedBy": "M-1", "Reason": "Farm unreachable"}
    )
    assert rejected.ok, rejected.message
    assert _row(session, schedule_id).visit.rejection_reason == "Farm unreachable"
    assert _row(session, schedule_id).actions[VisitAction.EDIT].enabled is True

    postponed = await session.process_approval(
        schedule_id, {"Action": "Postpone", "ApprovedBy": "M-1", "PostponedDate": "2025-01-15T09:00:00Z"}
    )
    assert postponed.ok, postponed.message
    assert _row(session, schedule_id).visit.proposed_date == datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    deleted = await session.delete(schedule_id)
    assert deleted.ok
    assert session.rows() == []

    missing = await session.start(schedule_id, LOCATION)
    assert missing.ok is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_fill_retry_after_save_failure_following_start(session, fake_supabase):
    """Test a failed form save after the automatic start leaves the row InProgress and a retry succeeds."""
    created = await session.create(create_visit_data())
    schedule_id = created.visit.schedule_id
    await session.submit(schedule_id)
    await session.process_approval(schedule_id, {"Action": "Approve", "ApprovedBy": "M-1"})

    fake_supabase.errors[(LAYER_TABLE, "insert")] = RuntimeError("boom")
    failed = await session.fill(schedule_id, create_layer_form_data(location=LOCATION))

    assert failed.ok is False
    assert "Failed to save visit form" in failed.message
    assert_visit_state(_row(session, schedule_id).visit, VisitStatus.IN_PROGRESS, ApprovalStatus.APPROVED)
    assert session.flags.state(schedule_id) is FillFlag.ABSENT

    del fake_supabase.errors[(LAYER_TABLE, "insert")]
    retried = await session.fill(schedule_id, create_layer_form_data(location=LOCATION))

    assert retried.ok, retried.message
    assert [entry["action"] for entry in fake_supabase.tables[HISTORY_TABLE]].count("Start") == 1
    assert len(fake_supabase.tables[LAYER_TABLE]) == 1
    await session.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_server_refuses_fill_on_draft(session, fake_supabase):
    created = await session.create(create_visit_data())
    schedule_id = created.visit.schedule_id

    with pytest.raises(InvalidTransitionError):
        await session.gateway.fill("LAYER", {**create_layer_form_data(location=LOCATION), "ScheduleID": schedule_id})

    assert fake_supabase.tables.get(LAYER_TABLE, []) == []
