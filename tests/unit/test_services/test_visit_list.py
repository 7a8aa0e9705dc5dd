"""Tests for the visit list projection."""

import pytest

from src.models.visit import ApprovalStatus, Visit, VisitStatus
from src.models.visit_actions import VisitAction
from src.services.gateway import Pagination, VisitPage
from src.services.reconciliation_flags import FillFlag
from src.services.visit_list import VisitListProjection
from tests.utils.factories import create_visit_data


def _page(*visits: Visit) -> VisitPage:
    return VisitPage(items=list(visits), pagination=Pagination(total_count=len(visits), page_size=50))


@pytest.fixture
def visits():
    return [
        Visit.model_validate(create_visit_data(schedule_id="S-1")),
        Visit.model_validate(create_visit_data(schedule_id="S-2", visit_status="Scheduled", approval_status="Pending")),
        Visit.model_validate(create_visit_data(schedule_id="S-3", visit_status="Scheduled", approval_status="Approved")),
    ]


@pytest.fixture
def projection(flags, visits):
    projection = VisitListProjection(flags)
    projection.replace(_page(*visits))
    return projection


@pytest.mark.unit
def test_replace_sets_items_and_pagination(projection):
    assert [visit.schedule_id for visit in projection.items] == ["S-1", "S-2", "S-3"]
    assert projection.pagination.total_count == 3


@pytest.mark.unit
def test_get_is_case_insensitive(projection):
    assert projection.get("s-2").schedule_id == "S-2"
    assert projection.get("missing") is None


@pytest.mark.unit
def test_rows_carry_flags_and_actions(projection, flags):
    """Test rows reflect the flag store and per-row action state."""
    flags.mark_recently_filled("S-3")

    rows = {row.visit.schedule_id: row for row in projection.rows()}

    assert rows["S-3"].fill_flag is FillFlag.RECENTLY_FILLED
    assert rows["S-3"].actions[VisitAction.FILL].enabled is False
    assert rows["S-1"].fill_flag is FillFlag.ABSENT
    assert rows["S-1"].actions[VisitAction.SUBMIT].enabled is True


@pytest.mark.unit
def test_rows_recomputed_on_flag_change(projection, flags):
    """Test a flag change invalidates cached rows."""
    first = projection.rows()
    assert projection.rows() == first

    flags.confirm("S-3")
    rows = {row.visit.schedule_id: row for row in projection.rows()}
    assert rows["S-3"].fill_flag is FillFlag.CONFIRMED_FILLED


@pytest.mark.unit
def test_merge_replaces_row_by_id(projection):
    """Test an action response replaces the matching row."""
    update = Visit.model_validate({"ScheduleID": "s-2", "ApprovalStatus": "Approved"})

    assert projection.merge(update) is True

    merged = projection.get("S-2")
    assert merged.approval_status is ApprovalStatus.APPROVED
    assert merged.visit_status is VisitStatus.SCHEDULED
    assert merged.farm_name is not None


@pytest.mark.unit
def test_merge_unknown_id(projection):
    assert projection.merge(Visit(schedule_id="S-9")) is False
    assert projection.merge(Visit()) is False


@pytest.mark.unit
def test_remove(projection):
    assert projection.remove("S-1") is True
    assert projection.remove("S-1") is False
    assert [visit.schedule_id for visit in projection.items] == ["S-2", "S-3"]


@pytest.mark.unit
def test_filters_narrow_rows(projection):
    """Test status filters combine and clear."""
    projection.set_filters(approval_statuses=["Approved", "pending"])
    assert {row.visit.schedule_id for row in projection.rows()} == {"S-2", "S-3"}

    projection.set_filters(approval_statuses=["Pending"], visit_statuses=["Scheduled"])
    assert [row.visit.schedule_id for row in projection.rows()] == ["S-2"]

    projection.clear_filters()
    assert len(projection.rows()) == 3


@pytest.mark.unit
def test_unknown_filter_value_raises(projection):
    with pytest.raises(ValueError):
        projection.set_filters(visit_statuses=["Archived"])
