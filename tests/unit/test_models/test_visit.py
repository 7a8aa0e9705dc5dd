"""Tests for Visit model."""

import pytest
from datetime import datetime, timezone
from pydantic import ValidationError

from src.models.visit import (
    ApprovalStatus,
    FarmType,
    Visit,
    VisitStatus,
    normalize_visit_patch,
    visit_key,
)


@pytest.mark.unit
def test_visit_defaults():
    """Test a bare visit starts as an unsubmitted draft."""
    visit = Visit(schedule_id="S-1")

    assert visit.visit_status is VisitStatus.DRAFT
    assert visit.approval_status is ApprovalStatus.NONE
    assert visit.is_urgent is False
    assert visit.is_visit_completed is False
    assert visit.location is None


@pytest.mark.unit
@pytest.mark.parametrize("key", ["ScheduleID", "ScheduleId", "scheduleId", "schedule_id", "id"])
def test_schedule_id_aliases(key):
    """Test every id spelling lands on schedule_id."""
    visit = Visit.model_validate({key: "ABC-123"})
    assert visit.schedule_id == "ABC-123"


@pytest.mark.unit
@pytest.mark.parametrize("raw,expected", [
    ("In Progress", VisitStatus.IN_PROGRESS),
    ("in_progress", VisitStatus.IN_PROGRESS),
    ("INPROGRESS", VisitStatus.IN_PROGRESS),
    ("scheduled", VisitStatus.SCHEDULED),
    ("Canceled", VisitStatus.CANCELLED),
    ("", VisitStatus.DRAFT),
    (None, VisitStatus.DRAFT),
])
def test_visit_status_parsing(raw, expected):
    """Test visit status values are normalized at ingestion."""
    assert Visit.model_validate({"VisitStatus": raw}).visit_status is expected


@pytest.mark.unit
@pytest.mark.parametrize("raw,expected", [
    ("approve", ApprovalStatus.APPROVED),
    ("Approved", ApprovalStatus.APPROVED),
    ("denied", ApprovalStatus.REJECTED),
    ("rescheduled", ApprovalStatus.POSTPONED),
    ("pending approval", ApprovalStatus.PENDING),
    ("submitted", ApprovalStatus.PENDING),
    (None, ApprovalStatus.NONE),
])
def test_approval_status_parsing(raw, expected):
    """Test approval status synonyms."""
    assert Visit.model_validate({"ApprovalStatus": raw}).approval_status is expected


@pytest.mark.unit
def test_unknown_status_rejected():
    """Test unknown status values fail validation."""
    with pytest.raises(ValidationError):
        Visit.model_validate({"VisitStatus": "Archived"})

    with pytest.raises(ValidationError):
        Visit.model_validate({"ApprovalStatus": "maybe"})


@pytest.mark.unit
def test_status_synonym_keys():
    """Test alternate status column names are recognised."""
    visit = Visit.model_validate({"Status": "Scheduled", "approval_status_name": "Pending"})
    assert visit.visit_status is VisitStatus.SCHEDULED
    assert visit.approval_status is ApprovalStatus.PENDING


@pytest.mark.unit
@pytest.mark.parametrize("key", [
    "IsVisitCompleted", "IsDairyVisitCompleted", "IsVisitCompletedFlag", "IsCompleted", "IsCompletedFlag",
])
@pytest.mark.parametrize("value", [1, "1", "true", "Yes", True])
def test_completion_flag_variants(key, value):
    """Test every completion flag spelling folds into is_visit_completed."""
    assert Visit.model_validate({key: value}).is_visit_completed is True


@pytest.mark.unit
def test_completion_flag_falsy():
    """Test falsy completion values."""
    visit = Visit.model_validate({"IsCompleted": "0", "IsVisitCompletedFlag": None})
    assert visit.is_visit_completed is False


@pytest.mark.unit
def test_farm_type_parsing():
    """Test farm type codes are upper-cased."""
    assert Visit.model_validate({"FarmTypeCode": "dairy"}).farm_type is FarmType.DAIRY
    assert Visit.model_validate({"FarmType": "LAYER"}).farm_type is FarmType.LAYER
    assert Visit.model_validate({"FarmType": ""}).farm_type is None


@pytest.mark.unit
def test_blank_values_become_none():
    """Test blank strings are treated as absent."""
    visit = Visit.model_validate({"Location": "  ", "VisitSummary": "", "ActualVisitDate": ""})
    assert visit.location is None
    assert visit.visit_summary is None
    assert visit.actual_visit_date is None


@pytest.mark.unit
def test_first_non_empty_alias_wins():
    """Test a blank alias does not hide a populated one."""
    visit = Visit.model_validate({"ScheduleDate": "", "ProposedDate": "2024-12-20T09:00:00Z"})
    assert visit.proposed_date == datetime(2024, 12, 20, 9, 0, tzinfo=timezone.utc)


@pytest.mark.unit
def test_unknown_keys_preserved():
    """Test fields the model does not know survive ingestion."""
    visit = Visit.model_validate({"ScheduleID": "S-1", "RegionName": "Oromia"})
    assert visit.model_extra["RegionName"] == "Oromia"


@pytest.mark.unit
def test_to_payload_uses_wire_names():
    """Test payload serialization."""
    visit = Visit(schedule_id="S-1", farm_type=FarmType.LAYER, location="9.03,38.74", is_urgent=True)
    payload = visit.to_payload()

    assert payload["ScheduleID"] == "S-1"
    assert payload["FarmType"] == "LAYER"
    assert payload["Location"] == "9.03,38.74"
    assert payload["IsUrgent"] is True
    assert payload["VisitStatus"] == "Draft"
    assert "VisitSummary" not in payload


@pytest.mark.unit
def test_to_row_uses_field_names():
    """Test storage serialization."""
    row = Visit(schedule_id="S-1", approval_status=ApprovalStatus.PENDING).to_row()
    assert row["schedule_id"] == "S-1"
    assert row["approval_status"] == "Pending"
    assert "ScheduleID" not in row


@pytest.mark.unit
def test_merged_overlays_explicit_fields():
    """Test merge keeps fields the newer copy does not carry."""
    stored = Visit.model_validate({
        "ScheduleID": "S-1", "FarmName": "Green Acres", "IsVisitCompleted": True, "VisitStatus": "InProgress",
    })
    update = Visit.model_validate({"ScheduleID": "S-1", "VisitStatus": "Completed"})

    merged = stored.merged(update)

    assert merged.visit_status is VisitStatus.COMPLETED
    assert merged.farm_name == "Green Acres"
    assert merged.is_visit_completed is True


@pytest.mark.unit
def test_visit_key_case_insensitive():
    """Test GUID ids compare without case."""
    assert visit_key(" AbC-1 ") == "abc-1"
    assert visit_key(None) is None
    assert visit_key("") is None
    assert Visit(schedule_id="ABC").key == Visit(schedule_id="abc").key


@pytest.mark.unit
def test_normalize_visit_patch():
    """Test patch keys are canonicalized without validation."""
    patch = normalize_visit_patch({"Location": "9.03,38.74", "visitPurpose": "Vaccination", "Extra": 1})
    assert patch == {"location": "9.03,38.74", "visit_purpose": "Vaccination", "Extra": 1}
