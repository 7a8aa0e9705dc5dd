"""Tests for lifecycle action request models."""

import pytest
from datetime import datetime, timezone
from pydantic import ValidationError

from src.models.visit_actions import ApprovalAction, ApprovalRequest, CompleteRequest, VisitAction


@pytest.mark.unit
@pytest.mark.parametrize("raw,expected", [
    ("Approve", ApprovalAction.APPROVE),
    ("approved", ApprovalAction.APPROVE),
    ("REJECTED", ApprovalAction.REJECT),
    ("denied", ApprovalAction.REJECT),
    ("Postpone", ApprovalAction.POSTPONE),
    ("rescheduled", ApprovalAction.POSTPONE),
])
def test_approval_action_parse(raw, expected):
    """Test approval action spellings."""
    assert ApprovalAction.parse(raw) is expected


@pytest.mark.unit
def test_approval_action_maps_to_visit_action():
    """Test approval actions share names with lifecycle actions."""
    assert ApprovalAction.REJECT.visit_action is VisitAction.REJECT


@pytest.mark.unit
def test_approval_request_from_wire_payload():
    """Test the approval modal payload."""
    request = ApprovalRequest.model_validate({
        "Action": "Postpone",
        "ApprovedBy": "M-1",
        "PostponedDate": "2024-12-20T09:00:00Z",
        "AdditionalComments": "  Rain expected  ",
    })

    assert request.action is ApprovalAction.POSTPONE
    assert request.approver_id == "M-1"
    assert request.postponed_date == datetime(2024, 12, 20, 9, 0, tzinfo=timezone.utc)
    assert request.comments == "Rain expected"


@pytest.mark.unit
def test_approval_request_blank_reason_is_none():
    """Test a whitespace reason counts as missing."""
    request = ApprovalRequest(action="Reject", approver_id="M-1", reason="   ")
    assert request.reason is None


@pytest.mark.unit
def test_approval_request_unknown_action():
    """Test unknown actions fail validation."""
    with pytest.raises(ValidationError):
        ApprovalRequest.model_validate({"Action": "Escalate"})


@pytest.mark.unit
def test_approval_request_payload():
    """Test payload uses wire names."""
    payload = ApprovalRequest(action="Reject", approver_id="M-1", reason="Duplicate").to_payload()
    assert payload == {"Action": "Reject", "ApprovedBy": "M-1", "Reason": "Duplicate"}


@pytest.mark.unit
def test_complete_request_aliases():
    """Test completion draft spellings."""
    request = CompleteRequest.model_validate({
        "CompletedBy": 7,
        "actualDateTime": "2024-12-09T08:30:00Z",
        "followUpNotes": "Check vaccination records",
    })

    assert request.completed_by == "7"
    assert request.actual_visit_date is not None
    assert request.follow_up_note == "Check vaccination records"


@pytest.mark.unit
def test_complete_request_summary_falls_back_to_note():
    """Test the follow-up note stands in for a missing summary."""
    request = CompleteRequest(follow_up_note="Return in two weeks")
    assert request.summary_text() == "Return in two weeks"
    assert request.to_payload()["VisitSummary"] == "Return in two weeks"

    request = CompleteRequest(visit_summary="Flock healthy", follow_up_note="Return in two weeks")
    assert request.summary_text() == "Flock healthy"
