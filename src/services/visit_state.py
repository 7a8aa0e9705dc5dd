"""Visit status state machine.

Two orthogonal axes: ``VisitStatus`` tracks the physical visit, ``ApprovalStatus``
the manager sign-off. "Scheduled" means submitted, whether approval is still
pending or already resolved; there is no separate pending-approval status.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Union

from src.models.visit import (
    ApprovalStatus,
    STATUS_FIELDS,
    STRUCTURAL_FIELDS,
    Visit,
    VisitStatus,
    normalize_visit_patch,
    visit_key,
)
from src.models.visit_actions import ApprovalAction, ApprovalRequest, CompleteRequest, VisitAction
from src.utils.errors import InvalidTransitionError, MissingFieldError, ValidationError

# Fields a visit needs before it can be created or submitted
REQUIRED_FIELDS = {
    "advisor_id": "AdvisorID",
    "farm_id": "FarmID",
    "proposed_date": "ProposedDate",
    "farm_type": "FarmType",
}

_APPROVAL_TARGETS = {
    VisitAction.APPROVE: ApprovalStatus.APPROVED,
    VisitAction.REJECT: ApprovalStatus.REJECTED,
    VisitAction.POSTPONE: ApprovalStatus.POSTPONED,
}


def _as_action(action: Union[VisitAction, ApprovalAction, str]) -> VisitAction:
    if isinstance(action, VisitAction):
        return action
    if isinstance(action, ApprovalAction):
        return action.visit_action
    try:
        return VisitAction(action)
    except ValueError:
        return ApprovalAction.parse(action).visit_action


def _illegal(visit: Visit, action: VisitAction, message: str) -> InvalidTransitionError:
    return InvalidTransitionError(
        message,
        action=action.value,
        visit_status=visit.visit_status.value,
        approval_status=visit.approval_status.value,
    )


def next_state(visit: Visit, action: Union[VisitAction, ApprovalAction, str]) -> tuple[VisitStatus, ApprovalStatus]:
    """Return the (VisitStatus, ApprovalStatus) pair an action leads to.

    Raises InvalidTransitionError when the action is not legal from the
    visit's current pair.
    """
    action = _as_action(action)
    status = visit.visit_status
    approval = visit.approval_status

    if action is VisitAction.SUBMIT:
        if status is not VisitStatus.DRAFT:
            raise _illegal(visit, action, "Only draft visits can be submitted for approval")
        return VisitStatus.SCHEDULED, ApprovalStatus.PENDING

    if action in _APPROVAL_TARGETS:
        if status is not VisitStatus.SCHEDULED:
            raise _illegal(visit, action, "Only scheduled visits can be approved, rejected or postponed")
        if approval is ApprovalStatus.APPROVED:
            raise _illegal(visit, action, "Visit is already approved")
        return VisitStatus.SCHEDULED, _APPROVAL_TARGETS[action]

    if action is VisitAction.START:
        if status is not VisitStatus.SCHEDULED or approval is not ApprovalStatus.APPROVED:
            raise _illegal(visit, action, "Only approved, scheduled visits can be started")
        return VisitStatus.IN_PROGRESS, approval

    if action is VisitAction.COMPLETE:
        if status is not VisitStatus.IN_PROGRESS:
            raise _illegal(visit, action, "Schedule must be In Progress")
        return VisitStatus.COMPLETED, approval

    raise _illegal(visit, action, f"{action.value} does not change the visit status")


def missing_required_fields(visit: Visit) -> dict[str, str]:
    """Map each absent creation field (wire name) to its error message."""
    return {
        wire: f"{wire} is required"
        for name, wire in REQUIRED_FIELDS.items()
        if getattr(visit, name) in (None, "")
    }


def check_required_fields(visit: Visit) -> None:
    errors = missing_required_fields(visit)
    if errors:
        raise ValidationError("Please fill all required fields", errors)


def check_approval_request(request: ApprovalRequest) -> None:
    """Validate the inputs an approval decision needs."""
    if not request.approver_id:
        raise MissingFieldError("ApprovedBy", "Approver is required")
    if request.action is ApprovalAction.REJECT and not request.reason:
        raise MissingFieldError("Reason", "A reason is required to reject a visit")
    if request.action is ApprovalAction.POSTPONE and request.postponed_date is None:
        raise MissingFieldError("PostponedDate", "A new date is required to postpone a visit")


def check_patch_allowed(visit: Visit, patch: dict) -> dict:
    """Canonicalize a partial update and verify the visit may take it.

    Returns the patch keyed by field name. Status fields only move through
    lifecycle actions; structural fields freeze once the visit is approved.
    """
    normalized = normalize_visit_patch(patch)

    new_id = normalized.pop("schedule_id", None)
    if new_id is not None and visit_key(new_id) != visit.key:
        raise ValidationError("Schedule ID cannot be changed", {"ScheduleID": "Schedule ID is immutable"})

    status_fields = sorted(STATUS_FIELDS & normalized.keys())
    if status_fields:
        raise ValidationError(
            "Status fields change only through lifecycle actions",
            {field: "Not editable" for field in status_fields},
        )

    if visit.approval_status is ApprovalStatus.APPROVED:
        frozen = sorted(STRUCTURAL_FIELDS & normalized.keys())
        if frozen:
            raise _illegal(visit, VisitAction.EDIT, "Schedule approved — editing disabled")

    return normalized


def check_fill_allowed(visit: Visit) -> None:
    """Detail records are written only for approved visits that are scheduled or underway."""
    if visit.is_visit_completed or visit.visit_status is VisitStatus.COMPLETED:
        raise _illegal(visit, VisitAction.FILL, "Completed visits cannot be filled")
    if visit.approval_status is not ApprovalStatus.APPROVED or visit.visit_status not in (
        VisitStatus.SCHEDULED,
        VisitStatus.IN_PROGRESS,
    ):
        raise _illegal(visit, VisitAction.FILL, "Only approved visits can be filled")


def apply_transition(
    visit: Visit,
    action: Union[VisitAction, ApprovalAction, str],
    now: Optional[datetime] = None,
    **inputs: Any,
) -> Visit:
    """Return a copy of the visit with the action applied.

    Inputs per action:
        Submit: approver_id
        Approve/Reject/Postpone: approver_id, reason, postponed_date, comments
            (or a ready-made ``request``)
        Start: started_by, location
        Complete: a CompleteRequest as ``request`` or its fields as keywords
    """
    action = _as_action(action)
    visit_status, approval_status = next_state(visit, action)
    now = now or datetime.now(timezone.utc)
    updates: dict[str, Any] = {"visit_status": visit_status, "approval_status": approval_status}

    if action is VisitAction.SUBMIT:
        check_required_fields(visit)
        approver_id = inputs.get("approver_id")
        if not approver_id:
            raise MissingFieldError("ApprovedBy", "Approver is required")
        updates["manager_id"] = str(approver_id)

    elif action in _APPROVAL_TARGETS:
        request = inputs.get("request")
        if request is None:
            request = ApprovalRequest(
                action=action.value,
                approver_id=inputs.get("approver_id"),
                reason=inputs.get("reason"),
                postponed_date=inputs.get("postponed_date"),
                comments=inputs.get("comments"),
            )
        check_approval_request(request)
        updates["approved_by"] = request.approver_id
        updates["updated_by"] = request.approver_id
        if request.action is ApprovalAction.REJECT:
            updates["rejection_reason"] = request.reason
        elif request.action is ApprovalAction.POSTPONE:
            updates["postponed_to"] = request.postponed_date
            updates["proposed_date"] = request.postponed_date

    elif action is VisitAction.START:
        location = (inputs.get("location") or "").strip() or visit.location
        if not location:
            raise MissingFieldError("Location")
        updates["location"] = location
        updates["actual_visit_date"] = now
        if inputs.get("started_by"):
            updates["updated_by"] = str(inputs["started_by"])

    elif action is VisitAction.COMPLETE:
        request = inputs.get("request")
        if request is None:
            request = CompleteRequest.model_validate(inputs)
        actual = visit.actual_visit_date or request.actual_visit_date
        summary = request.summary_text()
        errors = {}
        if actual is None:
            errors["ActualVisitDate"] = "Actual visit date is required"
        if not summary:
            errors["VisitSummary"] = "Visit summary is required"
        if errors:
            raise ValidationError("Visit cannot be completed yet", errors)
        updates.update(
            actual_visit_date=actual,
            visit_summary=summary,
            is_visit_completed=True,
        )
        if request.next_follow_up_date is not None:
            updates["next_follow_up_date"] = request.next_follow_up_date
        if request.follow_up_note:
            updates["follow_up_note"] = request.follow_up_note
        if request.completed_by:
            updates["updated_by"] = request.completed_by

    return visit.model_copy(update=updates)
