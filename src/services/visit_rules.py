"""Validation rules - pure predicates deciding which actions a visit allows.

Every predicate is total: a missing visit, missing field or unparseable value
means "condition not met", never an exception.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field

from src.models.visit import Visit, is_truthy, normalize_key
from src.models.visit_actions import VisitAction
from src.services.reconciliation_flags import FillFlag, ReconciliationFlags

REASON_NOT_IN_PROGRESS = "Schedule must be In Progress"
REASON_NO_ACTUAL_DATE = "Actual visit date is required"
REASON_NO_SUMMARY = "Visit summary is required"

_DRAFT_DATE_KEYS = ("actualvisitdate", "actualdatetime", "actualvisitdatetime")
_DRAFT_SUMMARY_KEYS = ("visitsummary", "summary")
_DRAFT_NOTE_KEYS = ("followupnote", "followupnotes")


class CompletionCheck(BaseModel):
    """Outcome of the completion preconditions, listing every unmet one."""
    ready: bool
    reasons: list[str] = Field(default_factory=list)
    is_in_progress: bool = False
    actual_visit_present: bool = False
    has_summary: bool = False


class ActionState(BaseModel):
    """Whether a row action is enabled, and why not."""
    enabled: bool
    reason: Optional[str] = None


def _status(visit: Optional[Visit], field: str) -> str:
    value = getattr(visit, field, None)
    return normalize_key(getattr(value, "value", value))


def _is_completed(visit: Optional[Visit]) -> bool:
    return _status(visit, "visit_status") == "completed" or is_truthy(getattr(visit, "is_visit_completed", None))


def _flag(visit: Optional[Visit], flags: Optional[ReconciliationFlags]) -> FillFlag:
    if flags is None or visit is None:
        return FillFlag.ABSENT
    return flags.state(getattr(visit, "schedule_id", None))


def can_edit(visit: Optional[Visit]) -> bool:
    if visit is None:
        return False
    return _status(visit, "approval_status") != "approved"


def can_submit(visit: Optional[Visit]) -> bool:
    return _status(visit, "visit_status") == "draft"


def can_approve(visit: Optional[Visit]) -> bool:
    return (
        _status(visit, "visit_status") == "scheduled"
        and _status(visit, "approval_status") != "approved"
    )


def can_start(visit: Optional[Visit]) -> bool:
    return (
        _status(visit, "visit_status") == "scheduled"
        and _status(visit, "approval_status") == "approved"
    )


def can_fill(visit: Optional[Visit], flags: Optional[ReconciliationFlags] = None) -> bool:
    if visit is None or _is_completed(visit):
        return False
    if _flag(visit, flags) is not FillFlag.ABSENT:
        return False
    return _status(visit, "approval_status") == "approved"


def _draft_dict(draft: Any) -> dict:
    if draft is None:
        return {}
    if isinstance(draft, BaseModel):
        draft = draft.model_dump()
    if not isinstance(draft, dict):
        return {}
    return {normalize_key(key): value for key, value in draft.items()}


def _draft_text(draft: dict, keys: tuple[str, ...]) -> Optional[str]:
    for key in keys:
        value = draft.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def validate_complete_requirements(visit: Optional[Visit], draft: Any = None) -> CompletionCheck:
    """Check the completion preconditions against a visit and the pending complete form.

    The actual visit date may come from the visit or the draft; the summary
    comes from the draft, falling back to its follow-up note.
    """
    values = _draft_dict(draft)

    is_in_progress = _status(visit, "visit_status") == "inprogress"
    actual_visit_present = (
        getattr(visit, "actual_visit_date", None) is not None
        or _draft_text(values, _DRAFT_DATE_KEYS) is not None
    )
    has_summary = (
        _draft_text(values, _DRAFT_SUMMARY_KEYS) is not None
        or _draft_text(values, _DRAFT_NOTE_KEYS) is not None
    )

    reasons = []
    if not is_in_progress:
        reasons.append(REASON_NOT_IN_PROGRESS)
    if not actual_visit_present:
        reasons.append(REASON_NO_ACTUAL_DATE)
    if not has_summary:
        reasons.append(REASON_NO_SUMMARY)

    return CompletionCheck(
        ready=not reasons,
        reasons=reasons,
        is_in_progress=is_in_progress,
        actual_visit_present=actual_visit_present,
        has_summary=has_summary,
    )


def can_complete(visit: Optional[Visit], draft: Any = None) -> CompletionCheck:
    return validate_complete_requirements(visit, draft)


def action_availability(
    visit: Optional[Visit],
    flags: Optional[ReconciliationFlags] = None,
    draft: Any = None,
) -> dict[VisitAction, ActionState]:
    """Per-action enabled state and disabled reason for one list row."""
    status = _status(visit, "visit_status")
    approval = _status(visit, "approval_status")
    completed = _is_completed(visit)
    flag = _flag(visit, flags)

    if can_edit(visit):
        edit = ActionState(enabled=True)
    else:
        edit = ActionState(enabled=False, reason="Schedule approved — editing disabled")

    if can_submit(visit) and flag is FillFlag.ABSENT:
        submit = ActionState(enabled=True)
    elif status == "completed":
        submit = ActionState(enabled=False, reason="Schedule already completed")
    elif approval == "pending":
        submit = ActionState(enabled=False, reason="Already submitted for approval")
    elif status == "scheduled":
        submit = ActionState(enabled=False, reason="Visit is scheduled — cannot submit")
    else:
        submit = ActionState(enabled=False, reason="Only draft visits can be submitted")

    if can_approve(visit):
        approve = ActionState(enabled=True)
    elif approval == "approved":
        approve = ActionState(enabled=False, reason="Already approved")
    else:
        approve = ActionState(enabled=False, reason="Visit must be submitted before approval")

    if can_start(visit):
        start = ActionState(enabled=True)
    elif status == "inprogress":
        start = ActionState(enabled=False, reason="Visit already started")
    else:
        start = ActionState(enabled=False, reason="Requires approved schedule")

    if can_fill(visit, flags):
        fill = ActionState(enabled=True)
    elif completed or flag is FillFlag.CONFIRMED_FILLED:
        fill = ActionState(enabled=False, reason="Visit already completed")
    elif flag is FillFlag.RECENTLY_FILLED:
        fill = ActionState(enabled=False, reason="Visit saved — awaiting server confirmation")
    else:
        fill = ActionState(enabled=False, reason="Requires approved schedule")

    check = validate_complete_requirements(visit, draft)
    if status == "completed":
        complete = ActionState(enabled=False, reason="Schedule already completed")
    elif not check.is_in_progress:
        complete = ActionState(enabled=False, reason="Visit must be InProgress to complete")
    else:
        # Missing summary is collected by the complete form itself
        complete = ActionState(enabled=True)

    return {
        VisitAction.EDIT: edit,
        VisitAction.SUBMIT: submit,
        VisitAction.APPROVE: approve,
        VisitAction.START: start,
        VisitAction.FILL: fill,
        VisitAction.COMPLETE: complete,
        VisitAction.DELETE: ActionState(enabled=visit is not None),
    }
