"""Request models for the lifecycle actions a user can take on a visit."""

from enum import Enum
from typing import Any, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from src.models.visit import build_alias_index, canonicalize, normalize_key


class VisitAction(str, Enum):
    """Lifecycle actions."""
    CREATE = "Create"
    SUBMIT = "Submit"
    APPROVE = "Approve"
    REJECT = "Reject"
    POSTPONE = "Postpone"
    START = "Start"
    FILL = "Fill"
    COMPLETE = "Complete"
    EDIT = "Edit"
    DELETE = "Delete"


class ApprovalAction(str, Enum):
    """Manager decisions on a submitted visit."""
    APPROVE = "Approve"
    REJECT = "Reject"
    POSTPONE = "Postpone"

    @classmethod
    def parse(cls, value: Any) -> "ApprovalAction":
        if isinstance(value, cls):
            return value
        action = _APPROVAL_ACTION_ALIASES.get(normalize_key(value))
        if action is None:
            raise ValueError(f"Unknown approval action: {value!r}")
        return action

    @property
    def visit_action(self) -> VisitAction:
        return VisitAction(self.value)


_APPROVAL_ACTION_ALIASES = {
    "approve": ApprovalAction.APPROVE,
    "approved": ApprovalAction.APPROVE,
    "reject": ApprovalAction.REJECT,
    "rejected": ApprovalAction.REJECT,
    "deny": ApprovalAction.REJECT,
    "denied": ApprovalAction.REJECT,
    "postpone": ApprovalAction.POSTPONE,
    "postponed": ApprovalAction.POSTPONE,
    "reschedule": ApprovalAction.POSTPONE,
    "rescheduled": ApprovalAction.POSTPONE,
}


def _blank_to_none(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


class ApprovalRequest(BaseModel):
    """Approve, reject or postpone a submitted visit."""
    model_config = ConfigDict(populate_by_name=True)

    action: ApprovalAction = Field(..., alias="Action")
    approver_id: Optional[str] = Field(None, alias="ApprovedBy")
    reason: Optional[str] = Field(None, alias="Reason", description="Required for Reject")
    postponed_date: Optional[datetime] = Field(None, alias="PostponedDate", description="Required for Postpone")
    comments: Optional[str] = Field(None, alias="AdditionalComments")

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return canonicalize(data, build_alias_index(cls, {
            "approver_id": ("approverId", "approver"),
            "reason": ("RejectionReason",),
            "postponed_date": ("PostponedTo",),
        }))

    @field_validator("action", mode="before")
    @classmethod
    def _parse_action(cls, value: Any) -> ApprovalAction:
        return ApprovalAction.parse(value)

    @field_validator("approver_id", "reason", "comments", "postponed_date", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, (str, datetime)):
            value = str(value)
        return _blank_to_none(value)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CompleteRequest(BaseModel):
    """Close out a visit that is in progress."""
    model_config = ConfigDict(populate_by_name=True)

    completed_by: Optional[str] = Field(None, alias="CompletedBy")
    visit_summary: Optional[str] = Field(None, alias="VisitSummary")
    actual_visit_date: Optional[datetime] = Field(None, alias="ActualVisitDate")
    next_follow_up_date: Optional[datetime] = Field(None, alias="NextFollowUpDate")
    follow_up_note: Optional[str] = Field(None, alias="FollowUpNote")

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return canonicalize(data, build_alias_index(cls, {
            "actual_visit_date": ("actualDateTime", "ActualVisitDateTime"),
            "follow_up_note": ("followUpNotes", "FollowUpNotes"),
            "visit_summary": ("summary",),
        }))

    @field_validator("completed_by", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        return _blank_to_none(str(value))

    @field_validator("visit_summary", "follow_up_note", "actual_visit_date", "next_follow_up_date",
                     mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return _blank_to_none(value)

    def summary_text(self) -> Optional[str]:
        """The visit summary, falling back to the follow-up note."""
        return self.visit_summary or self.follow_up_note

    def to_payload(self) -> dict:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        summary = self.summary_text()
        if summary:
            payload["VisitSummary"] = summary
        return payload
