"""Visit model - the farm visit schedule record and its two status axes."""

import re
from enum import Enum
from typing import Any, Optional
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_NON_ALNUM = re.compile(r"[^a-z0-9]")

_TRUTHY = {"1", "true", "yes", "y"}


def normalize_key(value: Any) -> str:
    """Lower-case and strip everything that is not a letter or digit."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).lower())


def is_truthy(value: Any) -> bool:
    """Interpret backend boolean-ish values (1, "true", "yes", True)."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


class VisitStatus(str, Enum):
    """Where the visit is in the physical process."""
    DRAFT = "Draft"
    SCHEDULED = "Scheduled"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @classmethod
    def parse(cls, value: Any) -> "VisitStatus":
        if isinstance(value, cls):
            return value
        key = normalize_key(value)
        if not key:
            return cls.DRAFT
        status = _VISIT_STATUS_ALIASES.get(key)
        if status is None:
            raise ValueError(f"Unknown visit status: {value!r}")
        return status


class ApprovalStatus(str, Enum):
    """Manager sign-off outcome, independent of VisitStatus."""
    NONE = "None"
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    POSTPONED = "Postponed"

    @classmethod
    def parse(cls, value: Any) -> "ApprovalStatus":
        if isinstance(value, cls):
            return value
        key = normalize_key(value)
        if not key:
            return cls.NONE
        status = _APPROVAL_STATUS_ALIASES.get(key)
        if status is None:
            raise ValueError(f"Unknown approval status: {value!r}")
        return status


class FarmType(str, Enum):
    """Farm types a visit can be scheduled against."""
    DAIRY = "DAIRY"
    LAYER = "LAYER"
    BROILER = "BROILER"

    @classmethod
    def parse(cls, value: Any) -> Optional["FarmType"]:
        if value is None or isinstance(value, cls):
            return value
        key = normalize_key(value)
        if not key:
            return None
        try:
            return cls(key.upper())
        except ValueError:
            raise ValueError(f"Unknown farm type: {value!r}")


_VISIT_STATUS_ALIASES = {
    "draft": VisitStatus.DRAFT,
    "d": VisitStatus.DRAFT,
    "scheduled": VisitStatus.SCHEDULED,
    "inprogress": VisitStatus.IN_PROGRESS,
    "started": VisitStatus.IN_PROGRESS,
    "completed": VisitStatus.COMPLETED,
    "complete": VisitStatus.COMPLETED,
    "cancelled": VisitStatus.CANCELLED,
    "canceled": VisitStatus.CANCELLED,
}

_APPROVAL_STATUS_ALIASES = {
    "none": ApprovalStatus.NONE,
    "pending": ApprovalStatus.PENDING,
    "pendingapproval": ApprovalStatus.PENDING,
    "submitted": ApprovalStatus.PENDING,
    "submittedforapproval": ApprovalStatus.PENDING,
    "approved": ApprovalStatus.APPROVED,
    "approve": ApprovalStatus.APPROVED,
    "approvedstatus": ApprovalStatus.APPROVED,
    "rejected": ApprovalStatus.REJECTED,
    "reject": ApprovalStatus.REJECTED,
    "denied": ApprovalStatus.REJECTED,
    "postponed": ApprovalStatus.POSTPONED,
    "postpone": ApprovalStatus.POSTPONED,
    "rescheduled": ApprovalStatus.POSTPONED,
}

# Every historical spelling of "this visit's form is done"
COMPLETION_FLAG_KEYS = (
    "isvisitcompleted",
    "isdairyvisitcompleted",
    "isvisitcompletedflag",
    "iscompleted",
    "iscompletedflag",
)


def build_alias_index(model: type[BaseModel], synonyms: dict[str, tuple[str, ...]]) -> dict[str, str]:
    """Map normalized key spellings to the model's field names."""
    index: dict[str, str] = {}
    for name, info in model.model_fields.items():
        index[normalize_key(name)] = name
        if info.alias:
            index[normalize_key(info.alias)] = name
        for synonym in synonyms.get(name, ()):
            index[normalize_key(synonym)] = name
    return index


def canonicalize(data: dict, index: dict[str, str]) -> dict:
    """Rename aliased keys to field names; the first non-empty spelling wins."""
    result: dict[str, Any] = {}
    for key, value in data.items():
        target = index.get(normalize_key(key))
        if target is None:
            result.setdefault(key, value)
            continue
        if result.get(target) in (None, ""):
            result[target] = value
    return result


_VISIT_SYNONYMS = {
    "schedule_id": ("id",),
    "visit_status": ("status", "visit_status_name"),
    "approval_status": ("approval", "approval_status_name"),
    "visit_purpose": ("visit_type",),
    "farm_type": ("farm_type_code",),
    "proposed_date": ("schedule_date", "proposed_date_time"),
    "postponed_to": ("postponed_date",),
}

STRUCTURAL_FIELDS = frozenset({
    "advisor_id",
    "farm_id",
    "farm_type",
    "manager_id",
    "proposed_date",
    "visit_purpose",
    "is_urgent",
})

STATUS_FIELDS = frozenset({
    "visit_status",
    "approval_status",
    "actual_visit_date",
})


class Visit(BaseModel):
    """Farm visit schedule - the client's cached copy of the authoritative record."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    schedule_id: Optional[str] = Field(None, alias="ScheduleID", description="Schedule ID (immutable once created)")
    advisor_id: Optional[str] = Field(None, alias="AdvisorID", description="Advisor (employee) ID")
    farm_id: Optional[str] = Field(None, alias="FarmID", description="Farm ID")
    farm_name: Optional[str] = Field(None, alias="FarmName")
    farm_type: Optional[FarmType] = Field(None, alias="FarmType", description="DAIRY, LAYER, BROILER")
    manager_id: Optional[str] = Field(None, alias="ManagerID", description="Manager routed for approval")
    proposed_date: Optional[datetime] = Field(None, alias="ProposedDate")
    location: Optional[str] = Field(None, alias="Location", description="Farm location as 'lat,long'")
    visit_purpose: Optional[str] = Field(None, alias="VisitPurpose")
    is_urgent: bool = Field(default=False, alias="IsUrgent")
    visit_status: VisitStatus = Field(default=VisitStatus.DRAFT, alias="VisitStatus")
    approval_status: ApprovalStatus = Field(default=ApprovalStatus.NONE, alias="ApprovalStatus")
    approved_by: Optional[str] = Field(None, alias="ApprovedBy")
    rejection_reason: Optional[str] = Field(None, alias="RejectionReason")
    postponed_to: Optional[datetime] = Field(None, alias="PostponedTo")
    actual_visit_date: Optional[datetime] = Field(None, alias="ActualVisitDate")
    visit_summary: Optional[str] = Field(None, alias="VisitSummary")
    next_follow_up_date: Optional[datetime] = Field(None, alias="NextFollowUpDate")
    follow_up_note: Optional[str] = Field(None, alias="FollowUpNote")
    is_visit_completed: bool = Field(default=False, alias="IsVisitCompleted")
    created_by: Optional[str] = Field(None, alias="CreatedBy")
    updated_by: Optional[str] = Field(None, alias="UpdatedBy")
    deleted_at: Optional[datetime] = Field(None, alias="DeletedAt")

    @model_validator(mode="before")
    @classmethod
    def _normalize_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data

        flags = [
            value for key, value in data.items()
            if normalize_key(key) in COMPLETION_FLAG_KEYS
        ]
        remaining = {
            key: value for key, value in data.items()
            if normalize_key(key) not in COMPLETION_FLAG_KEYS
        }
        normalized = canonicalize(remaining, _visit_alias_index())
        if flags:
            normalized["is_visit_completed"] = any(is_truthy(value) for value in flags)
        return normalized

    @field_validator("schedule_id", "advisor_id", "farm_id", "manager_id", "approved_by",
                     "created_by", "updated_by", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("location", "visit_summary", "follow_up_note", "visit_purpose",
                     "rejection_reason", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @field_validator("proposed_date", "postponed_to", "actual_visit_date", "next_follow_up_date",
                     "deleted_at", mode="before")
    @classmethod
    def _blank_date_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("is_urgent", mode="before")
    @classmethod
    def _coerce_flag(cls, value: Any) -> bool:
        return is_truthy(value)

    @field_validator("visit_status", mode="before")
    @classmethod
    def _parse_visit_status(cls, value: Any) -> VisitStatus:
        return VisitStatus.parse(value)

    @field_validator("approval_status", mode="before")
    @classmethod
    def _parse_approval_status(cls, value: Any) -> ApprovalStatus:
        return ApprovalStatus.parse(value)

    @field_validator("farm_type", mode="before")
    @classmethod
    def _parse_farm_type(cls, value: Any) -> Optional[FarmType]:
        return FarmType.parse(value)

    @property
    def key(self) -> Optional[str]:
        """Case-insensitive identity used for flag and list lookups."""
        return visit_key(self.schedule_id)

    def to_payload(self, exclude_none: bool = True) -> dict:
        """Serialize with the service's wire names."""
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=exclude_none,
            include=set(type(self).model_fields),
        )

    def to_row(self) -> dict:
        """Serialize with canonical column names for table storage."""
        return self.model_dump(mode="json", include=set(type(self).model_fields))

    def merged(self, other: "Visit") -> "Visit":
        """Overlay the fields another copy of this visit explicitly carries."""
        update = other.model_dump(exclude_unset=True)
        data = self.model_dump()
        data.update(update)
        return Visit.model_validate(data)


_ALIAS_INDEX: Optional[dict[str, str]] = None


def _visit_alias_index() -> dict[str, str]:
    global _ALIAS_INDEX
    if _ALIAS_INDEX is None:
        _ALIAS_INDEX = build_alias_index(Visit, _VISIT_SYNONYMS)
    return _ALIAS_INDEX


def visit_key(schedule_id: Any) -> Optional[str]:
    """Normalize a schedule id for comparisons (GUIDs differ only in case)."""
    if schedule_id is None:
        return None
    value = str(schedule_id).strip().lower()
    return value or None


def normalize_visit_patch(patch: dict) -> dict:
    """Canonicalize the keys of a partial update without validating it."""
    return canonicalize(dict(patch), _visit_alias_index())
