"""Supabase-backed mutation gateway - the server-side lifecycle orchestrator.

Every transition loads the current row, runs the state machine, writes the
changed columns back and appends a ``visit_status_history`` entry.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union

from supabase import Client
from ulid import ULID

from src.models.visit import ApprovalStatus, FarmType, Visit, VisitStatus
from src.models.visit_actions import ApprovalRequest, CompleteRequest, VisitAction
from src.models.visit_detail import (
    DairyVisitDetail,
    FilledForm,
    LayerVisitDetail,
    VisitDetail,
    build_detail,
    detail_model_for,
)
from src.services.gateway import MutationGateway, Pagination, VisitFilters, VisitPage
from src.services.supabase_client import SupabaseClient
from src.services.visit_state import (
    apply_transition,
    check_fill_allowed,
    check_patch_allowed,
    check_required_fields,
)
from src.utils.errors import (
    InvalidTransitionError,
    NotFoundError,
    SupabaseError,
    ValidationError,
)
from src.utils.logging import get_structured_logger, log_timing, mask_employee_id

logger = get_structured_logger(__name__)

SCHEDULE_TABLE = "farm_visit_schedule"
HISTORY_TABLE = "visit_status_history"
DETAIL_TABLES: dict[type[VisitDetail], str] = {
    LayerVisitDetail: "layer_farm_visit",
    DairyVisitDetail: "dairy_farm_visit",
}

DEFAULT_PAGE_SIZE = 50


def generate_id() -> str:
    """Generate a text-based record ID (ULID format)."""
    return str(ULID())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SupabaseVisitGateway(MutationGateway):
    """Runs visit lifecycle transitions directly against Supabase tables."""

    def __init__(self, client: Optional[Client] = None, now: Callable[[], datetime] = _utcnow):
        self._client = client
        self._now = now

    async def _load_visit(self, schedule_id: str) -> Visit:
        async with SupabaseClient(self._client) as client:
            try:
                result = (
                    client.table(SCHEDULE_TABLE)
                    .select("*")
                    .eq("schedule_id", schedule_id)
                    .is_("deleted_at", "null")
                    .execute()
                )
            except Exception as e:
                raise SupabaseError(f"Failed to load visit: {e}")

        if not result.data:
            raise NotFoundError(f"Visit {schedule_id} not found", schedule_id)
        return Visit.model_validate(result.data[0])

    async def _write_visit(self, schedule_id: str, changes: dict[str, Any]) -> Visit:
        async with SupabaseClient(self._client) as client:
            try:
                result = client.table(SCHEDULE_TABLE).update(changes).eq("schedule_id", schedule_id).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to update visit: {e}")

        if not result.data:
            raise NotFoundError(f"Visit {schedule_id} not found", schedule_id)
        return Visit.model_validate(result.data[0])

    async def _record_history(
        self,
        before: Optional[Visit],
        after: Visit,
        action: VisitAction,
        changed_by: Optional[str],
        comments: Optional[str] = None,
    ) -> None:
        entry = {
            "history_id": generate_id(),
            "schedule_id": after.schedule_id,
            "action": action.value,
            "from_visit_status": before.visit_status.value if before else None,
            "to_visit_status": after.visit_status.value,
            "from_approval_status": before.approval_status.value if before else None,
            "to_approval_status": after.approval_status.value,
            "changed_by": changed_by,
            "comments": comments,
            "created_at": self._now().isoformat(),
        }
        async with SupabaseClient(self._client) as client:
            try:
                client.table(HISTORY_TABLE).insert(entry).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to record status history: {e}")

    async def _transition(
        self,
        schedule_id: str,
        action: VisitAction,
        changed_by: Optional[str],
        comments: Optional[str] = None,
        **inputs: Any,
    ) -> Visit:
        with log_timing("visit_transition", logger=logger, schedule_id=schedule_id, action=action.value):
            before = await self._load_visit(schedule_id)
            after = apply_transition(before, action, now=self._now(), **inputs)
            changes = _changed_columns(before, after)
            changes["updated_at"] = self._now().isoformat()
            saved = await self._write_visit(schedule_id, changes)
            await self._record_history(before, saved, action, changed_by, comments)

        logger.info(
            "Visit transitioned",
            schedule_id=schedule_id,
            action=action.value,
            visit_status=saved.visit_status.value,
            approval_status=saved.approval_status.value,
            changed_by=mask_employee_id(changed_by),
        )
        return saved

    async def list_visits(self, filters: Optional[VisitFilters] = None) -> VisitPage:
        filters = filters or VisitFilters()
        page_size = filters.page_size or DEFAULT_PAGE_SIZE
        start = (filters.page - 1) * page_size

        async with SupabaseClient(self._client) as client:
            try:
                query = client.table(SCHEDULE_TABLE).select("*", count="exact")
                if not filters.include_deleted:
                    query = query.is_("deleted_at", "null")
                if filters.advisor_id:
                    query = query.eq("advisor_id", filters.advisor_id)
                if filters.farm_id:
                    query = query.eq("farm_id", filters.farm_id)
                result = query.order("proposed_date", desc=True).range(start, start + page_size - 1).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to list visits: {e}")

        visits = [Visit.model_validate(row) for row in result.data or []]
        total = result.count if result.count is not None else len(visits)
        return VisitPage(
            items=visits,
            pagination=Pagination(
                current_page=filters.page,
                page_size=page_size,
                total_count=total,
                total_pages=max(1, -(-total // page_size)),
            ),
        )

    async def get(self, schedule_id: str) -> Visit:
        return await self._load_visit(schedule_id)

    async def create(self, visit: Visit) -> Visit:
        check_required_fields(visit)
        now = self._now()
        draft = visit.model_copy(update={
            "schedule_id": generate_id(),
            "visit_status": VisitStatus.DRAFT,
            "approval_status": ApprovalStatus.NONE,
            "actual_visit_date": None,
            "is_visit_completed": False,
            "deleted_at": None,
        })
        row = draft.to_row()
        row["created_at"] = now.isoformat()
        row["updated_at"] = now.isoformat()

        async with SupabaseClient(self._client) as client:
            try:
                result = client.table(SCHEDULE_TABLE).insert(row).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to create visit: {e}")
        if not result.data:
            raise SupabaseError("Failed to create visit: no data returned")

        created = Visit.model_validate(result.data[0])
        await self._record_history(None, created, VisitAction.CREATE, created.created_by, "Created")
        logger.info("Visit created", schedule_id=created.schedule_id, advisor_id=mask_employee_id(created.advisor_id))
        return created

    async def update(self, schedule_id: str, patch: dict[str, Any]) -> Visit:
        before = await self._load_visit(schedule_id)
        normalized = check_patch_allowed(before, patch)
        if not normalized:
            return before

        merged = Visit.model_validate({**before.model_dump(), **normalized})
        changes = {field: value for field, value in merged.to_row().items() if field in normalized}
        changes["updated_at"] = self._now().isoformat()
        return await self._write_visit(schedule_id, changes)

    async def submit(self, schedule_id: str, approver_id: str) -> Visit:
        return await self._transition(
            schedule_id, VisitAction.SUBMIT, approver_id, "Submitted for approval", approver_id=approver_id
        )

    async def process_approval(self, schedule_id: str, request: ApprovalRequest) -> Visit:
        return await self._transition(
            schedule_id,
            request.action.visit_action,
            request.approver_id,
            request.comments or request.reason,
            request=request,
        )

    async def start(self, schedule_id: str, started_by: Optional[str], location: Optional[str] = None) -> Visit:
        return await self._transition(
            schedule_id, VisitAction.START, started_by, started_by=started_by, location=location
        )

    async def complete(self, schedule_id: str, request: CompleteRequest) -> Visit:
        current = await self._load_visit(schedule_id)
        if current.visit_status is VisitStatus.COMPLETED:
            if _same_completion(current, request):
                logger.info("Repeat completion ignored", schedule_id=schedule_id)
                return current
            raise InvalidTransitionError(
                "Visit is already completed with a different summary",
                action=VisitAction.COMPLETE.value,
                visit_status=current.visit_status.value,
                approval_status=current.approval_status.value,
            )
        return await self._transition(
            schedule_id, VisitAction.COMPLETE, request.completed_by, request.summary_text(), request=request
        )

    async def delete(self, schedule_id: str) -> None:
        before = await self._load_visit(schedule_id)
        now = self._now().isoformat()
        deleted = await self._write_visit(schedule_id, {"deleted_at": now, "updated_at": now})
        await self._record_history(before, deleted, VisitAction.DELETE, None, "Deleted")
        logger.info("Visit soft-deleted", schedule_id=schedule_id)

    async def fill(self, farm_type: Union[FarmType, str, None], detail: Union[VisitDetail, dict]) -> VisitDetail:
        record = build_detail(farm_type, detail)
        if not record.schedule_id:
            raise ValidationError("Visit form is not linked to a schedule", {"ScheduleID": "ScheduleID is required"})
        visit = await self._load_visit(record.schedule_id)
        check_fill_allowed(visit)

        model = type(record)
        table = DETAIL_TABLES[model]
        existing = await self._load_detail_row(table, record.schedule_id)
        detail_id = record.detail_id or (existing or {}).get("detail_id")
        row = _detail_row(record)
        row["updated_at"] = self._now().isoformat()

        async with SupabaseClient(self._client) as client:
            try:
                if detail_id:
                    row["detail_id"] = detail_id
                    result = client.table(table).update(row).eq("detail_id", detail_id).execute()
                else:
                    row["detail_id"] = generate_id()
                    row["created_at"] = row["updated_at"]
                    result = client.table(table).insert(row).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to save visit form: {e}")

        if not result.data:
            raise NotFoundError(f"Visit form {detail_id} not found", record.schedule_id)
        logger.info("Visit form saved", schedule_id=record.schedule_id, table=table, is_new=not detail_id)
        return _detail_from_row(model, result.data[0])

    async def _load_detail_row(self, table: str, schedule_id: str) -> Optional[dict]:
        async with SupabaseClient(self._client) as client:
            try:
                result = client.table(table).select("*").eq("schedule_id", schedule_id).limit(1).execute()
            except Exception as e:
                raise SupabaseError(f"Failed to load visit form: {e}")
        return result.data[0] if result.data else None

    async def get_filled_form(self, schedule_id: str) -> FilledForm:
        visit = await self._load_visit(schedule_id)

        form: dict[str, Any] = {}
        model = detail_model_for(visit.farm_type)
        if model is not None:
            row = await self._load_detail_row(DETAIL_TABLES[model], schedule_id)
            if row:
                form = _detail_from_row(model, row).to_payload()

        async with SupabaseClient(self._client) as client:
            try:
                result = (
                    client.table(HISTORY_TABLE)
                    .select("*")
                    .eq("schedule_id", schedule_id)
                    .order("created_at")
                    .execute()
                )
            except Exception as e:
                raise SupabaseError(f"Failed to load status history: {e}")

        return FilledForm(schedule=visit, form=form, status_history=result.data or [])


def _changed_columns(before: Visit, after: Visit) -> dict[str, Any]:
    old = before.to_row()
    return {column: value for column, value in after.to_row().items() if old.get(column) != value}


def _same_completion(visit: Visit, request: CompleteRequest) -> bool:
    if (request.summary_text() or None) != visit.visit_summary:
        return False
    if request.next_follow_up_date is not None and request.next_follow_up_date != visit.next_follow_up_date:
        return False
    if request.follow_up_note and request.follow_up_note != visit.follow_up_note:
        return False
    return True


def _detail_row(record: VisitDetail) -> dict[str, Any]:
    """Known fields become columns; unknown observation fields go to ``observations``."""
    row = record.to_row()
    extras = record.model_extra or {}
    for key in extras:
        row.pop(key, None)
    if extras:
        row["observations"] = dict(extras)
    row.pop("detail_id", None)
    return row


def _detail_from_row(model: type[VisitDetail], row: dict[str, Any]) -> VisitDetail:
    data = {key: value for key, value in row.items() if key not in ("observations", "created_at", "updated_at")}
    observations = row.get("observations") or {}
    return model.model_validate({**observations, **data})
