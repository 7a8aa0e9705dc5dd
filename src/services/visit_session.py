"""Visit schedule session - the single owner of list, flags and in-flight state.

Every user action runs through ``_guard``: failures come back as an
``ActionResult`` with a message (and field errors where the service gave
them) instead of raising.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Union
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.models.visit import Visit
from src.models.visit_actions import ApprovalAction, ApprovalRequest, CompleteRequest
from src.models.visit_detail import FilledForm
from src.services.fill_reconciler import FillReconciler
from src.services.gateway import MutationGateway, VisitFilters
from src.services.reconciliation_flags import ReconciliationFlags
from src.services.visit_list import VisitListProjection, VisitRow
from src.services.visit_rules import (
    can_approve,
    can_edit,
    can_start,
    can_submit,
    validate_complete_requirements,
)
from src.services.visit_state import check_approval_request, check_patch_allowed, missing_required_fields
from src.utils.config import ReconciliationConfig
from src.utils.errors import (
    ActionInProgressError,
    FarmVisitError,
    GatewayError,
    InvalidTransitionError,
    MissingFieldError,
    NetworkError,
    NotFoundError,
    ValidationError,
)
from src.utils.logging import correlation_context, get_structured_logger, mask_employee_id, mask_sensitive_data

logger = get_structured_logger(__name__)

_APPROVAL_MESSAGES = {
    ApprovalAction.APPROVE: "Schedule approved.",
    ApprovalAction.REJECT: "Schedule rejected.",
    ApprovalAction.POSTPONE: "Schedule postponed.",
}


class ActionResult(BaseModel):
    """Outcome of one user action."""
    ok: bool
    message: str = ""
    visit: Optional[Visit] = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    reasons: list[str] = Field(default_factory=list)
    filled_form: Optional[FilledForm] = None


class VisitScheduleSession:
    """Coordinates one user's work on the visit schedule list."""

    def __init__(
        self,
        gateway: MutationGateway,
        actor_id: Optional[str] = None,
        config: Optional[ReconciliationConfig] = None,
        flags: Optional[ReconciliationFlags] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.actor_id = actor_id
        self.flags = flags or ReconciliationFlags()
        self.projection = VisitListProjection(self.flags)
        self.reconciler = FillReconciler(
            gateway,
            self.flags,
            config=config,
            merge=self.projection.merge,
            refresh=self._reload,
            sleep=sleep,
            clock=clock,
        )
        self.filters = VisitFilters()
        self._creating = False

    # List

    def rows(self) -> list[VisitRow]:
        return self.projection.rows()

    def set_filters(
        self,
        approval_statuses: Optional[Iterable[Any]] = None,
        visit_statuses: Optional[Iterable[Any]] = None,
    ) -> ActionResult:
        try:
            self.projection.set_filters(approval_statuses, visit_statuses)
        except ValueError as e:
            return ActionResult(ok=False, message=str(e))
        return ActionResult(ok=True)

    async def _reload(self) -> None:
        page = await self.gateway.list_visits(self.filters)
        self.projection.replace(page)

    async def _reload_quietly(self) -> None:
        try:
            await self._reload()
        except FarmVisitError as e:
            logger.warning("Visit list reload failed", error=str(e))

    async def _apply(self, visit: Optional[Visit]) -> None:
        """Merge a returned visit by id, falling back to a full reload."""
        if visit is not None and self.projection.merge(visit):
            return
        await self._reload_quietly()

    async def _current(self, schedule_id: str) -> Visit:
        visit = self.projection.get(schedule_id)
        if visit is None:
            visit = await self.gateway.get(schedule_id)
        return visit

    async def _guard(self, action: str, schedule_id: Optional[str], call: Callable[[], Awaitable[ActionResult]]) -> ActionResult:
        with correlation_context():
            try:
                return await call()
            except ValidationError as e:
                logger.info("Action rejected by validation", action=action, schedule_id=schedule_id,
                            fields=sorted(e.field_errors))
                return ActionResult(ok=False, message=e.message, field_errors=e.field_errors)
            except NotFoundError as e:
                logger.info("Visit not found; refreshing list", action=action, schedule_id=schedule_id)
                await self._reload_quietly()
                return ActionResult(ok=False, message=str(e) or "Visit no longer exists")
            except (InvalidTransitionError, ActionInProgressError) as e:
                return ActionResult(ok=False, message=str(e))
            except NetworkError as e:
                logger.warning("Action failed: service unreachable", action=action, schedule_id=schedule_id)
                return ActionResult(ok=False, message=str(e))
            except GatewayError as e:
                logger.error("Action failed", action=action, schedule_id=schedule_id,
                             status_code=e.status_code, error=mask_sensitive_data(str(e)))
                return ActionResult(ok=False, message=str(e))
            except FarmVisitError as e:
                return ActionResult(ok=False, message=str(e))
            except Exception as e:
                logger.exception("Unexpected error during action", action=action, schedule_id=schedule_id,
                                 error=mask_sensitive_data(str(e)))
                return ActionResult(ok=False, message="Something went wrong. Please try again.")

    # Actions

    async def refresh(self, filters: Optional[VisitFilters] = None) -> ActionResult:
        """Reload the authoritative list and hand off confirmed fill flags to it."""
        async def run() -> ActionResult:
            if filters is not None:
                self.filters = filters
            await self._reload()
            handed_off = self.flags.clear_confirmed()
            logger.info("Visit list refreshed", item_count=len(self.projection.items), confirmed_handed_off=handed_off)
            return ActionResult(ok=True)
        return await self._guard("refresh", None, run)

    async def create(self, data: Union[Visit, dict]) -> ActionResult:
        async def run() -> ActionResult:
            if self._creating:
                raise ActionInProgressError("A visit is already being created")
            try:
                visit = data if isinstance(data, Visit) else Visit.model_validate(data)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Please correct the highlighted fields") from e
            errors = missing_required_fields(visit)
            if errors:
                raise ValidationError("Please fill all required fields", errors)
            if self.actor_id and not visit.created_by:
                visit = visit.model_copy(update={"created_by": self.actor_id})

            self._creating = True
            try:
                created = await self.gateway.create(visit)
            finally:
                self._creating = False
            await self._reload_quietly()
            logger.info("Visit created", schedule_id=created.schedule_id, advisor_id=mask_employee_id(created.advisor_id))
            return ActionResult(ok=True, message="Schedule created.", visit=created)
        return await self._guard("create", None, run)

    async def update(self, schedule_id: str, patch: dict) -> ActionResult:
        async def run() -> ActionResult:
            visit = await self._current(schedule_id)
            if not can_edit(visit):
                raise InvalidTransitionError("Schedule approved — editing disabled", action="Edit")
            check_patch_allowed(visit, patch)
            updated = await self.gateway.update(schedule_id, patch)
            await self._apply(updated)
            return ActionResult(ok=True, message="Schedule updated.", visit=updated)
        return await self._guard("update", schedule_id, run)

    async def delete(self, schedule_id: str) -> ActionResult:
        async def run() -> ActionResult:
            self.reconciler.cancel(schedule_id)
            await self.gateway.delete(schedule_id)
            self.projection.remove(schedule_id)
            return ActionResult(ok=True, message="Schedule deleted.")
        return await self._guard("delete", schedule_id, run)

    async def submit(self, schedule_id: str, approver_id: Optional[str] = None) -> ActionResult:
        async def run() -> ActionResult:
            visit = await self._current(schedule_id)
            if not can_submit(visit):
                raise InvalidTransitionError("Only draft visits can be submitted for approval", action="Submit")
            approver = approver_id or visit.manager_id
            if not approver:
                raise MissingFieldError("ManagerID", "Choose a manager to approve this visit")
            updated = await self.gateway.submit(schedule_id, approver)
            await self._apply(updated)
            return ActionResult(ok=True, message="Schedule submitted for approval.", visit=updated)
        return await self._guard("submit", schedule_id, run)

    async def process_approval(self, schedule_id: str, request: Union[ApprovalRequest, dict]) -> ActionResult:
        async def run() -> ActionResult:
            try:
                parsed = request if isinstance(request, ApprovalRequest) else ApprovalRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Invalid approval request") from e
            if not parsed.approver_id and self.actor_id:
                parsed = parsed.model_copy(update={"approver_id": self.actor_id})

            visit = await self._current(schedule_id)
            if not can_approve(visit):
                raise InvalidTransitionError("Visit is not awaiting approval", action=parsed.action.value)
            check_approval_request(parsed)
            updated = await self.gateway.process_approval(schedule_id, parsed)
            await self._apply(updated)
            return ActionResult(ok=True, message=_APPROVAL_MESSAGES[parsed.action], visit=updated)
        return await self._guard("process_approval", schedule_id, run)

    async def start(self, schedule_id: str, location: Optional[str] = None) -> ActionResult:
        async def run() -> ActionResult:
            visit = await self._current(schedule_id)
            if not can_start(visit):
                raise InvalidTransitionError("Only approved, scheduled visits can be started", action="Start")
            resolved = (location or "").strip() or visit.location
            if not resolved:
                raise MissingFieldError("Location")
            updated = await self.gateway.start(schedule_id, self.actor_id, resolved)
            await self._apply(updated)
            return ActionResult(ok=True, message="Visit started.", visit=updated)
        return await self._guard("start", schedule_id, run)

    async def fill(self, schedule_id: str, form: dict) -> ActionResult:
        async def run() -> ActionResult:
            visit = await self._current(schedule_id)
            result = await self.reconciler.fill(visit, form, self.actor_id)
            if result.started:
                await self._apply(result.visit)
            return ActionResult(ok=True, message="Visit details saved successfully.", visit=result.visit)
        return await self._guard("fill", schedule_id, run)

    async def complete(self, schedule_id: str, draft: Union[CompleteRequest, dict]) -> ActionResult:
        async def run() -> ActionResult:
            visit = await self._current(schedule_id)
            check = validate_complete_requirements(visit, draft)
            if not check.ready:
                return ActionResult(ok=False, message="Visit cannot be completed yet", reasons=check.reasons)
            try:
                request = draft if isinstance(draft, CompleteRequest) else CompleteRequest.model_validate(draft)
            except PydanticValidationError as e:
                raise ValidationError.from_pydantic(e, "Please correct the highlighted fields") from e
            if not request.completed_by and self.actor_id:
                request = request.model_copy(update={"completed_by": self.actor_id})
            if request.actual_visit_date is None and visit.actual_visit_date is not None:
                request = request.model_copy(update={"actual_visit_date": visit.actual_visit_date})

            updated = await self.gateway.complete(schedule_id, request)
            await self._apply(updated)
            return ActionResult(ok=True, message="Visit marked as complete.", visit=updated)
        return await self._guard("complete", schedule_id, run)

    async def view_filled_form(self, schedule_id: str) -> ActionResult:
        async def run() -> ActionResult:
            filled = await self.gateway.get_filled_form(schedule_id)
            if not filled.is_present:
                return ActionResult(ok=False, message="No filled form found for this visit", filled_form=filled)
            return ActionResult(ok=True, visit=filled.schedule, filled_form=filled)
        return await self._guard("view_filled_form", schedule_id, run)

    async def close(self) -> None:
        """Stop background confirmation and release the gateway."""
        await self.reconciler.shutdown()
        self.flags.clear_all()
        await self.gateway.close()
        logger.info("Visit schedule session closed")
