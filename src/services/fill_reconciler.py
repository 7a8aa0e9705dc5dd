"""Fill reconciler - optimistic fill with bounded confirmation polling.

A fill is acknowledged locally the moment the gateway accepts it
(RECENTLY_FILLED), then confirmed in the background by polling the filled
form. A fill the server never reflects is expired after a fixed TTL so the
Fill action is not disabled forever.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional
from pydantic import BaseModel

from src.models.visit import ApprovalStatus, Visit, VisitStatus, visit_key
from src.models.visit_detail import FilledForm, VisitDetail, build_detail
from src.services.gateway import MutationGateway
from src.services.reconciliation_flags import ReconciliationFlags
from src.services.visit_rules import can_fill
from src.utils.config import ReconciliationConfig, get_reconciliation_config
from src.utils.errors import (
    ActionInProgressError,
    FarmVisitError,
    InvalidTransitionError,
    MissingFieldError,
)
from src.utils.logging import get_correlation_id, get_structured_logger, log_timing, mask_location

logger = get_structured_logger(__name__)

_LOCATION_KEYS = ("Location", "location")


class FillResult(BaseModel):
    """What a dispatched fill did before confirmation started."""
    visit: Visit
    detail: VisitDetail
    started: bool = False
    location_source: str = "visit"


def _form_location(form: Optional[dict]) -> Optional[str]:
    for key in _LOCATION_KEYS:
        value = (form or {}).get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


class FillReconciler:
    """Runs the fill flow and owns one confirmation task per visit."""

    def __init__(
        self,
        gateway: MutationGateway,
        flags: ReconciliationFlags,
        config: Optional[ReconciliationConfig] = None,
        merge: Optional[Callable[[Visit], bool]] = None,
        refresh: Optional[Callable[[], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.flags = flags
        self.config = config or get_reconciliation_config()
        self._merge = merge
        self._refresh = refresh
        self._sleep = sleep
        self._clock = clock
        self.tasks: dict[str, asyncio.Task] = {}
        self._in_flight: set[str] = set()

    async def fill(self, visit: Visit, form: dict, actor: Optional[str] = None) -> FillResult:
        """Fill the visit's farm-type form, starting the visit first when needed.

        Raises before any mutating call when the fill is not allowed or no
        Location can be found. Gateway errors from start/fill propagate and
        leave no optimistic flag behind.
        """
        key = visit.key
        if key is None:
            raise InvalidTransitionError("Visit has no schedule id", action="Fill")
        if key in self._in_flight:
            raise ActionInProgressError("A fill is already running for this visit")
        if not can_fill(visit, self.flags):
            raise InvalidTransitionError(
                "Visit cannot be filled in its current state",
                action="Fill",
                visit_status=visit.visit_status.value,
                approval_status=visit.approval_status.value,
            )

        self._in_flight.add(key)
        try:
            return await self._fill(visit, form or {}, actor)
        finally:
            self._in_flight.discard(key)

    async def _fill(self, visit: Visit, form: dict, actor: Optional[str]) -> FillResult:
        schedule_id = visit.schedule_id
        location, source = await self._resolve_location(visit, form)
        if location is None:
            logger.warning("Fill aborted: no location available", schedule_id=schedule_id)
            raise MissingFieldError("Location")

        payload = dict(form)
        payload.update(ScheduleID=schedule_id, Location=location)
        if visit.farm_id and not payload.get("FarmID"):
            payload["FarmID"] = visit.farm_id
        if actor:
            payload.setdefault("CreatedBy", actor)
            payload["UpdatedBy"] = actor
        # Unsupported farm types and malformed values fail here, before any mutation
        detail = build_detail(visit.farm_type, payload)

        current = visit
        started = False
        if visit.approval_status is ApprovalStatus.APPROVED and visit.visit_status is not VisitStatus.IN_PROGRESS:
            if source == "form":
                try:
                    current = await self.gateway.update(schedule_id, {"Location": location})
                except FarmVisitError as e:
                    logger.warning("Location patch failed; starting anyway", schedule_id=schedule_id, error=str(e))
            current = await self.gateway.start(schedule_id, actor, location)
            started = True
            logger.info(
                "Visit started for fill",
                schedule_id=schedule_id,
                location=mask_location(location),
                visit_status=current.visit_status.value,
            )

        try:
            with log_timing("fill_visit", logger=logger, schedule_id=schedule_id):
                saved = await self.gateway.fill(current.farm_type or visit.farm_type, detail)
        except Exception:
            if started:
                await self._keep_started(current)
            raise

        self.flags.mark_recently_filled(schedule_id)
        self.watch(schedule_id)
        return FillResult(visit=current, detail=saved, started=started, location_source=source)

    async def _keep_started(self, started: Visit) -> None:
        """Record a start that went through even though the form save failed."""
        logger.warning(
            "Visit form save failed after start",
            schedule_id=started.schedule_id,
            visit_status=started.visit_status.value,
        )
        if self._merge is not None and self._merge(started):
            return
        if self._refresh is None:
            return
        try:
            await self._refresh()
        except FarmVisitError as e:
            logger.warning("List refresh after failed fill failed", schedule_id=started.schedule_id, error=str(e))

    async def _resolve_location(self, visit: Visit, form: dict) -> tuple[Optional[str], str]:
        """Find a Location on the visit, the form, or the saved detail record."""
        if visit.location:
            return visit.location, "visit"
        location = _form_location(form)
        if location:
            return location, "form"

        try:
            saved = await self.gateway.get_filled_form(visit.schedule_id)
        except FarmVisitError as e:
            logger.warning("Could not read saved visit form", schedule_id=visit.schedule_id, error=str(e))
            return None, "none"
        location = saved.saved_location or (saved.schedule.location if saved.schedule else None)
        if location:
            return location, "saved"
        return None, "none"

    def watch(self, schedule_id: str) -> asyncio.Task:
        """Start (or restart) the confirmation task for a visit."""
        key = visit_key(schedule_id)
        existing = self.tasks.get(key)
        if existing is not None and not existing.done():
            existing.cancel()
        task = asyncio.create_task(self._confirm_loop(schedule_id, key))
        self.tasks[key] = task
        return task

    async def _confirm_loop(self, schedule_id: str, key: str) -> bool:
        correlation_id = get_correlation_id()
        dispatched_at = self._clock()
        interval = self.config.poll_interval_seconds
        failures = 0

        try:
            for attempt in range(1, self.config.max_attempts + 1):
                await self._sleep(interval)
                try:
                    filled = await self.gateway.get_filled_form(schedule_id)
                except Exception as e:
                    failures += 1
                    logger.debug(
                        "Confirmation poll failed",
                        correlation_id=correlation_id,
                        schedule_id=schedule_id,
                        attempt=attempt,
                        error=str(e),
                    )
                    continue

                if filled.is_present:
                    self.flags.confirm(schedule_id)
                    logger.info(
                        "Fill confirmed by server",
                        correlation_id=correlation_id,
                        schedule_id=schedule_id,
                        attempts=attempt,
                        failed_polls=failures,
                    )
                    await self._apply_confirmed(filled)
                    return True

            remaining = self.config.flag_ttl_seconds - (self._clock() - dispatched_at)
            if remaining > 0:
                await self._sleep(remaining)
            self.flags.expire(schedule_id)
            logger.warning(
                "Fill not confirmed; optimistic flag expired",
                correlation_id=correlation_id,
                schedule_id=schedule_id,
                attempts=self.config.max_attempts,
                failed_polls=failures,
            )
            return False
        finally:
            if self.tasks.get(key) is asyncio.current_task():
                del self.tasks[key]

    async def _apply_confirmed(self, filled: FilledForm) -> None:
        merged = False
        if filled.schedule is not None and self._merge is not None:
            merged = self._merge(filled.schedule)
        if merged or self._refresh is None:
            return
        try:
            await self._refresh()
        except Exception as e:
            logger.warning("List refresh after confirmation failed", error=str(e))

    def is_watching(self, schedule_id: str) -> bool:
        task = self.tasks.get(visit_key(schedule_id))
        return task is not None and not task.done()

    def cancel(self, schedule_id: str) -> bool:
        """Stop a visit's confirmation task and drop its flag."""
        key = visit_key(schedule_id)
        task = self.tasks.pop(key, None)
        self.flags.clear(schedule_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self) -> int:
        keys = list(self.tasks)
        cancelled = sum(1 for key in keys if self.cancel(key))
        if cancelled:
            logger.info("Confirmation tasks cancelled", count=cancelled)
        return cancelled

    async def shutdown(self) -> int:
        """Cancel every confirmation task and wait until they have unwound."""
        pending = [task for task in self.tasks.values() if not task.done()]
        cancelled = self.cancel_all()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return cancelled

    async def wait(self, schedule_id: Optional[str] = None) -> None:
        """Wait for confirmation tasks to finish (all of them by default)."""
        if schedule_id is not None:
            task = self.tasks.get(visit_key(schedule_id))
            tasks = [task] if task is not None else []
        else:
            tasks = list(self.tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
