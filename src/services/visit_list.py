"""Visit list projection - authoritative page + fill flags + local filters."""

import threading
from typing import Any, Iterable, Optional
from pydantic import BaseModel, Field

from src.models.visit import ApprovalStatus, Visit, VisitStatus, visit_key
from src.models.visit_actions import VisitAction
from src.services.gateway import Pagination, VisitPage
from src.services.reconciliation_flags import FillFlag, ReconciliationFlags
from src.services.visit_rules import ActionState, action_availability


class VisitRow(BaseModel):
    """One rendered list row."""
    visit: Visit
    fill_flag: FillFlag = FillFlag.ABSENT
    actions: dict[VisitAction, ActionState] = Field(default_factory=dict)


class VisitListProjection:
    """Derives the rows a visit list shows.

    Rows are cached and recomputed only when the page, the filters or the
    flag store's version change.
    """

    def __init__(self, flags: ReconciliationFlags):
        self.flags = flags
        self._lock = threading.Lock()
        self._items: list[Visit] = []
        self.pagination = Pagination()
        self._approval_filter: frozenset[ApprovalStatus] = frozenset()
        self._visit_filter: frozenset[VisitStatus] = frozenset()
        self._version = 0
        self._cache_key: Optional[tuple[int, int]] = None
        self._cache: list[VisitRow] = []

    def _touch(self) -> None:
        self._version += 1

    @property
    def items(self) -> list[Visit]:
        with self._lock:
            return list(self._items)

    def replace(self, page: VisitPage) -> None:
        """Swap in a freshly fetched authoritative page."""
        with self._lock:
            self._items = list(page.items)
            self.pagination = page.pagination
            self._touch()

    def get(self, schedule_id: Any) -> Optional[Visit]:
        key = visit_key(schedule_id)
        with self._lock:
            for visit in self._items:
                if visit.key == key:
                    return visit
        return None

    def merge(self, visit: Visit) -> bool:
        """Replace the row with the same id; False when it is not on the page."""
        key = visit.key
        if key is None:
            return False
        with self._lock:
            for index, current in enumerate(self._items):
                if current.key == key:
                    self._items[index] = current.merged(visit)
                    self._touch()
                    return True
        return False

    def remove(self, schedule_id: Any) -> bool:
        key = visit_key(schedule_id)
        with self._lock:
            remaining = [visit for visit in self._items if visit.key != key]
            if len(remaining) == len(self._items):
                return False
            self._items = remaining
            self._touch()
            return True

    def set_filters(
        self,
        approval_statuses: Optional[Iterable[Any]] = None,
        visit_statuses: Optional[Iterable[Any]] = None,
    ) -> None:
        """Narrow the rows to the given statuses; an empty filter shows everything."""
        with self._lock:
            self._approval_filter = frozenset(ApprovalStatus.parse(value) for value in approval_statuses or ())
            self._visit_filter = frozenset(VisitStatus.parse(value) for value in visit_statuses or ())
            self._touch()

    def clear_filters(self) -> None:
        self.set_filters()

    def _matches(self, visit: Visit) -> bool:
        if self._approval_filter and visit.approval_status not in self._approval_filter:
            return False
        if self._visit_filter and visit.visit_status not in self._visit_filter:
            return False
        return True

    def rows(self) -> list[VisitRow]:
        cache_key = (self._version, self.flags.version)
        with self._lock:
            if cache_key == self._cache_key:
                return list(self._cache)
            rows = [
                VisitRow(
                    visit=visit,
                    fill_flag=self.flags.state(visit.schedule_id),
                    actions=action_availability(visit, self.flags),
                )
                for visit in self._items
                if self._matches(visit)
            ]
            self._cache = rows
            self._cache_key = cache_key
        return list(rows)
