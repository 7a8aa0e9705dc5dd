"""Process-local fill flags - the optimistic state between a fill and its confirmation."""

import threading
from enum import Enum
from typing import Any, Optional

from src.models.visit import visit_key
from src.utils.logging import get_structured_logger

logger = get_structured_logger(__name__)


class FillFlag(str, Enum):
    """Per-visit reconciliation state; exactly one applies at a time."""
    ABSENT = "absent"
    RECENTLY_FILLED = "recently_filled"
    CONFIRMED_FILLED = "confirmed_filled"


class ReconciliationFlags:
    """Thread-safe store of fill flags keyed by case-insensitive visit id.

    Every transition is an idempotent set, so the confirmation path and the
    expiry path may race without corrupting state: whichever lands first wins
    and the other becomes a no-op.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._flags: dict[str, FillFlag] = {}
        self._version = 0

    def _key(self, schedule_id: Any) -> Optional[str]:
        return visit_key(schedule_id)

    def _set(self, key: str, flag: FillFlag) -> bool:
        current = self._flags.get(key, FillFlag.ABSENT)
        if current is flag:
            return False
        if flag is FillFlag.ABSENT:
            del self._flags[key]
        else:
            self._flags[key] = flag
        self._version += 1
        return True

    def mark_recently_filled(self, schedule_id: Any) -> bool:
        """Flag a dispatched fill. A confirmed visit stays confirmed."""
        key = self._key(schedule_id)
        if key is None:
            return False
        with self._lock:
            if self._flags.get(key) is FillFlag.CONFIRMED_FILLED:
                return False
            changed = self._set(key, FillFlag.RECENTLY_FILLED)
        if changed:
            logger.debug("Fill flag set", schedule_id=key, flag=FillFlag.RECENTLY_FILLED.value)
        return changed

    def confirm(self, schedule_id: Any) -> bool:
        """Promote to CONFIRMED_FILLED, clearing RECENTLY_FILLED."""
        key = self._key(schedule_id)
        if key is None:
            return False
        with self._lock:
            changed = self._set(key, FillFlag.CONFIRMED_FILLED)
        if changed:
            logger.info("Fill confirmed", schedule_id=key)
        return changed

    def expire(self, schedule_id: Any) -> bool:
        """Drop an unconfirmed RECENTLY_FILLED flag; confirmed flags are untouched."""
        key = self._key(schedule_id)
        if key is None:
            return False
        with self._lock:
            if self._flags.get(key) is not FillFlag.RECENTLY_FILLED:
                return False
            changed = self._set(key, FillFlag.ABSENT)
        if changed:
            logger.info("Unconfirmed fill flag expired", schedule_id=key)
        return changed

    def clear(self, schedule_id: Any) -> bool:
        key = self._key(schedule_id)
        if key is None:
            return False
        with self._lock:
            return self._set(key, FillFlag.ABSENT)

    def clear_confirmed(self) -> int:
        """Hand confirmed flags off to a fresh authoritative list."""
        with self._lock:
            keys = [key for key, flag in self._flags.items() if flag is FillFlag.CONFIRMED_FILLED]
            for key in keys:
                self._set(key, FillFlag.ABSENT)
        return len(keys)

    def clear_all(self) -> None:
        with self._lock:
            if self._flags:
                self._flags.clear()
                self._version += 1

    def state(self, schedule_id: Any) -> FillFlag:
        key = self._key(schedule_id)
        if key is None:
            return FillFlag.ABSENT
        with self._lock:
            return self._flags.get(key, FillFlag.ABSENT)

    def is_flagged(self, schedule_id: Any) -> bool:
        return self.state(schedule_id) is not FillFlag.ABSENT

    def snapshot(self) -> dict[str, FillFlag]:
        with self._lock:
            return dict(self._flags)

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every change."""
        with self._lock:
            return self._version
