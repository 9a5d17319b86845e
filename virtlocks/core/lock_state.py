"""Per-device lock state machine and shadow wire format."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Mapping

from virtlocks.core.errors import ShadowDocumentError

LOGGER = logging.getLogger(__name__)

TIMER_STEP_MS = 1000

LOCKED = 1
UNLOCKED = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_flag(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return 1 if value else 0
    if isinstance(value, str) and value.strip() in {"0", "1"}:
        return int(value.strip())
    raise ShadowDocumentError(f"Field '{field_name}' must be 0 or 1, got {value!r}")


def _coerce_timer(value: Any) -> int:
    if isinstance(value, bool):
        raise ShadowDocumentError(f"Field 'timer' must be milliseconds, got {value!r}")
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise ShadowDocumentError(f"Field 'timer' must be milliseconds, got {value!r}")


def _unwrap_state(doc: Mapping[str, Any]) -> Mapping[str, Any]:
    nested = doc.get("state")
    if isinstance(nested, Mapping):
        return nested
    return doc


@dataclass(frozen=True)
class ShadowDelta:
    """Partial shadow update. ``None`` means the field was absent."""

    locked: int | None = None
    empty: int | None = None
    lock_clamps: int | None = None
    timer: int | None = None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> ShadowDelta:
        if not isinstance(doc, Mapping):
            raise ShadowDocumentError(f"Shadow document must be an object, got {type(doc).__name__}")
        state = _unwrap_state(doc)
        return cls(
            locked=None if state.get("locked") is None else _coerce_flag(state["locked"], field_name="locked"),
            empty=None if state.get("empty") is None else _coerce_flag(state["empty"], field_name="empty"),
            lock_clamps=None
            if state.get("lock_clamps") is None
            else _coerce_flag(state["lock_clamps"], field_name="lock_clamps"),
            timer=None if state.get("timer") is None else _coerce_timer(state["timer"]),
        )

    @property
    def is_empty(self) -> bool:
        return self.locked is None and self.empty is None and self.lock_clamps is None and self.timer is None


@dataclass(frozen=True)
class LockState:
    device_id: str
    connected: bool = False
    locked: int = LOCKED
    empty: int = 0
    clamps: int = 1
    timer_ms: int | None = None
    last_update: datetime | None = None

    @property
    def is_locked(self) -> bool:
        return self.locked == LOCKED

    @property
    def is_empty(self) -> bool:
        return self.empty == 1

    @property
    def clamps_ok(self) -> bool:
        return self.clamps == 1

    @property
    def has_active_timer(self) -> bool:
        return self.timer_ms is not None and self.timer_ms > 0

    @classmethod
    def from_shadow_state(
        cls,
        device_id: str,
        doc: Mapping[str, Any],
        *,
        connected: bool = True,
    ) -> LockState:
        delta = ShadowDelta.from_document(doc)
        return cls(
            device_id=device_id,
            connected=connected,
            locked=LOCKED if delta.locked is None else delta.locked,
            empty=0 if delta.empty is None else delta.empty,
            clamps=1 if delta.lock_clamps is None else delta.lock_clamps,
            timer_ms=delta.timer,
            last_update=_utcnow(),
        )

    def apply_delta(self, delta: ShadowDelta | Mapping[str, Any]) -> LockState:
        """Merge the fields present in ``delta``; absent fields keep their value."""
        if not isinstance(delta, ShadowDelta):
            delta = ShadowDelta.from_document(delta)
        return replace(
            self,
            locked=self.locked if delta.locked is None else delta.locked,
            empty=self.empty if delta.empty is None else delta.empty,
            clamps=self.clamps if delta.lock_clamps is None else delta.lock_clamps,
            timer_ms=self.timer_ms if delta.timer is None else delta.timer,
            last_update=_utcnow(),
        )

    def to_reported_state(self) -> dict[str, int]:
        reported = {
            "locked": self.locked,
            "empty": self.empty,
            "lock_clamps": self.clamps,
        }
        if self.timer_ms is not None:
            reported["timer"] = self.timer_ms
        return reported

    def tick_timer(self) -> tuple[LockState, bool]:
        """Advance the countdown by one step.

        Returns the new state and whether this step expired the timer, in which
        case the lock is forced closed and the caller should report it.
        """
        if self.timer_ms is None or self.timer_ms <= 0:
            return self, False
        remaining = max(0, self.timer_ms - TIMER_STEP_MS)
        if remaining == 0:
            return replace(self, timer_ms=0, locked=LOCKED, last_update=_utcnow()), True
        return replace(self, timer_ms=remaining), False

    def toggle_empty(self) -> LockState:
        # A bike can only be taken or returned while the lock is open.
        if self.is_locked:
            LOGGER.warning("Cannot toggle empty state while lock is locked: %s", self.device_id)
            return self
        return replace(self, empty=0 if self.is_empty else 1, last_update=_utcnow())

    def toggle_clamps(self) -> LockState:
        return replace(self, clamps=0 if self.clamps_ok else 1, last_update=_utcnow())

    def set_locked(self, locked: bool) -> LockState:
        if locked:
            return replace(self, locked=LOCKED, timer_ms=0, last_update=_utcnow())
        return replace(self, locked=UNLOCKED, last_update=_utcnow())

    def with_connected(self, connected: bool) -> LockState:
        if self.connected == connected:
            return self
        return replace(self, connected=connected)
