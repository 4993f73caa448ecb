from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from .cursor import CursorTracker
from .models import Message
from .store import MessageStore, PersistenceError

logger = logging.getLogger("lark_pal_scheduler")

FireCallback = Callable[[str], Awaitable[object]]


class TriggerState(str, Enum):
    IDLE = "idle"
    COUNTING_DOWN = "counting_down"
    FIRING = "firing"


class TriggerScheduler:
    """Debounces inbound activity into single reply cycles for one room.

    ``notify`` arms a countdown of ``idle_delay`` seconds, or ``instant_delay``
    when the bot was addressed. Further notifications during an idle countdown
    cancel the timer and start over from the newest one; an instant countdown is
    left alone. When the timer fires the candidate check runs again on the
    current store state before ``on_fire`` is awaited with the id of the last
    message seen by the notification that armed the timer.

    Notifications that arrive while firing are replayed once the cycle ends.
    If the cycle's own reply now follows them in the store, the newest human
    message after the fired batch is armed as a follow-up batch.
    """

    def __init__(
        self,
        store: MessageStore,
        cursor: CursorTracker,
        on_fire: FireCallback,
        idle_delay: float,
        instant_delay: float,
    ) -> None:
        self._store = store
        self._cursor = cursor
        self._on_fire = on_fire
        self._idle_delay = max(0.0, float(idle_delay))
        self._instant_delay = max(0.0, float(instant_delay))
        self._state = TriggerState.IDLE
        self._instant = False
        self._deadline = 0.0
        self._batch_last_id: Optional[str] = None
        self._task: asyncio.Task | None = None
        self._rearm: Optional[bool] = None
        self._follow_up_of: Optional[str] = None

    @property
    def state(self) -> TriggerState:
        return self._state

    @property
    def instant(self) -> bool:
        return self._instant

    @property
    def deadline(self) -> float:
        return self._deadline

    @property
    def batch_last_id(self) -> Optional[str]:
        return self._batch_last_id

    def is_candidate(self) -> bool:
        last = self._store.last_message()
        if last is None:
            return False
        if last.from_bot:
            return False
        return last.id != self._cursor.get()

    def notify(self, want_instant: bool = False) -> bool:
        """Register new activity; returns True when a countdown was (re)armed."""
        if not self.is_candidate():
            return False
        if self._state == TriggerState.FIRING:
            self._rearm = bool(want_instant) or bool(self._rearm)
            return False
        if self._state == TriggerState.COUNTING_DOWN and self._instant:
            logger.debug("Instant countdown already pending; ignoring notification")
            return False
        self._arm(want_instant)
        return True

    def cancel(self) -> None:
        if self._state != TriggerState.COUNTING_DOWN:
            return
        if self._task is not None:
            self._task.cancel()
        self._task = None
        self._reset()

    async def join(self) -> None:
        """Wait until no countdown or fire is outstanding."""
        while self._task is not None and not self._task.done():
            with contextlib.suppress(asyncio.CancelledError):
                await self._task

    def _arm(
        self,
        want_instant: bool,
        batch_last_id: Optional[str] = None,
        follow_up_of: Optional[str] = None,
    ) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        if batch_last_id is None:
            last = self._store.last_message()
            batch_last_id = last.id if last is not None else None
        self._batch_last_id = batch_last_id
        self._follow_up_of = follow_up_of
        self._instant = bool(want_instant)
        delay = self._instant_delay if self._instant else self._idle_delay
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + delay
        self._state = TriggerState.COUNTING_DOWN
        self._task = loop.create_task(self._countdown(delay))
        logger.debug(
            "Countdown armed (instant=%s, delay=%.2fs, batch_last_id=%s)",
            self._instant,
            delay,
            self._batch_last_id,
        )

    def _still_due(self) -> bool:
        if self._follow_up_of is not None:
            pending = self._pending_after(self._follow_up_of)
            return pending is not None and pending.id == self._batch_last_id
        return self.is_candidate()

    def _pending_after(self, message_id: str) -> Optional[Message]:
        pending = self._store.last_human_after(message_id)
        if pending is None or pending.id == self._cursor.get():
            return None
        return pending

    async def _countdown(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._state = TriggerState.FIRING
        batch_last_id = self._batch_last_id
        try:
            if batch_last_id is None or not self._still_due():
                logger.info("Trigger dropped at fire time: latest message no longer needs a reply")
                return
            logger.info("Trigger fired (instant=%s, batch_last_id=%s)", self._instant, batch_last_id)
            await self._on_fire(batch_last_id)
        except PersistenceError:
            logger.error("Reply cycle aborted by a persistence failure", exc_info=True)
            raise
        finally:
            self._reset()
            self._task = None
            self._maybe_rearm(batch_last_id)

    def _maybe_rearm(self, fired_id: Optional[str]) -> None:
        rearm = self._rearm
        self._rearm = None
        if rearm is None:
            return
        if self.notify(want_instant=rearm):
            logger.debug("Re-armed for activity that arrived while firing")
            return
        # The cycle's own reply may now sit after messages that arrived mid-call.
        pending = self._pending_after(fired_id) if fired_id is not None else None
        if pending is not None:
            self._arm(rearm, batch_last_id=pending.id, follow_up_of=fired_id)
            logger.debug("Re-armed for %s, which arrived while firing", pending.id)

    def _reset(self) -> None:
        self._state = TriggerState.IDLE
        self._instant = False
        self._deadline = 0.0
        self._batch_last_id = None
        self._follow_up_of = None
