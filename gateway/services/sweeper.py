"""Background inactivity sweeper and idle-record retention job.

The sweeper expires talk_to_us and live_chat sessions whose last interaction
is older than the category timeout. It clears state with one bulk update
*before* notifying anyone, so a failed notification can never make the same
record expire again on the next tick. The expiry read and the bulk write are
separate statements: a message arriving in between may still be expired,
which is accepted since sessions can always be re-entered. A session that
moved to another state in between is not updated and is not notified.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from gateway.logging_config import get_logger
from gateway.services.active_count import ActiveCountCache
from gateway.services.dispatcher import Dispatcher
from gateway.services.session_store import SessionStore
from gateway.services.state_machine import (
    TRACKED_STATES,
    SessionState,
    TimeoutTick,
    Timeouts,
    decide,
    expiry_fields,
)

logger = get_logger("sweeper")

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeoutSweeper:
    def __init__(
        self,
        store: SessionStore,
        dispatcher: Dispatcher,
        cache: ActiveCountCache,
        timeouts: Timeouts,
        interval_seconds: float = 60,
        pacing_seconds: float = 0.5,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.cache = cache
        self.timeouts = timeouts
        self.interval_seconds = interval_seconds
        self.pacing_seconds = pacing_seconds
        self._sleep = sleep
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self.last_summary: Optional[dict] = None

    @classmethod
    def from_settings(cls, settings, store, dispatcher, cache) -> "TimeoutSweeper":
        return cls(
            store=store,
            dispatcher=dispatcher,
            cache=cache,
            timeouts=Timeouts.from_settings(settings),
            interval_seconds=settings.sweep_interval_seconds,
            pacing_seconds=settings.notification_pacing_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the periodic timer unless it is already running. Returns True if started."""
        if self.is_running:
            return False
        self._task = asyncio.create_task(self._loop())
        logger.info("Session sweeper started", extra={"context": {"interval_seconds": self.interval_seconds}})
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Session sweeper stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self._sleep(self.interval_seconds)
                summary = await self.run_cycle()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error(
                    "Sweep cycle failed",
                    exc_info=True,
                    extra={"context": {"error": str(exc)}},
                )
                continue

            if summary["remaining"] == 0:
                # No await between this check and returning, so a concurrent start() sees a finished task
                self._task = None
                logger.info("Session sweeper stopped (no active sessions)")
                return

    async def run_cycle(self, now: Optional[datetime] = None) -> dict:
        """Expire stale sessions in every tracked category, then reconcile the active count."""
        now = now or self._clock()
        summary: dict = {"checked_at": now.isoformat()}

        for state in TRACKED_STATES:
            try:
                summary[state.value] = await self._expire_category(state, now)
            except SQLAlchemyError as exc:
                logger.error(
                    f"Expiry query failed for {state.value}",
                    extra={"context": {"error": str(exc)}},
                )
                summary[state.value] = {"expired": 0, "sent": 0, "failed": 0, "error": str(exc)}

        try:
            summary["remaining"] = self.cache.reconcile(self.store.count_tracked())
        except SQLAlchemyError as exc:
            # Unknown count: keep the timer alive
            logger.error("Active count reconcile failed", extra={"context": {"error": str(exc)}})
            summary["remaining"] = None

        self.last_summary = summary
        return summary

    async def _expire_category(self, state: SessionState, now: datetime) -> dict:
        timeout = self.timeouts.for_state(state)
        cutoff = now - timeout
        result = {"expired": 0, "sent": 0, "failed": 0}

        stale = self.store.find_expired(state, cutoff)
        transitions = [decide(record, TimeoutTick(state, cutoff), now, self.timeouts) for record in stale]
        transitions = [t for t in transitions if t.changes]
        if not transitions:
            return result

        user_ids = [t.record.user_id for t in transitions]
        updated = set(self.store.bulk_transition(user_ids, expiry_fields(), from_state=state, now=now))
        skipped = len(transitions) - len(updated)
        # Rows that changed state after the read were not expired; their users get no notice
        transitions = [t for t in transitions if t.record.user_id in updated]
        self.cache.decrement(len(transitions))
        result["expired"] = len(transitions)
        logger.info(
            f"Expired {len(transitions)} inactive {state.value} sessions",
            extra={"context": {"skipped": skipped, "timeout_minutes": timeout.total_seconds() / 60}},
        )

        for index, transition in enumerate(transitions):
            if index and self.pacing_seconds:
                await self._sleep(self.pacing_seconds)
            user_id = transition.record.user_id
            try:
                ok = await self.dispatcher.send(user_id, transition.action.text)
            except Exception as exc:
                logger.error(f"Error sending expiry notice to {user_id}: {exc}")
                ok = False
            if ok:
                result["sent"] += 1
            else:
                result["failed"] += 1
                logger.warning("Expiry notice not delivered", extra={"context": {"user_id": user_id, "state": state.value}})

        logger.info(
            f"{state.value} expiry complete: {result['sent']} sent, {result['failed']} failed",
            extra={"context": result},
        )
        return result


class RetentionJob:
    """Deletes idle records that have been quiet longer than the retention window."""

    def __init__(
        self,
        store: SessionStore,
        retention,
        interval_seconds: float = 600,
        sleep: Sleep = asyncio.sleep,
    ):
        self.store = store
        self.retention = retention
        self.interval_seconds = interval_seconds
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, settings, store) -> "RetentionJob":
        return cls(store=store, retention=settings.idle_retention, interval_seconds=settings.retention_interval_seconds)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        if self.is_running:
            return False
        self._task = asyncio.create_task(self._loop())
        logger.info("Retention job started", extra={"context": {"interval_seconds": self.interval_seconds}})
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def run_once(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        deleted = self.store.purge_idle_before(now - self.retention)
        if deleted:
            logger.info(f"Cleaned up {deleted} idle sessions", extra={"context": {"cutoff": (now - self.retention).isoformat()}})
        return deleted

    async def _loop(self) -> None:
        while True:
            try:
                await self._sleep(self.interval_seconds)
                self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Retention purge failed", exc_info=True, extra={"context": {"error": str(exc)}})
