import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from gateway.services.active_count import ActiveCountCache
from gateway.services.state_machine import SessionState
from gateway.services.sweeper import RetentionJob, TimeoutSweeper


@pytest.fixture
def cache():
    return ActiveCountCache()


@pytest.fixture
def sweeper(store, dispatcher, cache, timeouts):
    return TimeoutSweeper(
        store=store,
        dispatcher=dispatcher,
        cache=cache,
        timeouts=timeouts,
        interval_seconds=60,
        pacing_seconds=0.5,
        sleep=AsyncMock(),
    )


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_expires_inactive_live_chat_once(self, sweeper, store, seed_session, dispatcher, cache, now):
        seed_session("live@c.us", SessionState.LIVE_CHAT, minutes_ago=11)
        cache.increment()

        summary = await sweeper.run_cycle(now=now)

        assert summary["live_chat"] == {"expired": 1, "sent": 1, "failed": 0}
        assert store.get("live@c.us").state == SessionState.IDLE
        dispatcher.send.assert_awaited_once()
        user_id, text = dispatcher.send.await_args.args
        assert user_id == "live@c.us"
        assert "Live Chat session has been automatically ended" in text
        assert summary["remaining"] == 0

        # Next tick right after: nothing left to expire for this user
        summary = await sweeper.run_cycle(now=now + timedelta(minutes=1))
        assert summary["live_chat"]["expired"] == 0
        assert dispatcher.send.await_count == 1

    @pytest.mark.asyncio
    async def test_expires_talk_to_us_and_decrements_cache(self, sweeper, store, seed_session, cache, now):
        seed_session("talk@c.us", SessionState.TALK_TO_US, minutes_ago=6, prompted_minutes_ago=6)
        seed_session("busy@c.us", SessionState.LIVE_CHAT, minutes_ago=1)
        cache.reconcile(2)

        summary = await sweeper.run_cycle(now=now)

        assert summary["talk_to_us"]["expired"] == 1
        assert store.get("talk@c.us").state == SessionState.IDLE
        assert store.get("busy@c.us").state == SessionState.LIVE_CHAT
        assert cache.value == 1
        assert summary["remaining"] == 1

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_reexpire(self, sweeper, store, seed_session, dispatcher, now):
        seed_session("a@c.us", SessionState.LIVE_CHAT, minutes_ago=11)
        seed_session("b@c.us", SessionState.LIVE_CHAT, minutes_ago=12)
        dispatcher.send.side_effect = [False, RuntimeError("transport down")]

        summary = await sweeper.run_cycle(now=now)

        assert summary["live_chat"] == {"expired": 2, "sent": 0, "failed": 2}
        assert store.get("a@c.us").state == SessionState.IDLE
        assert store.get("b@c.us").state == SessionState.IDLE

        dispatcher.send.side_effect = None
        await sweeper.run_cycle(now=now + timedelta(minutes=1))
        assert dispatcher.send.await_count == 2

    @pytest.mark.asyncio
    async def test_session_that_switched_state_is_not_notified(
        self, sweeper, store, seed_session, dispatcher, cache, now
    ):
        seed_session("switch@c.us", SessionState.TALK_TO_US, minutes_ago=6, prompted_minutes_ago=6)
        cache.reconcile(1)
        find_expired = store.find_expired

        def find_then_switch(state, cutoff):
            stale = find_expired(state, cutoff)
            if state == SessionState.TALK_TO_US:
                # User picks live chat between the expiry read and the bulk write
                store.apply_partial(
                    "switch@c.us",
                    {"state": SessionState.LIVE_CHAT, "prompted_at": None, "last_interaction": now},
                    now=now,
                )
            return stale

        with patch.object(store, "find_expired", side_effect=find_then_switch):
            summary = await sweeper.run_cycle(now=now)

        assert summary["talk_to_us"] == {"expired": 0, "sent": 0, "failed": 0}
        assert store.get("switch@c.us").state == SessionState.LIVE_CHAT
        dispatcher.send.assert_not_awaited()
        assert cache.value == 1

    @pytest.mark.asyncio
    async def test_paces_between_notifications(self, sweeper, seed_session, now):
        for index in range(3):
            seed_session(f"user{index}@c.us", SessionState.LIVE_CHAT, minutes_ago=20)

        await sweeper.run_cycle(now=now)

        assert sweeper._sleep.await_count == 2
        sweeper._sleep.assert_awaited_with(0.5)

    @pytest.mark.asyncio
    async def test_store_failure_keeps_cycle_alive(self, sweeper, store, now):
        error = OperationalError("SELECT", {}, Exception("connection refused"))
        with patch.object(store, "find_expired", side_effect=error), patch.object(
            store, "count_tracked", side_effect=error
        ):
            summary = await sweeper.run_cycle(now=now)

        assert "error" in summary["live_chat"]
        assert summary["remaining"] is None


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, store, dispatcher, cache, timeouts):
        sweeper = TimeoutSweeper(store, dispatcher, cache, timeouts, interval_seconds=3600)

        assert sweeper.start() is True
        assert sweeper.start() is False
        assert sweeper.is_running is True

        await sweeper.stop()
        assert sweeper.is_running is False

    @pytest.mark.asyncio
    async def test_stops_itself_when_nothing_to_watch(self, store, dispatcher, cache, timeouts):
        sweeper = TimeoutSweeper(store, dispatcher, cache, timeouts, sleep=AsyncMock())

        sweeper.start()
        await asyncio.wait_for(sweeper._task, timeout=1)

        assert sweeper.is_running is False
        assert sweeper.last_summary["remaining"] == 0

    @pytest.mark.asyncio
    async def test_keeps_running_while_sessions_remain(self, store, seed_session, dispatcher, cache, timeouts, now):
        seed_session("live@c.us", SessionState.LIVE_CHAT, minutes_ago=0)
        ticks = 0

        async def fake_sleep(_seconds):
            nonlocal ticks
            ticks += 1
            if ticks > 3:
                await asyncio.Event().wait()

        sweeper = TimeoutSweeper(store, dispatcher, cache, timeouts, sleep=fake_sleep, clock=lambda: now)
        sweeper.start()
        for _ in range(10):
            await asyncio.sleep(0)

        assert sweeper.is_running is True
        assert cache.value == 1
        await sweeper.stop()


class TestRetentionJob:
    def test_run_once_purges_old_idle(self, store, seed_session, now):
        seed_session("old@c.us", SessionState.IDLE, minutes_ago=180)
        seed_session("new@c.us", SessionState.IDLE, minutes_ago=5)
        job = RetentionJob(store, retention=timedelta(hours=1))

        assert job.run_once(now=now) == 1
        assert store.get("old@c.us") is None
        assert store.get("new@c.us") is not None

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store):
        job = RetentionJob(store, retention=timedelta(hours=1), interval_seconds=3600)

        assert job.start() is True
        assert job.start() is False
        await job.stop()
        assert job.is_running is False
