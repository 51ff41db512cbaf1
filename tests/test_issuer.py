"""Tests for TokenIssuer: rotation, scheduling and the subscription status machine.

Covers:
- rotate: issuance window, persistence, failure keeps previous token, in-flight guard
- scheduling: rotation at or before expiry, single pending timer, one rotation per window
- watch loop: loading -> ready | missing | error, following other writers, subscribe before first read
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from shiftclock.core.store import APPEND_ONLY, MemoryTokenStore
from shiftclock.core.tokens import EmptyTokenRecord, QRToken
from shiftclock.services.issuer import ROTATION_JOB_ID, WRITER_ERROR, TokenIssuer

_WINDOW = 60
_RETRY = 5


async def _drain() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _issuer(store, scheduler, clock, **kw) -> TokenIssuer:
    return TokenIssuer(
        store,
        scheduler=scheduler,
        window_seconds=_WINDOW,
        retry_seconds=_RETRY,
        clock=clock,
        **kw,
    )


class _FlakyStore(MemoryTokenStore):
    """Memory store whose writes can be switched off."""

    def __init__(self, **kw) -> None:
        super().__init__(**kw)
        self.fail = False
        self.puts = 0

    async def put(self, token: QRToken) -> None:
        self.puts += 1
        if self.fail:
            raise ConnectionError("store unreachable")
        await super().put(token)


class _RoundTripStore(MemoryTokenStore):
    """Memory store that suspends on every call, like a network round trip."""

    async def put(self, token: QRToken) -> None:
        await asyncio.sleep(0)
        await super().put(token)

    async def latest(self) -> QRToken | None:
        await asyncio.sleep(0)
        return await super().latest()


class _UnreadableStore(MemoryTokenStore):
    async def latest(self) -> QRToken | None:
        raise ConnectionError("down")


# =============================================================================
# rotate
# =============================================================================


@pytest.mark.asyncio
class TestRotate:
    async def test_writes_token_with_fixed_window(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        token = await issuer.rotate()

        assert token is not None
        assert token.issued_at == clock()
        assert token.expires_at == clock() + timedelta(seconds=_WINDOW)
        assert await any_store.latest() == token

    async def test_schedules_next_rotation_at_expiry(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        token = await issuer.rotate()

        assert token is not None
        assert scheduler.jobs[ROTATION_JOB_ID].run_date == token.expires_at

    async def test_issued_at_increases_across_rotations(self, scheduler, clock) -> None:
        store = MemoryTokenStore(scheme=APPEND_ONLY)
        issuer = _issuer(store, scheduler, clock)
        first = await issuer.rotate()
        clock.advance(_WINDOW)
        second = await issuer.rotate()

        assert first is not None and second is not None
        assert second.issued_at > first.issued_at
        assert second.value != first.value

    async def test_failure_keeps_previous_token(self, scheduler, clock) -> None:
        store = _FlakyStore()
        issuer = _issuer(store, scheduler, clock)
        first = await issuer.rotate()

        store.fail = True
        clock.advance(_WINDOW)
        assert await issuer.rotate() is None

        assert await store.latest() == first
        assert issuer.writer_error == WRITER_ERROR

    async def test_failure_retries_on_own_schedule(self, scheduler, clock) -> None:
        store = _FlakyStore()
        store.fail = True
        issuer = _issuer(store, scheduler, clock)

        await issuer.rotate()
        assert scheduler.jobs[ROTATION_JOB_ID].run_date == clock() + timedelta(seconds=_RETRY)

        store.fail = False
        clock.advance(_RETRY)
        await scheduler.fire(ROTATION_JOB_ID)

        assert issuer.writer_error == ""
        assert await store.latest() is not None

    async def test_failure_never_raises(self, scheduler, clock) -> None:
        store = AsyncMock()
        store.put.side_effect = RuntimeError("boom")
        issuer = _issuer(store, scheduler, clock)
        assert await issuer.rotate() is None

    async def test_only_one_rotation_in_flight(self, scheduler, clock) -> None:
        gate = asyncio.Event()
        store = MemoryTokenStore()
        real_put = store.put
        calls = 0

        async def slow_put(token: QRToken) -> None:
            nonlocal calls
            calls += 1
            await gate.wait()
            await real_put(token)

        store.put = slow_put  # type: ignore[method-assign]
        issuer = _issuer(store, scheduler, clock)

        first = asyncio.create_task(issuer.rotate())
        await _drain()
        assert await issuer.rotate() is None

        gate.set()
        assert await first is not None
        assert calls == 1


# =============================================================================
# Scheduling
# =============================================================================


@pytest.mark.asyncio
class TestScheduling:
    async def test_rotation_never_later_than_expiry(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        token = await issuer.rotate()
        assert token is not None

        clock.advance(23)
        await issuer.refresh()

        assert scheduler.jobs[ROTATION_JOB_ID].run_date == token.expires_at
        assert all(run <= token.expires_at for run in scheduler.history)

    async def test_skewed_expiry_rotates_immediately(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.rotate()

        clock.advance(_WINDOW + 30)
        await issuer.refresh()

        assert scheduler.jobs[ROTATION_JOB_ID].run_date == clock()

    async def test_far_future_expiry_capped_at_window(self, any_store, scheduler, clock) -> None:
        await any_store.put(
            QRToken(value="x", issued_at=clock(), expires_at=clock() + timedelta(hours=1))
        )
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.refresh()

        assert scheduler.jobs[ROTATION_JOB_ID].run_date == clock() + timedelta(seconds=_WINDOW)

    async def test_missing_token_waits_one_window(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.refresh()

        assert issuer.status == "missing"
        assert scheduler.jobs[ROTATION_JOB_ID].run_date == clock() + timedelta(seconds=_WINDOW)

    async def test_single_pending_timer(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.rotate()
        await issuer.refresh()
        await issuer.refresh()

        assert list(scheduler.jobs) == [ROTATION_JOB_ID]

    async def test_one_rotation_per_window(self, scheduler, clock) -> None:
        store = _FlakyStore(scheme=APPEND_ONLY)
        issuer = _issuer(store, scheduler, clock)
        await issuer.rotate()

        for _ in range(3):
            clock.set(scheduler.jobs[ROTATION_JOB_ID].run_date)
            await scheduler.fire(ROTATION_JOB_ID)
            await issuer.refresh()

        assert store.puts == 4
        issued = [t.issued_at for t in store.history()]
        gaps = {(b - a).total_seconds() for a, b in zip(issued, issued[1:])}
        assert gaps == {_WINDOW}

    async def test_stop_cancels_pending_rotation(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.start()
        await _drain()
        await issuer.stop()

        assert scheduler.jobs == {}
        assert issuer.next_rotation_at is None


# =============================================================================
# Subscription status
# =============================================================================


@pytest.mark.asyncio
class TestStatus:
    async def test_starts_loading(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        assert issuer.snapshot()["status"] == "loading"

    async def test_ready_after_start(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.start()
        await _drain()
        try:
            snap = issuer.snapshot()
            assert snap["status"] == "ready"
            assert snap["value"] == (await any_store.latest()).value
            assert snap["message"] is None
        finally:
            await issuer.stop()

    async def test_follows_writes_from_another_issuer(self, any_store, scheduler, clock) -> None:
        issuer = _issuer(any_store, scheduler, clock)
        await issuer.start()
        await _drain()
        try:
            other = QRToken(
                value="from-other-tab",
                issued_at=clock() + timedelta(seconds=10),
                expires_at=clock() + timedelta(seconds=40),
            )
            await any_store.put(other)
            await _drain()

            assert issuer.current == other
            assert scheduler.jobs[ROTATION_JOB_ID].run_date == other.expires_at
        finally:
            await issuer.stop()

    async def test_error_when_store_unreadable(self, scheduler, clock) -> None:
        issuer = _issuer(_UnreadableStore(), scheduler, clock)
        await issuer.start()
        await _drain()
        try:
            snap = issuer.snapshot()
            assert snap["status"] == "error"
            assert snap["value"] is None
            assert snap["message"] == "Unable to load the QR token. Please contact support."
        finally:
            await issuer.stop()

    async def test_write_error_does_not_change_status(self, scheduler, clock) -> None:
        store = _FlakyStore()
        issuer = _issuer(store, scheduler, clock)
        await issuer.start()
        await _drain()
        try:
            store.fail = True
            await issuer.rotate()
            snap = issuer.snapshot()
            assert snap["status"] == "ready"
            assert snap["writer_error"] == WRITER_ERROR
        finally:
            await issuer.stop()

    @pytest.mark.parametrize("scheme", ["single_slot", "append_only"])
    async def test_first_write_during_subscribe_is_seen(self, scheme, scheduler, clock) -> None:
        store = _RoundTripStore(scheme=scheme)
        issuer = _issuer(store, scheduler, clock)
        await issuer.start()
        await _drain()
        try:
            latest = await store.latest()
            assert latest is not None
            assert issuer.status == "ready"
            assert issuer.current == latest
            assert scheduler.jobs[ROTATION_JOB_ID].run_date == latest.expires_at
        finally:
            await issuer.stop()

    async def test_record_without_value_is_missing(self, scheduler, clock) -> None:
        store = MemoryTokenStore()
        store.latest = AsyncMock(side_effect=EmptyTokenRecord("token record has no value"))  # type: ignore[method-assign]
        issuer = _issuer(store, scheduler, clock)
        await issuer.refresh()

        snap = issuer.snapshot()
        assert snap["status"] == "missing"
        assert snap["message"] == "No QR token is configured yet."
