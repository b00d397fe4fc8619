from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from adpilot.services.rate_limiter import (
    AsyncRateLimiter,
    BackpressureError,
    RateLimitBudget,
    SlidingWindowRateLimiter,
    WindowKind,
)


def _manual_clock():
    now = {"t": 0.0}
    sleeps: list[float] = []

    def _clock() -> float:
        return now["t"]

    def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["t"] += seconds

    return now, sleeps, _clock, _sleep


def test_acquire_grants_until_second_window_is_full() -> None:
    now, sleeps, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=2, per_minute=100, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )

    assert limiter.acquire() == 0.0
    assert limiter.acquire() == 0.0
    waited = limiter.acquire()

    assert waited == 1.0
    assert sleeps == [1.0]
    assert limiter.status().window(WindowKind.SECOND).used == 1


def test_minute_window_blocks_even_when_second_window_has_room() -> None:
    now, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=5, per_minute=3, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    for _ in range(3):
        limiter.acquire()
    now["t"] = 2.0

    ticket = limiter.admit()

    assert ticket.granted is False
    assert ticket.position == 1
    assert limiter.seconds_until_granted(ticket) == 58.0


def test_used_never_exceeds_limit_and_resets_per_window() -> None:
    now, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=2, per_minute=3, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()
    limiter.acquire()
    now["t"] = 1.0
    limiter.acquire()

    status = limiter.status()
    assert status.window(WindowKind.SECOND).used == 1
    assert status.window(WindowKind.MINUTE).used == 3
    assert status.window(WindowKind.HOUR).used == 3
    assert status.window(WindowKind.MINUTE).reset_at == 60.0


def test_waiters_are_granted_in_fifo_order() -> None:
    now, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=1, per_minute=100, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()
    first = limiter.admit()
    second = limiter.admit()
    third = limiter.admit()
    assert [first.position, second.position, third.position] == [1, 2, 3]

    now["t"] = 1.0
    assert limiter.poll(third) is False
    assert first.granted is True
    assert second.granted is False
    assert second.position == 1

    now["t"] = 2.0
    assert limiter.poll(second) is True
    assert third.granted is False


def test_new_caller_does_not_jump_non_empty_queue() -> None:
    now, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=2, per_minute=100, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()
    big = limiter.admit(cost=2)
    assert big.granted is False

    small = limiter.admit(cost=1)

    assert small.granted is False
    assert small.position == 2


def test_queue_full_raises_backpressure_and_counts_rejection() -> None:
    _, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=1, per_minute=100, per_hour=1000, max_queue_depth=2),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()
    limiter.admit()
    limiter.admit()

    with pytest.raises(BackpressureError) as exc_info:
        limiter.admit()

    assert exc_info.value.queue_depth == 2
    status = limiter.status()
    assert status.rejected_total == 1
    assert status.queue_length == 2


def test_cancel_removes_waiting_ticket_and_renumbers_queue() -> None:
    _, _, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=1, per_minute=100, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()
    first = limiter.admit()
    second = limiter.admit()

    assert limiter.cancel(first) is True
    assert limiter.cancel(first) is False
    assert second.position == 1
    assert limiter.queue_length() == 1


def test_acquire_with_max_wait_withdraws_ticket() -> None:
    _, sleeps, clock, sleep_fn = _manual_clock()
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=1, per_minute=1, per_hour=1000),
        clock=clock,
        sleep_fn=sleep_fn,
    )
    limiter.acquire()

    with pytest.raises(BackpressureError):
        limiter.acquire(max_wait_seconds=5.0)

    assert sleeps == []
    assert limiter.queue_length() == 0


def test_cost_above_any_limit_is_rejected_up_front() -> None:
    limiter = SlidingWindowRateLimiter(RateLimitBudget(per_second=2, per_minute=100, per_hour=1000))

    with pytest.raises(ValueError, match="exceeds"):
        limiter.admit(cost=3)
    with pytest.raises(ValueError, match=">= 1"):
        limiter.admit(cost=0)


def test_invalid_budget_raises_value_error() -> None:
    with pytest.raises(ValueError, match="per_minute"):
        SlidingWindowRateLimiter(RateLimitBudget(per_second=1, per_minute=0, per_hour=10))


def test_async_limiter_waits_with_async_sleep() -> None:
    now = {"t": 0.0}
    sleeps: list[float] = []

    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now["t"] += seconds

    sync_limiter = SlidingWindowRateLimiter(
        RateLimitBudget(per_second=1, per_minute=100, per_hour=1000),
        clock=lambda: now["t"],
    )
    limiter = AsyncRateLimiter(sync_limiter, sleep_fn=_sleep)

    async def _run() -> list[float]:
        return [await limiter.acquire(), await limiter.acquire()]

    waited = asyncio.run(_run())

    assert waited == [0.0, 1.0]
    assert sleeps == [1.0]


@settings(max_examples=60, deadline=None)
@given(
    per_second=st.integers(min_value=1, max_value=5),
    per_minute=st.integers(min_value=1, max_value=20),
    steps=st.lists(st.floats(min_value=0.0, max_value=5.0), min_size=1, max_size=40),
)
def test_grants_never_exceed_any_window_limit(
    per_second: int, per_minute: int, steps: list[float]
) -> None:
    now = {"t": 0.0}
    limiter = SlidingWindowRateLimiter(
        RateLimitBudget(
            per_second=per_second, per_minute=per_minute, per_hour=10_000, max_queue_depth=1000
        ),
        clock=lambda: now["t"],
    )
    tickets = []
    for step in steps:
        now["t"] += step
        tickets.append(limiter.admit())
        status = limiter.status()
        for window in status.windows:
            assert 0 <= window.used <= window.limit

    granted_ids = {ticket.ticket_id for ticket in tickets if ticket.granted}
    waiting_ids = [ticket.ticket_id for ticket in tickets if not ticket.granted]
    assert all(waiting > max(granted_ids, default=0) for waiting in waiting_ids)
