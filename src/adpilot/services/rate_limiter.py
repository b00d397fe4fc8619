from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from threading import Lock
from time import monotonic, sleep

from adpilot.observability import get_instrumentation

logger = logging.getLogger(__name__)


class WindowKind(StrEnum):
    SECOND = "second"
    MINUTE = "minute"
    HOUR = "hour"


WINDOW_SIZES: dict[WindowKind, float] = {
    WindowKind.SECOND: 1.0,
    WindowKind.MINUTE: 60.0,
    WindowKind.HOUR: 3600.0,
}


class BackpressureError(RuntimeError):
    """The wait queue is full; retry later. Not a job failure."""

    def __init__(self, queue_depth: int) -> None:
        super().__init__(f"rate limiter queue is full (depth={queue_depth})")
        self.queue_depth = queue_depth


@dataclass(frozen=True)
class RateLimitBudget:
    per_second: int = 5
    per_minute: int = 100
    per_hour: int = 1000
    max_queue_depth: int = 100

    def validate(self) -> None:
        for name, value in (
            ("per_second", self.per_second),
            ("per_minute", self.per_minute),
            ("per_hour", self.per_hour),
        ):
            if value < 1:
                raise ValueError(f"RateLimitBudget.{name} must be >= 1")
        if self.max_queue_depth < 0:
            raise ValueError("RateLimitBudget.max_queue_depth must be >= 0")

    def limit_for(self, kind: WindowKind) -> int:
        if kind is WindowKind.SECOND:
            return self.per_second
        if kind is WindowKind.MINUTE:
            return self.per_minute
        return self.per_hour


@dataclass(frozen=True)
class RateLimitWindow:
    window_kind: WindowKind
    limit: int
    used: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitStatus:
    windows: tuple[RateLimitWindow, ...]
    queue_length: int
    rejected_total: int
    granted_total: int

    def window(self, kind: WindowKind) -> RateLimitWindow:
        for window in self.windows:
            if window.window_kind is kind:
                return window
        raise KeyError(kind)


@dataclass
class Ticket:
    ticket_id: int
    cost: int
    granted: bool = False
    cancelled: bool = False
    position: int = 0


class _Window:
    __slots__ = ("kind", "limit", "size", "used", "started_at")

    def __init__(self, kind: WindowKind, limit: int, now: float) -> None:
        self.kind = kind
        self.limit = limit
        self.size = WINDOW_SIZES[kind]
        self.used = 0
        self.started_at = now

    def roll(self, now: float) -> None:
        if now - self.started_at >= self.size:
            self.used = 0
            self.started_at = now

    def has_room(self, cost: int) -> bool:
        return self.used + cost <= self.limit

    def reset_at(self) -> float:
        return self.started_at + self.size


class SlidingWindowRateLimiter:
    """Three independent request windows (second, minute, hour) shared by all callers.

    A call is granted only when every window has headroom; once any window is
    saturated callers wait in FIFO order and a new caller never jumps a
    non-empty queue.
    """

    def __init__(
        self,
        budget: RateLimitBudget | None = None,
        *,
        clock: Callable[[], float] = monotonic,
        sleep_fn: Callable[[float], None] = sleep,
    ) -> None:
        self._budget = budget or RateLimitBudget()
        self._budget.validate()
        self._clock = clock
        self._sleep = sleep_fn
        self._lock = Lock()
        now = self._clock()
        self._windows = tuple(
            _Window(kind, self._budget.limit_for(kind), now) for kind in WindowKind
        )
        self._queue: deque[Ticket] = deque()
        self._ids = itertools.count(1)
        self._rejected_total = 0
        self._granted_total = 0

    @property
    def budget(self) -> RateLimitBudget:
        return self._budget

    def _roll_locked(self) -> float:
        now = self._clock()
        for window in self._windows:
            window.roll(now)
        return now

    def _has_room_locked(self, cost: int) -> bool:
        return all(window.has_room(cost) for window in self._windows)

    def _grant_locked(self, ticket: Ticket) -> None:
        for window in self._windows:
            window.used += ticket.cost
        ticket.granted = True
        ticket.position = 0
        self._granted_total += 1

    def _drain_locked(self) -> None:
        while self._queue:
            head = self._queue[0]
            if head.cancelled:
                self._queue.popleft()
                continue
            if not self._has_room_locked(head.cost):
                break
            self._queue.popleft()
            self._grant_locked(head)
        for index, ticket in enumerate(self._queue, start=1):
            ticket.position = index

    def _wait_seconds_locked(self, now: float) -> float:
        head = next((ticket for ticket in self._queue if not ticket.cancelled), None)
        cost = head.cost if head is not None else 1
        blocking = [w.reset_at() - now for w in self._windows if not w.has_room(cost)]
        return max(0.0, max(blocking, default=0.0))

    def admit(self, cost: int = 1) -> Ticket:
        """Grant immediately, or enqueue and return the ticket with its queue position."""
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if any(cost > window.limit for window in self._windows):
            raise ValueError(f"cost {cost} exceeds a window limit and can never be granted")
        with self._lock:
            self._roll_locked()
            self._drain_locked()
            ticket = Ticket(ticket_id=next(self._ids), cost=cost)
            if not self._queue and self._has_room_locked(cost):
                self._grant_locked(ticket)
                return ticket
            if len(self._queue) >= self._budget.max_queue_depth:
                self._rejected_total += 1
                queue_depth = len(self._queue)
                get_instrumentation().counter("rate_limiter_rejected_total")
                logger.warning(
                    "rate_limiter_backpressure",
                    extra={"extra": {"queue_depth": queue_depth, "cost": cost}},
                )
                raise BackpressureError(queue_depth)
            self._queue.append(ticket)
            ticket.position = len(self._queue)
            return ticket

    def poll(self, ticket: Ticket) -> bool:
        """Advance the queue; True once ``ticket`` has been granted."""
        with self._lock:
            if ticket.granted:
                return True
            if ticket.cancelled:
                return False
            self._roll_locked()
            self._drain_locked()
            return ticket.granted

    def cancel(self, ticket: Ticket) -> bool:
        """Withdraw a ticket that has not been granted yet."""
        with self._lock:
            if ticket.granted or ticket.cancelled:
                return False
            ticket.cancelled = True
            try:
                self._queue.remove(ticket)
            except ValueError:
                pass
            for index, queued in enumerate(self._queue, start=1):
                queued.position = index
            return True

    def seconds_until_granted(self, ticket: Ticket) -> float:
        with self._lock:
            if ticket.granted:
                return 0.0
            now = self._roll_locked()
            self._drain_locked()
            if ticket.granted:
                return 0.0
            return self._wait_seconds_locked(now)

    def acquire(self, cost: int = 1, *, max_wait_seconds: float | None = None) -> float:
        """Block until a grant; returns seconds waited.

        Raises BackpressureError when the queue is full or ``max_wait_seconds``
        would be exceeded (the ticket is withdrawn in that case).
        """
        ticket = self.admit(cost)
        waited = 0.0
        while not ticket.granted:
            wait_seconds = self.seconds_until_granted(ticket)
            if ticket.granted:
                break
            if max_wait_seconds is not None and waited + wait_seconds > max_wait_seconds:
                self.cancel(ticket)
                raise BackpressureError(self.queue_length())
            # A zero wait means a window rolls over right now; poll again.
            self._sleep(max(wait_seconds, 0.001))
            waited += wait_seconds
            self.poll(ticket)
        return waited

    def queue_length(self) -> int:
        with self._lock:
            return sum(1 for ticket in self._queue if not ticket.cancelled)

    def status(self) -> RateLimitStatus:
        with self._lock:
            self._roll_locked()
            self._drain_locked()
            windows = tuple(
                RateLimitWindow(
                    window_kind=window.kind,
                    limit=window.limit,
                    used=window.used,
                    reset_at=window.reset_at(),
                )
                for window in self._windows
            )
            return RateLimitStatus(
                windows=windows,
                queue_length=len(self._queue),
                rejected_total=self._rejected_total,
                granted_total=self._granted_total,
            )


class AsyncRateLimiter:
    def __init__(
        self,
        sync_limiter: SlidingWindowRateLimiter,
        *,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sync_limiter = sync_limiter
        self._sleep = sleep_fn

    async def acquire(self, cost: int = 1) -> float:
        ticket = self._sync_limiter.admit(cost)
        waited = 0.0
        try:
            while not self._sync_limiter.poll(ticket):
                wait_seconds = self._sync_limiter.seconds_until_granted(ticket)
                waited += wait_seconds
                await self._sleep(max(wait_seconds, 0.001))
        except asyncio.CancelledError:
            self._sync_limiter.cancel(ticket)
            raise
        return waited


def budget_from_settings(settings) -> RateLimitBudget:
    return RateLimitBudget(
        per_second=settings.rate_limit_per_second,
        per_minute=settings.rate_limit_per_minute,
        per_hour=settings.rate_limit_per_hour,
        max_queue_depth=settings.rate_limit_max_queue_depth,
    )
