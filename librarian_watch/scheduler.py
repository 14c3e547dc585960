# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Deterministic timer scheduling for the watcher.

Every delayed action of the watcher (debounce expiry, batch deadline, cascade
wave delay, heartbeat) is an entry in a single heap ordered by
``(fire_at, seq)``. Two entries due at the same instant fire in the order they
were scheduled, and cancellation is a flag on the entry.

In production the heap is drained by :meth:`TaskScheduler.run` on the asyncio
event loop. Tests use a :class:`ManualClock` and drive time explicitly with
:meth:`TaskScheduler.advance`, so no wall-clock sleeps are needed.

Actions are plain synchronous callables. Anything that needs to await I/O
spawns its own task; the scheduler itself never blocks on I/O.
"""

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)


class MonotonicClock:
    """Wall-clock independent time source in milliseconds."""

    def now(self) -> float:
        return time.monotonic() * 1000.0


class ManualClock:
    """Clock that only moves when told to (for tests)."""

    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)

    def now(self) -> float:
        return self._now

    def set(self, value_ms: float) -> None:
        if value_ms < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = float(value_ms)

    def advance(self, delta_ms: float) -> None:
        self.set(self._now + delta_ms)


Clock = Union[MonotonicClock, ManualClock]


@dataclass(order=True)
class ScheduledTask:
    """A pending timer entry."""

    fire_at: float
    seq: int
    name: str = field(compare=False)
    action: Callable[[], None] = field(compare=False, repr=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        self.cancelled = True


class TaskScheduler:
    """Priority queue of ``(fire_at, action)`` pairs."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock if clock is not None else MonotonicClock()
        self._heap: List[ScheduledTask] = []
        self._seq = itertools.count()
        self._wakeup = asyncio.Event()
        self._closed = False
        self._halted = False

    @property
    def is_realtime(self) -> bool:
        """False when time is driven manually via advance()."""
        return not isinstance(self.clock, ManualClock)

    def now(self) -> float:
        return self.clock.now()

    def call_later(self, delay_ms: float, action: Callable[[], None], name: str = "task") -> ScheduledTask:
        """Schedule ``action`` to run ``delay_ms`` from now."""
        if self._closed:
            raise RuntimeError("Scheduler is closed")
        task = ScheduledTask(
            fire_at=self.now() + max(0.0, float(delay_ms)),
            seq=next(self._seq),
            name=name,
            action=action,
        )
        heapq.heappush(self._heap, task)
        self._wakeup.set()
        return task

    def cancel(self, task: Optional[ScheduledTask]) -> None:
        if task is not None:
            task.cancel()

    def cancel_all(self) -> None:
        """Cancel every pending entry."""
        for task in self._heap:
            task.cancel()
        self._heap.clear()
        self._wakeup.set()

    def close(self) -> None:
        """Cancel everything and refuse new entries."""
        self.cancel_all()
        self._closed = True

    def pending(self) -> List[ScheduledTask]:
        """Live entries in firing order."""
        return sorted(t for t in self._heap if not t.cancelled)

    def __len__(self) -> int:
        return sum(1 for t in self._heap if not t.cancelled)

    def next_fire_at(self) -> Optional[float]:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)
        return self._heap[0].fire_at if self._heap else None

    def run_due(self) -> int:
        """Run every entry whose time has come. Returns how many ran.

        Entries scheduled by a running action are picked up in the same call
        if they are already due.
        """
        ran = 0
        while True:
            fire_at = self.next_fire_at()
            if fire_at is None or fire_at > self.now():
                return ran
            task = heapq.heappop(self._heap)
            try:
                task.action()
            except Exception as e:
                logger.warning(f"Scheduled task '{task.name}' failed: {e}")
            ran += 1

    async def advance(self, delta_ms: float) -> int:
        """Move a manual clock forward, firing entries in order along the way."""
        if not isinstance(self.clock, ManualClock):
            raise RuntimeError("advance() requires a ManualClock")
        target = self.clock.now() + delta_ms
        ran = 0
        while True:
            fire_at = self.next_fire_at()
            if fire_at is None or fire_at > target:
                break
            self.clock.set(max(self.clock.now(), fire_at))
            ran += self.run_due()
            # Let tasks spawned by the actions make progress
            await asyncio.sleep(0)
        self.clock.set(target)
        return ran

    def halt(self) -> None:
        """Ask a running run() loop to return at its next wakeup."""
        self._halted = True
        self._wakeup.set()

    async def run(self) -> None:
        """Drain the heap in real time until halted, closed or cancelled."""
        self._halted = False
        while not self._closed and not self._halted:
            self._wakeup.clear()
            self.run_due()
            if self._halted:
                return
            fire_at = self.next_fire_at()
            timeout = None if fire_at is None else max(0.0, (fire_at - self.now()) / 1000.0)
            # Cancellation of this task must always propagate
            waiter = asyncio.ensure_future(self._wakeup.wait())
            try:
                await asyncio.wait({waiter}, timeout=timeout)
            finally:
                waiter.cancel()
