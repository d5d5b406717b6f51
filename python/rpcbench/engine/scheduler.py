"""
Dispatch scheduling

DispatchScheduler (event-loop model):
    Picks the channel with the fewest in-flight calls, ties broken by the
    lowest channel index, under a global concurrency budget and an optional
    per-channel pipelining limit. Notifications bypass the budget.
    A channel marked dead gives its slots back and is never picked again.

QueueBalancer (worker-per-channel model):
    Round-robins inputs over the workers' bounded queues with put_nowait().
    When every queue is momentarily full it sleeps a short backoff and tries
    again instead of blocking on one queue, so a slow channel cannot starve
    the others.
"""

import logging
import queue
import time
from typing import Any, Callable, List, Optional, Set

from rpcbench.errors import CapacityError, ChannelClosedError

logger = logging.getLogger(__name__)


class DispatchScheduler:
    """
    Least-loaded channel selection with a global concurrency cap

    Example:
        scheduler = DispatchScheduler(channel_count=2, concurrency=4)
        while scheduler.has_capacity():
            index = scheduler.acquire()
        ...
        scheduler.release(index)
    """

    def __init__(self, channel_count: int, concurrency: int, pipelining: Optional[int] = None):
        if channel_count < 1:
            raise ValueError(f"channel_count must be >= 1, got {channel_count}")
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        if pipelining is not None and pipelining < 1:
            raise ValueError(f"pipelining must be >= 1, got {pipelining}")

        self.concurrency = concurrency
        self.pipelining = pipelining
        self._loads: List[int] = [0] * channel_count
        self._dead: Set[int] = set()
        self.total_inflight = 0

        # Statistics
        self.total_dispatched = 0
        self.peak_inflight = 0

    @property
    def channel_count(self) -> int:
        return len(self._loads)

    def inflight(self, index: int) -> int:
        return self._loads[index]

    def loads(self) -> List[int]:
        return list(self._loads)

    @property
    def live_count(self) -> int:
        return len(self._loads) - len(self._dead)

    def is_dead(self, index: int) -> bool:
        return index in self._dead

    def _pick(self) -> Optional[int]:
        best: Optional[int] = None
        for index, load in enumerate(self._loads):
            if index in self._dead:
                continue
            if self.pipelining is not None and load >= self.pipelining:
                continue
            if best is None or load < self._loads[best]:
                best = index
        return best

    def has_capacity(self) -> bool:
        return self.total_inflight < self.concurrency and self._pick() is not None

    def least_loaded(self) -> int:
        """Channel a notification should go to (no slot is consumed)"""
        live = [index for index in range(len(self._loads)) if index not in self._dead]
        if not live:
            raise CapacityError("Every channel is dead")
        return min(live, key=lambda index: (self._loads[index], index))

    def acquire(self) -> int:
        """
        Reserve a slot on the least-loaded channel

        Raises:
            CapacityError: If the budget or every channel's pipelining is exhausted
        """
        if self.total_inflight >= self.concurrency:
            raise CapacityError(f"Concurrency budget exhausted ({self.concurrency} in flight)")
        index = self._pick()
        if index is None:
            if not self.live_count:
                raise CapacityError("Every channel is dead")
            raise CapacityError(f"Every channel is at its pipelining limit ({self.pipelining})")

        self._loads[index] += 1
        self.total_inflight += 1
        self.total_dispatched += 1
        self.peak_inflight = max(self.peak_inflight, self.total_inflight)
        return index

    def release(self, index: int, count: int = 1) -> None:
        if count < 0 or self._loads[index] < count:
            raise ValueError(
                f"Cannot release {count} slot(s) on channel {index} "
                f"({self._loads[index]} in flight)"
            )
        self._loads[index] -= count
        self.total_inflight -= count

    def mark_dead(self, index: int) -> int:
        """
        Take a channel out of rotation and return its slots to the budget

        Returns:
            Number of in-flight calls the channel held
        """
        if index in self._dead:
            return 0
        held = self._loads[index]
        self._dead.add(index)
        self._loads[index] = 0
        self.total_inflight -= held
        logger.debug(f"Channel {index} marked dead ({held} slot(s) returned)")
        return held


class QueueBalancer:
    """
    Distributes inputs over bounded per-worker queues

    Args:
        queues: One bounded queue.Queue per worker
        is_alive: Callback telling whether worker i still consumes its queue
        backoff_s: Sleep after a full cycle of Full results
    """

    def __init__(
        self,
        queues: List["queue.Queue[Any]"],
        is_alive: Callable[[int], bool],
        backoff_s: float = 0.01,
    ):
        if not queues:
            raise ValueError("QueueBalancer requires at least one queue")
        self.queues = queues
        self.is_alive = is_alive
        self.backoff_s = backoff_s
        self._next_index = 0

        # Statistics
        self.total_backoffs = 0

    def put(self, item: Any) -> int:
        """
        Hand an item to the next worker with room

        Returns:
            Index of the queue that accepted the item

        Raises:
            ChannelClosedError: If no worker is alive
        """
        count = len(self.queues)
        retried = 0
        while True:
            index = self._next_index
            self._next_index = (self._next_index + 1) % count

            if self.is_alive(index):
                try:
                    self.queues[index].put_nowait(item)
                    return index
                except queue.Full:
                    pass
            elif not any(self.is_alive(i) for i in range(count)):
                raise ChannelClosedError("All channel workers have stopped")

            retried += 1
            if retried >= count:
                self.total_backoffs += 1
                time.sleep(self.backoff_s)
                retried = 0
