"""
Time-ordered index of entity deadlines.

Used instead of one timer per entity: owners schedule a deadline for a key,
cancel it when the entity leaves the state the deadline belongs to, and pop
whatever is due on each tick. Cancelled or superseded entries are dropped
lazily when they reach the top of the heap.
"""

import heapq
import itertools
from datetime import datetime
from typing import Dict, Hashable, List, Optional, Tuple


class TTLIndex:
    """Min-heap of (deadline, key) with lazy deletion."""

    def __init__(self):
        self._heap: List[Tuple[datetime, int, Hashable]] = []
        self._live: Dict[Hashable, Tuple[datetime, int]] = {}
        self._counter = itertools.count()

    def __len__(self) -> int:
        return len(self._live)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._live

    def schedule(self, key: Hashable, deadline: datetime) -> None:
        """Set the deadline for key, replacing any earlier one."""
        seq = next(self._counter)
        self._live[key] = (deadline, seq)
        heapq.heappush(self._heap, (deadline, seq, key))

    def cancel(self, key: Hashable) -> bool:
        """Forget key. Returns False if nothing was scheduled."""
        return self._live.pop(key, None) is not None

    def deadline(self, key: Hashable) -> Optional[datetime]:
        entry = self._live.get(key)
        return entry[0] if entry else None

    def next_deadline(self) -> Optional[datetime]:
        self._discard_stale()
        return self._heap[0][0] if self._heap else None

    def pop_due(self, now: datetime) -> List[Hashable]:
        """Remove and return every key whose deadline is at or before now."""
        due = []
        while self._heap and self._heap[0][0] <= now:
            deadline, seq, key = heapq.heappop(self._heap)
            if self._live.get(key) == (deadline, seq):
                del self._live[key]
                due.append(key)
        return due

    def _discard_stale(self) -> None:
        while self._heap:
            deadline, seq, key = self._heap[0]
            if self._live.get(key) == (deadline, seq):
                return
            heapq.heappop(self._heap)
