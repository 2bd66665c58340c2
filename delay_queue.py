"""
Per-synapse transmission delay queue.

A fixed-length ring of delivery slots.  ``enqueue(d)`` marks the slot ``d``
ticks ahead of the cursor; ``tick()`` moves the cursor one slot forward and
reports (and clears) whether the slot it lands on was pending.

Slots are per-delay, not per-spike: two spikes that land on the same slot
coalesce into a single delivery.

Usage::

    from delay_queue import DelayQueue
    q = DelayQueue()
    q.enqueue(3)
    [q.tick() for _ in range(3)]   # -> [False, False, True]
"""

from __future__ import annotations

import math
from typing import Any, Dict

# Number of slots in every queue; the longest representable delay is one less.
DELAY_QUEUE_LENGTH = 32


def delay_to_ticks(delay: float, delta_t: float) -> int:
    """Convert a transmission delay in seconds to queue ticks (always >= 1)."""
    # 1e-9 absorbs quotients such as 0.8e-3 / 1e-4 landing just below 8
    return int(math.floor(delay / delta_t + 1e-9)) + 1


class DelayQueue:
    """Fixed-capacity ring of pending-delivery flags.

    Args:
        length: Number of slots (a small power of two).
    """

    __slots__ = ("_length", "_slots", "_cursor")

    def __init__(self, length: int = DELAY_QUEUE_LENGTH):
        if length < 2 or length & (length - 1):
            raise ValueError(f"Delay queue length must be a power of two >= 2, got {length}")
        self._length = length
        self._slots = [False] * length
        self._cursor = 0

    def __len__(self) -> int:
        return self._length

    def __repr__(self) -> str:
        return f"DelayQueue(length={self._length}, pending={self.pending_count()})"

    @property
    def max_delay(self) -> int:
        return self._length - 1

    def enqueue(self, delay_ticks: int) -> None:
        """Schedule a delivery ``delay_ticks`` ticks from now.

        Raises:
            ValueError: if ``delay_ticks`` is not in ``1..length-1``.
        """
        if not 1 <= delay_ticks < self._length:
            raise ValueError(
                f"Delay of {delay_ticks} ticks outside 1..{self._length - 1}"
            )
        self._slots[(self._cursor + delay_ticks) % self._length] = True

    def tick(self) -> bool:
        """Advance one tick; return True if a delivery is due now."""
        self._cursor = (self._cursor + 1) % self._length
        due = self._slots[self._cursor]
        self._slots[self._cursor] = False
        return due

    def pending_count(self) -> int:
        return sum(self._slots)

    # -- Persistence --------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        mask = 0
        for i, flag in enumerate(self._slots):
            if flag:
                mask |= 1 << i
        return {"length": self._length, "cursor": self._cursor, "pending": mask}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DelayQueue":
        """Rebuild a queue from ``to_dict`` output.

        Raises:
            ValueError: if the record is inconsistent.
        """
        q = cls(int(data["length"]))
        cursor = int(data["cursor"])
        mask = int(data["pending"])
        if not 0 <= cursor < q._length:
            raise ValueError(f"Delay queue cursor {cursor} out of range")
        if mask < 0 or mask >> q._length:
            raise ValueError(f"Delay queue mask {mask:#x} wider than {q._length} slots")
        q._cursor = cursor
        q._slots = [bool(mask >> i & 1) for i in range(q._length)]
        return q
