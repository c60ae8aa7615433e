"""
Position Index
In-memory set of vault positions believed to be open.

Owned by the reconciler's listener task: only that task mutates it, the
evaluator touches it only from the listener's call stack, and the status API
only reads its size.
"""

from typing import Iterable, List, Set


class PositionIndex:
    """Set of open position indexes"""

    def __init__(self, indexes: Iterable[int] = ()):
        self._open: Set[int] = set(indexes)

    def add(self, index: int) -> bool:
        """Track an opened position. Returns False if it was already tracked."""
        if index in self._open:
            return False
        self._open.add(index)
        return True

    def discard(self, index: int) -> bool:
        """Stop tracking a position. Returns False if it was not tracked."""
        if index not in self._open:
            return False
        self._open.remove(index)
        return True

    def replace(self, indexes: Iterable[int]):
        """Replace the whole set (full vault scan)"""
        self._open = set(indexes)

    def snapshot(self) -> List[int]:
        """Sorted copy, safe to iterate while the index changes"""
        return sorted(self._open)

    def __contains__(self, index: int) -> bool:
        return index in self._open

    def __len__(self) -> int:
        return len(self._open)
