"""Interval registry relating sandbox addresses to the objects placed there."""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import InternalConsistencyError

LOGGER = logging.getLogger("preexec.address_map")


@dataclass(frozen=True)
class AddressMapEntry:
    """One mapped region ``[start, start + size)``.

    ``owner`` is a :class:`~preexec.module.GlobalVariable`, a
    :class:`~preexec.module.Function` or a
    :class:`~preexec.tracking.TypedAllocation`.
    """

    start: int
    size: int
    owner: Any

    @property
    def end(self) -> int:
        return self.start + self.size

    def contains(self, address: int) -> bool:
        # One past the end still belongs to the region.
        return self.start <= address <= self.end


class AddressMap:
    """Sorted, non-overlapping regions queried by containing interval."""

    def __init__(self) -> None:
        self._starts: List[int] = []
        self._entries: List[AddressMapEntry] = []
        self._by_owner: Dict[int, AddressMapEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[AddressMapEntry]:
        return iter(list(self._entries))

    def map(self, start: int, size: int, owner: Any) -> AddressMapEntry:
        if size < 0:
            raise InternalConsistencyError(f"negative region size {size} at 0x{start:X}")
        if id(owner) in self._by_owner:
            raise InternalConsistencyError(f"{owner!r} is already mapped")
        idx = bisect.bisect_left(self._starts, start)
        if idx < len(self._entries) and self._entries[idx].start <= start + size:
            raise InternalConsistencyError(
                f"region 0x{start:X}+{size} overlaps region at 0x{self._entries[idx].start:X}"
            )
        if idx > 0 and self._entries[idx - 1].end >= start:
            prev = self._entries[idx - 1]
            raise InternalConsistencyError(f"region 0x{start:X}+{size} overlaps region at 0x{prev.start:X}")
        entry = AddressMapEntry(start, size, owner)
        self._starts.insert(idx, start)
        self._entries.insert(idx, entry)
        self._by_owner[id(owner)] = entry
        return entry

    def unmap(self, start: int) -> AddressMapEntry:
        idx = bisect.bisect_left(self._starts, start)
        if idx >= len(self._starts) or self._starts[idx] != start:
            raise InternalConsistencyError(f"no region starts at 0x{start:X}")
        entry = self._entries.pop(idx)
        self._starts.pop(idx)
        self._by_owner.pop(id(entry.owner), None)
        return entry

    def lookup(self, address: int) -> Optional[AddressMapEntry]:
        """Region containing *address* (its one-past-the-end included), if any."""
        idx = bisect.bisect_right(self._starts, address) - 1
        if idx < 0:
            return None
        entry = self._entries[idx]
        if entry.contains(address):
            return entry
        return None

    def resolve(self, address: int) -> Optional[Tuple[AddressMapEntry, int]]:
        entry = self.lookup(address)
        if entry is None:
            return None
        return entry, address - entry.start

    def entry_for(self, owner: Any) -> Optional[AddressMapEntry]:
        return self._by_owner.get(id(owner))

    def entry_at(self, start: int) -> Optional[AddressMapEntry]:
        idx = bisect.bisect_left(self._starts, start)
        if idx < len(self._starts) and self._starts[idx] == start:
            return self._entries[idx]
        return None
