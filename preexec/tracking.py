"""Store log and typed-allocation bookkeeping for one sandboxed run."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .address_map import AddressMap
from .errors import AllocationSizeMismatch, InternalConsistencyError
from .irtypes import ArrayType, IRType
from .layout import DataLayout

LOGGER = logging.getLogger("preexec.tracking")


class StoreRecorder:
    """Collects the byte ranges written while a constructor runs.

    The log is append-only until :meth:`drain` (or :meth:`drain_ranges`)
    hands it to reconstruction, after which the recorder is spent. Ranges are
    kept as ``(start, size)`` pairs and merged lazily, so a large ``memset``
    costs one entry rather than one per byte.
    """

    COMPACT_THRESHOLD = 4096

    def __init__(self) -> None:
        self._ranges: List[Tuple[int, int]] = []
        self._writes = 0
        self._drained = False

    def record_store(self, address: int) -> None:
        self.record_range(address, 1)

    def record_range(self, address: int, size: int) -> None:
        if self._drained:
            raise InternalConsistencyError(f"store to 0x{address:X} recorded after the log was drained")
        self._writes += 1
        if size <= 0:
            return
        self._ranges.append((address, size))
        if len(self._ranges) > self.COMPACT_THRESHOLD:
            self._ranges = self._merged()

    def __call__(self, address: int, size: int) -> None:
        """Store-listener form: one call per written byte range."""
        self.record_range(address, size)

    def _merged(self) -> List[Tuple[int, int]]:
        spans: List[List[int]] = []
        for start, size in sorted(self._ranges):
            end = start + size
            if spans and start <= spans[-1][1]:
                spans[-1][1] = max(spans[-1][1], end)
            else:
                spans.append([start, end])
        return [(start, end - start) for start, end in spans]

    def __len__(self) -> int:
        return sum(size for _, size in self._merged())

    
    def write_count(self) -> int:
        return self._writes

    
    def drained(self) -> bool:
        return self._drained

    def drain_ranges(self) -> List[Tuple[int, int]]:
        """Merged, sorted ``(start, size)`` ranges; the recorder is spent afterwards."""
        if self._drained:
            raise InternalConsistencyError("store log drained twice")
        self._drained = True
        ranges = self._merged()
        self._ranges = []
        LOGGER.debug("store log drained: %d ranges from %d writes", len(ranges), self._writes)
        return ranges

    def drain(self) -> List[int]:
        """Every written address, sorted and deduplicated."""
        return [address for start, size in self.drain_ranges() for address in range(start, start + size)]


@dataclass(eq=False)
class TypedAllocation:
    """A dynamically allocated sandbox buffer and, once known, its element type."""

    address: int
    size: int
    alloc_type: Optional[IRType] = None
    align: int = 8
    stack: bool = False

    def object_type(self, layout: DataLayout) -> Optional[IRType]:
        """Type of the whole buffer: the element type, or an array of it."""
        if self.alloc_type is None:
            return None
        elem_size = layout.size_of(self.alloc_type)
        if elem_size == self.size:
            return self.alloc_type
        return ArrayType(self.alloc_type, self.size // elem_size)


class TypedAllocationTracker:
    """Attaches element types to heap buffers registered in the address map."""

    def __init__(self, address_map: AddressMap, layout: DataLayout) -> None:
        self.address_map = address_map
        self.layout = layout
        self._records: Dict[int, TypedAllocation] = {}

    def __contains__(self, address: int) -> bool:
        return address in self._records

    def __len__(self) -> int:
        return len(self._records)

    def lookup(self, address: int) -> Optional[TypedAllocation]:
        return self._records.get(address)

    def record_typed_allocation(self, alloc_type: IRType, size: int, address: int) -> TypedAllocation:
        entry = self.address_map.entry_at(address)
        if entry is None or not isinstance(entry.owner, TypedAllocation):
            raise InternalConsistencyError(f"0x{address:X} is not the start of a sandbox allocation")
        allocation: TypedAllocation = entry.owner
        if size != entry.size:
            raise AllocationSizeMismatch(
                f"typed allocation of {size} bytes at 0x{address:X} but region holds {entry.size}"
            )
        elem_size = self.layout.size_of(alloc_type)
        if elem_size == 0 or size % elem_size:
            raise AllocationSizeMismatch(
                f"region of {size} bytes at 0x{address:X} is not a whole number of {alloc_type} ({elem_size} bytes)"
            )
        allocation.alloc_type = alloc_type
        self._records[address] = allocation
        LOGGER.debug("typed allocation 0x%X: %s x %d", address, alloc_type, size // elem_size)
        return allocation

    def release_typed_allocation(self, address: int) -> TypedAllocation:
        allocation = self._records.pop(address, None)
        if allocation is None:
            raise InternalConsistencyError(f"release of untracked typed allocation at 0x{address:X}")
        return allocation

    def clear(self) -> None:
        self._records.clear()
