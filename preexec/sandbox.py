"""Synthetic address space in which constructors run.

Every global, function and dynamic allocation gets a sandbox address from
:class:`SandboxAllocator`; :class:`SandboxMemory` backs the mapped regions with
host ``bytearray`` buffers and reports each write to the installed store
listener.
"""

from __future__ import annotations

import logging
import struct
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .address_map import AddressMap, AddressMapEntry
from .constants import (
    ArrayConstant,
    Constant,
    FloatConstant,
    FunctionReference,
    GlobalReference,
    IntConstant,
    IntToPointer,
    NullPointer,
    OpaqueConstant,
    StringConstant,
    StructConstant,
    UndefValue,
    ZeroInitializer,
)
from .errors import SandboxFault, UnsupportedOperation
from .irtypes import FloatType, IRType, is_sized
from .layout import DataLayout, align_to
from .module import Function, GlobalVariable
from .tracking import StoreRecorder, TypedAllocation, TypedAllocationTracker

LOGGER = logging.getLogger("preexec.sandbox")

SANDBOX_BASE = 0x1000
GUARD_GAP = 16

StoreListener = Callable[[int, int], None]

PointerRanges = Iterable[Tuple[int, int]]

_FLOAT_FORMATS = {"half": "e", "float": "f", "double": "d"}


def _mask_for(data: bytes, pointer_ranges: PointerRanges) -> Optional[bytes]:
    marks = None
    for off, length in pointer_ranges:
        chunk = data[off:off + length]
        if not any(chunk):
            continue
        if marks is None:
            marks = bytearray(len(data))
        marks[off:off + len(chunk)] = b"\x01" * len(chunk)
    return bytes(marks) if marks is not None else None


class SandboxMemory:
    """Host-memory backing for mapped sandbox regions.

    Bytes written as part of a non-null pointer are marked in a per-region
    shadow. Any other write over them clears the mark and :meth:`copy` carries
    marks along, so :meth:`exposes_pointer` can tell when a non-pointer view
    would read an address image.
    """

    def __init__(self, address_map: AddressMap, layout: DataLayout) -> None:
        self.address_map = address_map
        self.layout = layout
        self._backing: Dict[int, bytearray] = {}
        self._readonly: Set[int] = set()
        self._opaque: Set[int] = set()
        self._pointer_marks: Dict[int, bytearray] = {}
        self._listener: Optional[StoreListener] = None

    # ------------------------------------------------------------------
    # Region management

    def attach(self, entry: AddressMapEntry, *, readonly: bool = False, opaque: bool = False) -> None:
        self._backing[entry.start] = bytearray(entry.size)
        if readonly:
            self._readonly.add(entry.start)
        if opaque:
            self._opaque.add(entry.start)

    def detach(self, start: int) -> None:
        self._backing.pop(start, None)
        self._readonly.discard(start)
        self._opaque.discard(start)
        self._pointer_marks.pop(start, None)

    def initialize(self, start: int, data: bytes, *, pointer_ranges: PointerRanges = ()) -> None:
        """Fill a region before execution; bypasses protection and the listener."""
        buf = self._backing[start]
        buf[: len(data)] = data
        self._set_marks(start, 0, len(data), _mask_for(data, pointer_ranges))

    def contents(self, start: int) -> bytes:
        return bytes(self._backing[start])

    def install_store_listener(self, listener: Optional[StoreListener]) -> Optional[StoreListener]:
        previous = self._listener
        self._listener = listener
        return previous

    # ------------------------------------------------------------------
    # Access

    def _locate(self, address: int, size: int, *, for_write: bool) -> Tuple[bytearray, int]:
        entry = self.address_map.lookup(address)
        if entry is None:
            raise SandboxFault(f"access to unmapped address 0x{address:X}", address=address)
        offset = address - entry.start
        if offset + size > entry.size:
            raise SandboxFault(
                f"{size}-byte access at 0x{address:X} crosses the end of its region", address=address
            )
        if entry.start in self._opaque:
            raise SandboxFault(
                f"access to 0x{address:X} whose contents are unknown at compile time",
                address=address,
                code="opaque",
            )
        if for_write and entry.start in self._readonly:
            raise SandboxFault(f"write to read-only memory at 0x{address:X}", address=address, code="readonly")
        return self._backing[entry.start], offset

    def read(self, address: int, size: int) -> bytes:
        if size <= 0:
            return b""
        buf, offset = self._locate(address, size, for_write=False)
        return bytes(buf[offset:offset + size])

    def write(self, address: int, data: bytes, *, pointer_ranges: PointerRanges = ()) -> None:
        self._store_bytes(address, data, _mask_for(data, pointer_ranges))

    def _store_bytes(self, address: int, data: bytes, marks: Optional[bytes]) -> None:
        if not data:
            return
        buf, offset = self._locate(address, len(data), for_write=True)
        buf[offset:offset + len(data)] = data
        self._set_marks(address - offset, offset, len(data), marks)
        if self._listener is not None:
            self._listener(address, len(data))

    def read_int(self, address: int, size: int) -> int:
        return int.from_bytes(self.read(address, size), self.layout.byteorder)

    def write_int(self, address: int, value: int, size: int) -> None:
        mask = (1 << (size * 8)) - 1
        self.write(address, (value & mask).to_bytes(size, self.layout.byteorder))

    def read_pointer(self, address: int) -> int:
        return self.read_int(address, self.layout.pointer_size)

    def write_pointer(self, address: int, value: int) -> None:
        size = self.layout.pointer_size
        data = (value & self.layout.pointer_mask).to_bytes(size, self.layout.byteorder)
        self.write(address, data, pointer_ranges=((0, size),))

    def read_float(self, address: int, ty: FloatType) -> float:
        fmt = ("<" if self.layout.little_endian else ">") + _FLOAT_FORMATS[ty.kind]
        return struct.unpack(fmt, self.read(address, ty.bits // 8))[0]

    def write_float(self, address: int, value: float, ty: FloatType) -> None:
        fmt = ("<" if self.layout.little_endian else ">") + _FLOAT_FORMATS[ty.kind]
        try:
            data = struct.pack(fmt, value)
        except OverflowError:
            data = struct.pack(fmt, float("inf") if value > 0 else float("-inf"))
        self.write(address, data)

    def fill(self, address: int, byte: int, size: int) -> None:
        self.write(address, bytes([byte & 0xFF]) * size)

    def copy(self, dest: int, src: int, size: int) -> None:
        data = self.read(src, size)
        self._store_bytes(dest, data, self.pointer_marks(src, size))

    # ------------------------------------------------------------------
    # Pointer provenance

    def _set_marks(self, start: int, offset: int, size: int, marks: Optional[bytes]) -> None:
        shadow = self._pointer_marks.get(start)
        if shadow is None:
            if marks is None:
                return
            shadow = self._pointer_marks[start] = bytearray(len(self._backing[start]))
        shadow[offset:offset + size] = marks if marks is not None else bytes(size)

    def pointer_marks(self, address: int, size: int) -> Optional[bytes]:
        """Shadow bytes for ``[address, address + size)``, or ``None`` when none are set."""
        entry = self.address_map.lookup(address)
        if entry is None or size <= 0:
            return None
        shadow = self._pointer_marks.get(entry.start)
        if shadow is None:
            return None
        offset = address - entry.start
        marks = bytes(shadow[offset:offset + size])
        return marks if any(marks) else None

    def exposes_pointer(self, address: int, size: int, ty: Optional[IRType] = None) -> bool:
        """True when pointer bytes lie outside the pointer slots of *ty* at *address*."""
        marks = self.pointer_marks(address, size)
        if marks is None:
            return False
        if ty is None:
            return True
        remaining = bytearray(marks)
        for off, length in self.layout.pointer_ranges(ty):
            span = remaining[off:off + length]
            remaining[off:off + len(span)] = bytes(len(span))
        return any(remaining)


class ConstantEncoder:
    """Lays a constant out in memory the way the target would."""

    def __init__(self, layout: DataLayout, address_of: Callable[[str], int]) -> None:
        self.layout = layout
        self.address_of = address_of

    def encode(self, value: Constant, ty: Optional[IRType] = None) -> bytes:
        ty = ty if ty is not None else value.type
        buf = bytearray(self.layout.size_of(ty))
        self._write(buf, 0, value)
        return bytes(buf)

    def _put_int(self, buf: bytearray, offset: int, value: int, size: int) -> None:
        mask = (1 << (size * 8)) - 1
        buf[offset:offset + size] = (value & mask).to_bytes(size, self.layout.byteorder)

    def _write(self, buf: bytearray, offset: int, value: Constant) -> None:
        layout = self.layout
        if isinstance(value, (NullPointer, ZeroInitializer, UndefValue)):
            return
        if isinstance(value, IntConstant):
            self._put_int(buf, offset, value.unsigned, layout.store_size(value.type))
        elif isinstance(value, FloatConstant):
            self._put_int(buf, offset, value.bits, layout.store_size(value.type))
        elif isinstance(value, GlobalReference):
            self._put_int(buf, offset, self.address_of(value.target) + value.offset, layout.pointer_size)
        elif isinstance(value, FunctionReference):
            self._put_int(buf, offset, self.address_of(value.target), layout.pointer_size)
        elif isinstance(value, IntToPointer):
            self._put_int(buf, offset, value.address, layout.pointer_size)
        elif isinstance(value, StringConstant):
            buf[offset:offset + len(value.data)] = value.data
        elif isinstance(value, ArrayConstant):
            stride = layout.element_stride(value.type)
            for idx, element in enumerate(value.elements):
                self._write(buf, offset + idx * stride, element)
        elif isinstance(value, StructConstant):
            offsets = layout.struct_layout(value.type).offsets
            for field_offset, field in zip(offsets, value.fields):
                self._write(buf, offset + field_offset, field)
        elif isinstance(value, OpaqueConstant):
            raise UnsupportedOperation(f"cannot materialize constant expression {value.text}")
        else:
            raise UnsupportedOperation(f"cannot materialize {value!r}")


class SandboxAllocator:
    """Hands out sandbox addresses and registers each region in the address map."""

    def __init__(
        self,
        address_map: AddressMap,
        memory: SandboxMemory,
        tracker: TypedAllocationTracker,
        layout: DataLayout,
        *,
        base: int = SANDBOX_BASE,
        address_limit: Optional[int] = None,
    ) -> None:
        self.address_map = address_map
        self.memory = memory
        self.tracker = tracker
        self.layout = layout
        self.base = base
        limit = 1 << layout.pointer_bits
        self.limit = min(limit, address_limit) if address_limit is not None else limit
        self._next = base
        self._symbols: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Placement

    def _reserve(self, size: int, align: int) -> int:
        start = align_to(self._next, max(align, 1))
        end = start + size
        if end + GUARD_GAP > self.limit:
            raise SandboxFault(
                f"sandbox address space exhausted allocating {size} bytes", address=start, code="exhausted"
            )
        self._next = end + GUARD_GAP
        return start

    def allocate(self, size: int, align: int = 8, *, stack: bool = False) -> int:
        if size < 0:
            raise SandboxFault(f"negative allocation size {size}", code="bad-size")
        start = self._reserve(size, align)
        allocation = TypedAllocation(start, size, align=align, stack=stack)
        entry = self.address_map.map(start, size, allocation)
        self.memory.attach(entry)
        LOGGER.debug("allocated %d bytes at 0x%X%s", size, start, " (stack)" if stack else "")
        return start

    def deallocate(self, address: int) -> None:
        entry = self.address_map.entry_at(address)
        if entry is None or not isinstance(entry.owner, TypedAllocation):
            raise SandboxFault(f"invalid free of 0x{address:X}", address=address, code="invalid-free")
        if address in self.tracker:
            self.tracker.release_typed_allocation(address)
        self.address_map.unmap(address)
        self.memory.detach(address)

    def record_typed_allocation(self, alloc_type: IRType, size: int, address: int) -> TypedAllocation:
        return self.tracker.record_typed_allocation(alloc_type, size, address)

    def place_global(self, gv: GlobalVariable) -> AddressMapEntry:
        sized = is_sized(gv.value_type)
        size = self.layout.size_of(gv.value_type) if sized else 0
        align = gv.align or (self.layout.abi_align(gv.value_type) if sized else 1)
        start = self._reserve(size, align)
        entry = self.address_map.map(start, size, gv)
        self.memory.attach(entry, readonly=gv.is_constant, opaque=gv.is_opaque or not sized)
        self._symbols[gv.name] = start
        LOGGER.debug("placed @%s at 0x%X (%d bytes)", gv.name, start, size)
        return entry

    def place_function(self, fn: Function) -> AddressMapEntry:
        start = self._reserve(0, 4)
        entry = self.address_map.map(start, 0, fn)
        self.memory.attach(entry, readonly=True, opaque=True)
        self._symbols[fn.name] = start
        return entry

    # ------------------------------------------------------------------
    # Queries

    def address_of(self, name: str) -> int:
        try:
            return self._symbols[name]
        except KeyError:
            raise UnsupportedOperation(f"@{name} has no sandbox address") from None

    def function_at(self, address: int) -> Optional[Function]:
        entry = self.address_map.entry_at(address)
        if entry is not None and isinstance(entry.owner, Function):
            return entry.owner
        return None

    def in_arena(self, address: int) -> bool:
        return self.base <= address < self._next

    def live_allocations(self) -> List[TypedAllocation]:
        return [entry.owner for entry in self.address_map if isinstance(entry.owner, TypedAllocation)]

    def release(self) -> int:
        """Unmap every region placed or allocated in this session."""
        count = 0
        for entry in self.address_map:
            self.address_map.unmap(entry.start)
            self.memory.detach(entry.start)
            count += 1
        self.tracker.clear()
        self._symbols.clear()
        LOGGER.debug("sandbox released %d regions", count)
        return count


class SandboxSession:
    """Address map, memory, allocator and trackers for one constructor run."""

    def __init__(
        self,
        layout: DataLayout,
        *,
        base: int = SANDBOX_BASE,
        address_limit: Optional[int] = None,
    ) -> None:
        self.layout = layout
        self.address_map = AddressMap()
        self.memory = SandboxMemory(self.address_map, layout)
        self.tracker = TypedAllocationTracker(self.address_map, layout)
        self.allocator = SandboxAllocator(
            self.address_map, self.memory, self.tracker, layout, base=base, address_limit=address_limit
        )
        self.recorder = StoreRecorder()
        self.encoder = ConstantEncoder(layout, self.allocator.address_of)
        self._released = False

    def __enter__(self) -> "SandboxSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def materialize(self, globals_: Iterable[GlobalVariable], functions: Iterable[Function]) -> None:
        """Place every function and global, then write initial global contents."""
        for fn in functions:
            self.allocator.place_function(fn)
        placed: List[Tuple[GlobalVariable, AddressMapEntry]] = []
        for gv in globals_:
            placed.append((gv, self.allocator.place_global(gv)))
        for gv, entry in placed:
            if gv.is_opaque or entry.size == 0:
                continue
            self.memory.initialize(
                entry.start,
                self.encoder.encode(gv.initializer, gv.value_type),
                pointer_ranges=self.layout.pointer_ranges(gv.value_type),
            )

    def global_address(self, gv: GlobalVariable) -> int:
        entry = self.address_map.entry_for(gv)
        if entry is None:
            raise UnsupportedOperation(f"@{gv.name} is not placed in this sandbox")
        return entry.start

    def release(self) -> int:
        if self._released:
            return 0
        self._released = True
        return self.allocator.release()
