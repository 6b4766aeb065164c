"""Turn sandbox memory back into typed compile-time constants."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple

from .address_map import AddressMap
from .constants import (
    ArrayConstant,
    Constant,
    FloatConstant,
    FunctionReference,
    GlobalReference,
    IntConstant,
    IntToPointer,
    NullPointer,
    StringConstant,
    StructConstant,
    ZeroInitializer,
    is_zero_constant,
)
from .errors import LayoutInconsistencyError, SandboxFault, UnresolvablePointerError
from .irtypes import I8, ArrayType, FloatType, IntType, IRType, PointerType, StructType, is_byte_array, is_sized
from .layout import DataLayout
from .module import Function, GlobalVariable
from .sandbox import SandboxAllocator, SandboxMemory, SandboxSession
from .tracking import TypedAllocation

LOGGER = logging.getLogger("preexec.reconstruct")

DEFAULT_HEAP_PREFIX = "__preexec_heap"


class ConstantReconstructor:
    """Reads typed values out of a finished sandbox.

    Pointers are resolved through the address map: into a placed global
    they become a reference plus byte offset, into a live heap allocation
    they cause that allocation to be synthesized as a new internal global.
    Heap globals are built from a work list after the top-level value, so
    cyclic or long linked structures need no recursion across objects.
    """

    def __init__(
        self,
        layout: DataLayout,
        address_map: AddressMap,
        memory: SandboxMemory,
        allocator: SandboxAllocator,
        *,
        restricted: bool = True,
        heap_prefix: str = DEFAULT_HEAP_PREFIX,
        name_taken: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self.layout = layout
        self.address_map = address_map
        self.memory = memory
        self.allocator = allocator
        self.restricted = restricted
        self.heap_prefix = heap_prefix
        self._name_taken = name_taken or (lambda name: False)
        self._name_counter = 0
        self._heap_globals: Dict[int, GlobalVariable] = {}
        self._pending: List[Tuple[GlobalVariable, TypedAllocation]] = []
        self.synthesized: List[GlobalVariable] = []

    @classmethod
    def for_session(cls, session: SandboxSession, **kwargs) -> "ConstantReconstructor":
        return cls(session.layout, session.address_map, session.memory, session.allocator, **kwargs)

    # ------------------------------------------------------------------
    # Entry points

    def compute_initializer_from_memory(
        self, ty: IRType, address: int, restricted: Optional[bool] = None
    ) -> Constant:
        """Constant equal to the current contents of *ty* at *address*."""
        saved = self.restricted
        if restricted is not None:
            self.restricted = restricted
        try:
            value = self._visit(ty, address)
            self._drain_pending()
        finally:
            self.restricted = saved
        return value

    def global_for_allocation(self, allocation: TypedAllocation, pointer_type: Optional[PointerType] = None) -> GlobalVariable:
        """Global standing in for a live heap allocation, created on first use."""
        existing = self._heap_globals.get(allocation.address)
        if existing is not None:
            return existing
        ty = self._heap_object_type(allocation, pointer_type)
        name = self._fresh_name()
        gv = GlobalVariable(
            name=name,
            value_type=ty,
            initializer=None,
            linkage="internal",
            attributes=f", align {allocation.align}",
            synthesized=True,
        )
        self._heap_globals[allocation.address] = gv
        self._pending.append((gv, allocation))
        self.synthesized.append(gv)
        LOGGER.debug("heap object 0x%X (%d bytes) becomes @%s of type %s", allocation.address, allocation.size, name, ty)
        return gv

    # ------------------------------------------------------------------
    # Helpers

    def _fresh_name(self) -> str:
        while True:
            candidate = f"{self.heap_prefix}.{self._name_counter}"
            self._name_counter += 1
            if not self._name_taken(candidate):
                return candidate

    def _drain_pending(self) -> None:
        while self._pending:
            gv, allocation = self._pending.pop(0)
            gv.initializer = self._visit(gv.value_type, allocation.address)

    def _read(self, address: int, size: int) -> bytes:
        try:
            return self.memory.read(address, size)
        except SandboxFault as exc:
            raise LayoutInconsistencyError(f"cannot read {size} bytes at 0x{address:X}: {exc}") from exc

    def _read_int(self, address: int, size: int) -> int:
        return int.from_bytes(self._read(address, size), self.layout.byteorder)

    def _heap_object_type(self, allocation: TypedAllocation, pointer_type: Optional[PointerType]) -> IRType:
        object_type = allocation.object_type(self.layout)
        if object_type is not None:
            return object_type
        pointee = pointer_type.pointee if pointer_type is not None else None
        if pointee is not None and is_sized(pointee):
            elem_size = self.layout.size_of(pointee)
            if elem_size and allocation.size % elem_size == 0 and allocation.size:
                count = allocation.size // elem_size
                return pointee if count == 1 else ArrayType(pointee, count)
        self._reject_embedded_pointers(allocation)
        return ArrayType(I8, allocation.size)

    def _reject_embedded_pointers(self, allocation: TypedAllocation) -> None:
        step = self.layout.pointer_size
        for offset in range(0, allocation.size - step + 1, step):
            word = self._read_int(allocation.address + offset, step)
            if word and self.address_map.lookup(word) is not None:
                raise UnresolvablePointerError(
                    f"untyped heap object at 0x{allocation.address:X} holds sandbox address 0x{word:X}",
                    address=word,
                )

    def _reject_pointer_bytes(self, ty: IRType, address: int, size: int) -> None:
        if self.memory.exposes_pointer(address, size):
            raise UnresolvablePointerError(
                f"{ty} at 0x{address:X} holds the bytes of a stored pointer", address=address
            )

    # ------------------------------------------------------------------
    # Visitor over type shapes

    def _visit(self, ty: IRType, address: int) -> Constant:
        if isinstance(ty, IntType):
            size = self.layout.store_size(ty)
            self._reject_pointer_bytes(ty, address, size)
            return IntConstant(ty, self._read_int(address, size))
        if isinstance(ty, FloatType):
            size = self.layout.store_size(ty)
            self._reject_pointer_bytes(ty, address, size)
            return FloatConstant(ty, self._read_int(address, size))
        if isinstance(ty, PointerType):
            return self._pointer(ty, self._read_int(address, self.layout.pointer_size))
        if isinstance(ty, ArrayType):
            return self._array(ty, address)
        if isinstance(ty, StructType):
            return self._struct(ty, address)
        raise LayoutInconsistencyError(f"cannot reconstruct a value of type {ty}")

    def _array(self, ty: ArrayType, address: int) -> Constant:
        if is_byte_array(ty):
            data = self._read(address, ty.count)
            self._reject_pointer_bytes(ty, address, ty.count)
            if not any(data):
                return ZeroInitializer(ty)
            return StringConstant(ty, data)
        stride = self.layout.element_stride(ty)
        elements = tuple(self._visit(ty.element, address + idx * stride) for idx in range(ty.count))
        if all(is_zero_constant(e) for e in elements):
            return ZeroInitializer(ty)
        return ArrayConstant(ty, elements)

    def _struct(self, ty: StructType, address: int) -> Constant:
        if ty.opaque:
            raise LayoutInconsistencyError(f"cannot reconstruct opaque struct {ty}")
        for start, end in self.layout.padding_ranges(ty):
            if any(self._read(address + start, end - start)):
                raise LayoutInconsistencyError(
                    f"padding bytes {start}..{end} of {ty} at 0x{address:X} were written"
                )
        offsets = self.layout.struct_layout(ty).offsets
        fields = tuple(self._visit(field, address + off) for field, off in zip(ty.fields, offsets))
        if all(is_zero_constant(f) for f in fields):
            return ZeroInitializer(ty)
        return StructConstant(ty, fields)

    def _pointer(self, ty: PointerType, raw: int) -> Constant:
        if raw == 0:
            return NullPointer(ty)
        resolved = self.address_map.resolve(raw)
        if resolved is None:
            if self.allocator.in_arena(raw):
                raise UnresolvablePointerError(f"dangling sandbox pointer 0x{raw:X}", address=raw)
            if self.restricted:
                raise UnresolvablePointerError(f"pointer 0x{raw:X} is outside every known object", address=raw)
            return IntToPointer(ty, raw)
        entry, offset = resolved
        owner = entry.owner
        if isinstance(owner, GlobalVariable):
            return GlobalReference(ty, owner.name, offset)
        if isinstance(owner, Function):
            if offset:
                raise UnresolvablePointerError(f"pointer 0x{raw:X} into the body of @{owner.name}", address=raw)
            return FunctionReference(ty, owner.name)
        if isinstance(owner, TypedAllocation):
            if owner.stack:
                raise UnresolvablePointerError(f"pointer 0x{raw:X} into stack memory", address=raw)
            gv = self.global_for_allocation(owner, ty)
            return GlobalReference(ty, gv.name, offset)
        raise UnresolvablePointerError(f"pointer 0x{raw:X} has an unknown owner", address=raw)
