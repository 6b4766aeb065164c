"""Target data layout: sizes, alignments and field offsets for IR types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .errors import LayoutInconsistencyError
from .irtypes import (
    ArrayType,
    FloatType,
    FunctionType,
    IntType,
    IRType,
    PointerType,
    StructType,
    VoidType,
)

DEFAULT_INT_ALIGNS = {1: 1, 8: 1, 16: 2, 32: 4, 64: 8}
DEFAULT_FLOAT_ALIGNS = {16: 2, 32: 4, 64: 8}


def align_to(value: int, alignment: int) -> int:
    if alignment <= 0:
        alignment = 1
    return ((value + alignment - 1) // alignment) * alignment


@dataclass(frozen=True)
class StructLayout:
    offsets: Tuple[int, ...]
    size: int
    align: int

    def field_at(self, offset: int, sizes: Sequence[int]) -> Optional[int]:
        """Index of the field whose storage covers *offset*, if any."""
        for idx, (start, size) in enumerate(zip(self.offsets, sizes)):
            if start <= offset < start + size:
                return idx
        return None


class DataLayout:
    """Answers size/alignment/offset queries the way the target lays out memory.

    Defaults describe a little-endian 32-bit target with naturally aligned
    scalars, which is what a restricted (wasm/asm.js style) sandbox uses.
    """

    def __init__(
        self,
        *,
        little_endian: bool = True,
        pointer_size: int = 4,
        pointer_align: int = 4,
        int_aligns: Optional[Dict[int, int]] = None,
        float_aligns: Optional[Dict[int, int]] = None,
        text: Optional[str] = None,
    ) -> None:
        self.little_endian = little_endian
        self.pointer_size = pointer_size
        self.pointer_align = pointer_align
        self.int_aligns = dict(DEFAULT_INT_ALIGNS if int_aligns is None else int_aligns)
        self.float_aligns = dict(DEFAULT_FLOAT_ALIGNS if float_aligns is None else float_aligns)
        self.text = text
        self._struct_cache: Dict[StructType, StructLayout] = {}

    @classmethod
    def parse(cls, text: str) -> "DataLayout":
        """Build a layout from an LLVM ``target datalayout`` string."""
        little_endian = True
        pointer_size = 4
        pointer_align = 4
        int_aligns = dict(DEFAULT_INT_ALIGNS)
        float_aligns = dict(DEFAULT_FLOAT_ALIGNS)
        for item in text.split("-"):
            item = item.strip()
            if not item:
                continue
            if item == "e":
                little_endian = True
            elif item == "E":
                little_endian = False
            elif item.startswith("p") and ":" in item:
                space, _, rest = item.partition(":")
                if space not in ("p", "p0"):
                    continue
                parts = rest.split(":")
                pointer_size = int(parts[0]) // 8
                pointer_align = int(parts[1]) // 8 if len(parts) > 1 and parts[1] else pointer_size
            elif item[0] in "if" and ":" in item and item[1].isdigit():
                bits_text, _, rest = item[1:].partition(":")
                abi = int(rest.split(":")[0]) // 8
                table = int_aligns if item[0] == "i" else float_aligns
                table[int(bits_text)] = max(abi, 1)
        return cls(
            little_endian=little_endian,
            pointer_size=pointer_size,
            pointer_align=pointer_align,
            int_aligns=int_aligns,
            float_aligns=float_aligns,
            text=text,
        )

    # ------------------------------------------------------------------
    # Scalar helpers

    @property
    def byteorder(self) -> str:
        return "little" if self.little_endian else "big"

    @property
    def pointer_bits(self) -> int:
        return self.pointer_size * 8

    @property
    def pointer_mask(self) -> int:
        return (1 << self.pointer_bits) - 1

    def _int_align(self, bits: int) -> int:
        if bits in self.int_aligns:
            return self.int_aligns[bits]
        wider = sorted(b for b in self.int_aligns if b > bits)
        if wider:
            return self.int_aligns[wider[0]]
        return self.int_aligns[max(self.int_aligns)]

    # ------------------------------------------------------------------
    # Size / alignment queries

    def abi_align(self, ty: IRType) -> int:
        if isinstance(ty, IntType):
            return self._int_align(ty.bits)
        if isinstance(ty, FloatType):
            return self.float_aligns.get(ty.bits, ty.bits // 8)
        if isinstance(ty, PointerType):
            return self.pointer_align
        if isinstance(ty, ArrayType):
            return self.abi_align(ty.element)
        if isinstance(ty, StructType):
            return self.struct_layout(ty).align
        raise LayoutInconsistencyError(f"type {ty} has no alignment")

    def store_size(self, ty: IRType) -> int:
        """Number of bytes a load or store of *ty* touches."""
        if isinstance(ty, IntType):
            return max(1, (ty.bits + 7) // 8)
        if isinstance(ty, FloatType):
            return ty.bits // 8
        if isinstance(ty, PointerType):
            return self.pointer_size
        if isinstance(ty, ArrayType):
            if ty.vector:
                return self.store_size(ty.element) * ty.count
            return self.size_of(ty.element) * ty.count
        if isinstance(ty, StructType):
            return self.struct_layout(ty).size
        raise LayoutInconsistencyError(f"type {ty} is unsized")

    def size_of(self, ty: IRType) -> int:
        """Allocation size: the stride between consecutive objects of *ty*."""
        if isinstance(ty, (IntType, FloatType, PointerType)):
            return align_to(self.store_size(ty), self.abi_align(ty))
        if isinstance(ty, ArrayType):
            if ty.vector:
                return align_to(self.store_size(ty), self.abi_align(ty))
            return self.size_of(ty.element) * ty.count
        if isinstance(ty, StructType):
            return self.struct_layout(ty).size
        if isinstance(ty, (VoidType, FunctionType)):
            raise LayoutInconsistencyError(f"type {ty} is unsized")
        raise LayoutInconsistencyError(f"unknown type {ty!r}")

    def element_stride(self, ty: ArrayType) -> int:
        if ty.vector:
            return self.store_size(ty.element)
        return self.size_of(ty.element)

    def struct_layout(self, ty: StructType) -> StructLayout:
        cached = self._struct_cache.get(ty)
        if cached is not None:
            return cached
        if ty.opaque:
            raise LayoutInconsistencyError(f"opaque struct {ty} has no layout")
        offsets: List[int] = []
        offset = 0
        max_align = 1
        for field in ty.fields or ():
            field_align = 1 if ty.packed else self.abi_align(field)
            offset = align_to(offset, field_align)
            offsets.append(offset)
            offset += self.size_of(field)
            max_align = max(max_align, field_align)
        result = StructLayout(tuple(offsets), align_to(offset, max_align), max_align)
        self._struct_cache[ty] = result
        return result

    # ------------------------------------------------------------------
    # Addressing

    def gep(self, source: IRType, indices: Sequence[int]) -> Tuple[int, IRType]:
        """Byte offset and result element type of a ``getelementptr``."""
        if not indices:
            return 0, source
        offset = indices[0] * self.size_of(source)
        current = source
        for idx in indices[1:]:
            if isinstance(current, StructType):
                layout = self.struct_layout(current)
                if not 0 <= idx < len(layout.offsets):
                    raise LayoutInconsistencyError(f"field index {idx} out of range for {current}")
                offset += layout.offsets[idx]
                current = current.fields[idx]
            elif isinstance(current, ArrayType):
                offset += idx * self.element_stride(current)
                current = current.element
            else:
                raise LayoutInconsistencyError(f"cannot index into {current}")
        return offset, current

    def gep_offset(self, source: IRType, indices: Sequence[int]) -> int:
        return self.gep(source, indices)[0]

    def index_path(self, ty: IRType, offset: int, target: Optional[IRType] = None) -> Optional[List[int]]:
        """GEP indices from an object of *ty* to the sub-object at *offset*.

        With *target*, the deepest sub-object of that type starting at
        *offset* is preferred; otherwise the outermost one. Returns ``None``
        when *offset* falls inside a scalar or in padding.
        """
        if offset == self.size_of(ty) and offset != 0:
            return [1]
        path: List[int] = [0]
        current = ty
        remaining = offset
        fallback: Optional[List[int]] = None
        while True:
            if remaining == 0:
                if target is None or current == target:
                    return path
                if fallback is None:
                    fallback = list(path)
            if isinstance(current, StructType) and not current.opaque:
                layout = self.struct_layout(current)
                sizes = [self.size_of(f) for f in current.fields]
                idx = layout.field_at(remaining, sizes)
                if idx is None:
                    return fallback
                path.append(idx)
                remaining -= layout.offsets[idx]
                current = current.fields[idx]
            elif isinstance(current, ArrayType):
                stride = self.element_stride(current)
                if stride == 0 or remaining >= stride * current.count:
                    return fallback
                path.append(remaining // stride)
                remaining %= stride
                current = current.element
            else:
                return fallback

    def padding_ranges(self, ty: StructType) -> List[Tuple[int, int]]:
        """Byte ranges of a struct (not its members) that hold no field."""
        layout = self.struct_layout(ty)
        ranges: List[Tuple[int, int]] = []
        cursor = 0
        for start, field in zip(layout.offsets, ty.fields or ()):
            if start > cursor:
                ranges.append((cursor, start))
            cursor = start + self.store_size(field)
        if layout.size > cursor:
            ranges.append((cursor, layout.size))
        return ranges

    def pointer_ranges(self, ty: IRType) -> List[Tuple[int, int]]:
        """``(offset, size)`` of every pointer slot inside a value of *ty*."""
        if isinstance(ty, PointerType):
            return [(0, self.pointer_size)]
        if isinstance(ty, ArrayType):
            inner = self.pointer_ranges(ty.element)
            if not inner:
                return []
            stride = self.element_stride(ty)
            return [(idx * stride + off, size) for idx in range(ty.count) for off, size in inner]
        if isinstance(ty, StructType) and not ty.opaque:
            offsets = self.struct_layout(ty).offsets
            return [
                (base + off, size)
                for field, base in zip(ty.fields, offsets)
                for off, size in self.pointer_ranges(field)
            ]
        return []
