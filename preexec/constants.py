"""Compile-time constant values and their textual form."""

from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from .irtypes import ArrayType, FloatType, IntType, IRType, PointerType, StructType

_BARE_SYMBOL_RE = re.compile(r"[-A-Za-z$._][-A-Za-z$._0-9]*|[0-9]+")


def format_symbol(name: str, sigil: str = "@") -> str:
    if _BARE_SYMBOL_RE.fullmatch(name):
        return f"{sigil}{name}"
    return f'{sigil}"{escape_bytes(name.encode("utf-8"))}"'


def escape_bytes(data: bytes) -> str:
    out = []
    for byte in data:
        ch = chr(byte)
        if 0x20 <= byte < 0x7F and ch not in '"\\':
            out.append(ch)
        else:
            out.append(f"\\{byte:02X}")
    return "".join(out)


@dataclass(frozen=True)
class IntConstant:
    type: IntType
    value: int

    def __post_init__(self) -> None:
        # Canonical signed form.
        bits = self.type.bits
        raw = self.value & self.type.mask
        if bits > 1 and raw >> (bits - 1):
            raw -= 1 << bits
        object.__setattr__(self, "value", raw)

    @property
    def unsigned(self) -> int:
        return self.value & self.type.mask


@dataclass(frozen=True)
class FloatConstant:
    """Float literal carried as its bit pattern."""

    type: FloatType
    bits: int

    _FORMATS = {"half": ("<e", "<H"), "float": ("<f", "<I"), "double": ("<d", "<Q")}

    @classmethod
    def from_value(cls, ty: FloatType, value: float) -> "FloatConstant":
        float_fmt, int_fmt = cls._FORMATS[ty.kind]
        try:
            packed = struct.pack(float_fmt, value)
        except OverflowError:
            packed = struct.pack(float_fmt, float("inf") if value > 0 else float("-inf"))
        return cls(ty, struct.unpack(int_fmt, packed)[0])

    @property
    def value(self) -> float:
        float_fmt, int_fmt = self._FORMATS[self.type.kind]
        return struct.unpack(float_fmt, struct.pack(int_fmt, self.bits))[0]


@dataclass(frozen=True)
class NullPointer:
    type: PointerType


@dataclass(frozen=True)
class UndefValue:
    type: IRType
    poison: bool = False


@dataclass(frozen=True)
class ZeroInitializer:
    type: IRType


@dataclass(frozen=True)
class ArrayConstant:
    type: ArrayType
    elements: Tuple["Constant", ...]


@dataclass(frozen=True)
class StringConstant:
    type: ArrayType
    data: bytes


@dataclass(frozen=True)
class StructConstant:
    type: StructType
    fields: Tuple["Constant", ...]


@dataclass(frozen=True)
class GlobalReference:
    """Address of global *target* plus a byte *offset*."""

    type: PointerType
    target: str
    offset: int = 0


@dataclass(frozen=True)
class FunctionReference:
    type: PointerType
    target: str


@dataclass(frozen=True)
class IntToPointer:
    type: PointerType
    address: int


@dataclass(frozen=True)
class OpaqueConstant:
    """Constant expression kept verbatim; it cannot be materialized."""

    type: IRType
    text: str


Constant = Union[
    IntConstant,
    FloatConstant,
    NullPointer,
    UndefValue,
    ZeroInitializer,
    ArrayConstant,
    StringConstant,
    StructConstant,
    GlobalReference,
    FunctionReference,
    IntToPointer,
    OpaqueConstant,
]


def is_zero_constant(value: Constant) -> bool:
    if isinstance(value, (ZeroInitializer, NullPointer)):
        return True
    if isinstance(value, IntConstant):
        return value.value == 0
    if isinstance(value, FloatConstant):
        return value.bits == 0
    if isinstance(value, StringConstant):
        return not any(value.data)
    if isinstance(value, ArrayConstant):
        return all(is_zero_constant(e) for e in value.elements)
    if isinstance(value, StructConstant):
        return all(is_zero_constant(f) for f in value.fields)
    return False


def contains_opaque(value: Constant) -> bool:
    if isinstance(value, OpaqueConstant):
        return True
    if isinstance(value, ArrayConstant):
        return any(contains_opaque(e) for e in value.elements)
    if isinstance(value, StructConstant):
        return any(contains_opaque(f) for f in value.fields)
    return False


# ---------------------------------------------------------------------------
# Rendering


def _render_float(value: FloatConstant) -> str:
    if value.type.kind == "half":
        return f"0xH{value.bits:04X}"
    widened = struct.unpack("<Q", struct.pack("<d", value.value))[0]
    return f"0x{widened:016X}"


def _pointer_bits(module: Any) -> int:
    layout = getattr(module, "layout", None)
    return layout.pointer_bits if layout is not None else 64


def _render_global_reference(value: GlobalReference, module: Any) -> str:
    symbol = format_symbol(value.target)
    ptr_type = value.type
    target_global = module.get_global(value.target) if module is not None else None
    if target_global is None:
        if value.offset == 0:
            return symbol
        return f"getelementptr (i8, {ptr_type} {symbol}, i64 {value.offset})"

    base_type = target_global.value_type
    if ptr_type.opaque:
        base_ptr = str(ptr_type)
    else:
        base_ptr = str(PointerType(base_type, ptr_type.addrspace))

    def cast(expr: str, source: str) -> str:
        if ptr_type.opaque or source == str(ptr_type):
            return expr
        return f"bitcast ({source} {expr} to {ptr_type})"

    if value.offset == 0:
        return cast(symbol, base_ptr)
    layout = module.layout
    path = layout.index_path(base_type, value.offset, None if ptr_type.opaque else ptr_type.pointee)
    if path is not None:
        indices = ", ".join(f"i32 {idx}" for idx in path)
        expr = f"getelementptr inbounds ({base_type}, {base_ptr} {symbol}, {indices})"
        if ptr_type.opaque:
            return expr
        _, result_type = layout.gep(base_type, path)
        return cast(expr, str(PointerType(result_type, ptr_type.addrspace)))
    index_type = f"i{layout.pointer_bits}"
    if ptr_type.opaque:
        return f"getelementptr (i8, {ptr_type} {symbol}, {index_type} {value.offset})"
    byte_ptr = str(PointerType(IntType(8), ptr_type.addrspace))
    base = cast(symbol, base_ptr) if base_ptr == byte_ptr else f"bitcast ({base_ptr} {symbol} to {byte_ptr})"
    expr = f"getelementptr (i8, {byte_ptr} {base}, {index_type} {value.offset})"
    return cast(expr, byte_ptr)


def render_constant(value: Constant, module: Any = None) -> str:
    """Textual form of *value* without its leading type.

    *module* (anything with ``get_global`` and ``layout``) lets interior
    references render as structured ``getelementptr`` expressions.
    """
    if isinstance(value, IntConstant):
        if value.type.bits == 1:
            return "true" if value.value else "false"
        return str(value.value)
    if isinstance(value, FloatConstant):
        return _render_float(value)
    if isinstance(value, NullPointer):
        return "null"
    if isinstance(value, UndefValue):
        return "poison" if value.poison else "undef"
    if isinstance(value, ZeroInitializer):
        return "zeroinitializer"
    if isinstance(value, StringConstant):
        return f'c"{escape_bytes(value.data)}"'
    if isinstance(value, ArrayConstant):
        body = ", ".join(render_typed(e, module) for e in value.elements)
        if value.type.vector:
            return f"<{body}>"
        return f"[{body}]"
    if isinstance(value, StructConstant):
        if not value.fields:
            body = "{}"
        else:
            body = "{ " + ", ".join(render_typed(f, module) for f in value.fields) + " }"
        return f"<{body}>" if value.type.packed else body
    if isinstance(value, GlobalReference):
        return _render_global_reference(value, module)
    if isinstance(value, FunctionReference):
        return format_symbol(value.target)
    if isinstance(value, IntToPointer):
        return f"inttoptr (i{_pointer_bits(module)} {value.address} to {value.type})"
    if isinstance(value, OpaqueConstant):
        return value.text
    raise TypeError(f"not a constant: {value!r}")


def render_typed(value: Constant, module: Any = None) -> str:
    return f"{value.type} {render_constant(value, module)}"


def constant_type(value: Constant) -> IRType:
    return value.type


def describe(value: Optional[Constant]) -> str:
    if value is None:
        return "<none>"
    return render_typed(value)
