"""Type shapes of the IR data model.

The set of shapes is closed: integers, floats, pointers, arrays (and
vectors), structs, functions and ``void``. Consumers dispatch on the shape with
``isinstance`` rather than extending the hierarchy.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple, Union

FLOAT_KINDS = {"half": 16, "float": 32, "double": 64}


@dataclass(frozen=True)
class VoidType:
    def __str__(self) -> str:
        return "void"


@dataclass(frozen=True)
class IntType:
    bits: int

    def __str__(self) -> str:
        return f"i{self.bits}"

    @property
    def mask(self) -> int:
        return (1 << self.bits) - 1


@dataclass(frozen=True)
class FloatType:
    kind: str

    def __post_init__(self) -> None:
        if self.kind not in FLOAT_KINDS:
            raise ValueError(f"unknown float kind {self.kind!r}")

    def __str__(self) -> str:
        return self.kind

    @property
    def bits(self) -> int:
        return FLOAT_KINDS[self.kind]


@dataclass(frozen=True)
class PointerType:
    """Pointer type; ``pointee`` is ``None`` for opaque ``ptr``."""

    pointee: Optional["IRType"] = None
    addrspace: int = 0

    def __str__(self) -> str:
        space = f" addrspace({self.addrspace})" if self.addrspace else ""
        if self.pointee is None:
            return f"ptr{space}"
        return f"{self.pointee}{space}*"

    @property
    def opaque(self) -> bool:
        return self.pointee is None


@dataclass(frozen=True)
class ArrayType:
    element: "IRType"
    count: int
    vector: bool = False

    def __str__(self) -> str:
        if self.vector:
            return f"<{self.count} x {self.element}>"
        return f"[{self.count} x {self.element}]"


@dataclass(frozen=True)
class FunctionType:
    ret: "IRType"
    params: Tuple["IRType", ...] = ()
    varargs: bool = False

    def __str__(self) -> str:
        params = [str(p) for p in self.params]
        if self.varargs:
            params.append("...")
        return f"{self.ret} ({', '.join(params)})"


class StructType:
    """Literal or identified struct.

    Identified structs (``%name``) compare by name so recursive definitions can
    refer to themselves through pointers; their body is attached after
    creation with :meth:`set_body`. A named struct without a body is opaque.
    """

    def __init__(
        self,
        fields: Optional[Iterable["IRType"]] = None,
        *,
        packed: bool = False,
        name: Optional[str] = None,
    ) -> None:
        self.name = name
        self.packed = packed
        self.fields: Optional[Tuple["IRType", ...]] = tuple(fields) if fields is not None else None
        if name is None and self.fields is None:
            self.fields = ()

    def set_body(self, fields: Sequence["IRType"], *, packed: bool = False) -> None:
        self.fields = tuple(fields)
        self.packed = packed

    @property
    def opaque(self) -> bool:
        return self.fields is None

    def body(self) -> str:
        if self.fields is None:
            return "opaque"
        if not self.fields:
            inner = "{}"
        else:
            inner = "{ " + ", ".join(str(f) for f in self.fields) + " }"
        return f"<{inner}>" if self.packed else inner

    def __str__(self) -> str:
        return self.name if self.name else self.body()

    def __repr__(self) -> str:
        return f"StructType({self})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StructType):
            return NotImplemented
        if self.name is not None or other.name is not None:
            return self.name == other.name
        return self.packed == other.packed and self.fields == other.fields

    def __hash__(self) -> int:
        if self.name is not None:
            return hash(("struct", self.name))
        return hash(("struct", self.packed, self.fields))


IRType = Union[VoidType, IntType, FloatType, PointerType, ArrayType, StructType, FunctionType]

VOID = VoidType()
I1 = IntType(1)
I8 = IntType(8)
I16 = IntType(16)
I32 = IntType(32)
I64 = IntType(64)
HALF = FloatType("half")
FLOAT = FloatType("float")
DOUBLE = FloatType("double")
PTR = PointerType()


def is_aggregate(ty: IRType) -> bool:
    return isinstance(ty, (ArrayType, StructType))


def is_sized(ty: IRType) -> bool:
    if isinstance(ty, (VoidType, FunctionType)):
        return False
    if isinstance(ty, StructType):
        return not ty.opaque and all(is_sized(f) for f in ty.fields or ())
    if isinstance(ty, ArrayType):
        return is_sized(ty.element)
    return True


def is_byte_array(ty: IRType) -> bool:
    return isinstance(ty, ArrayType) and not ty.vector and ty.element == I8
