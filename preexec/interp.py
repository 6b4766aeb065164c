"""Reference execution capability: a small interpreter for textual IR bodies.

Values are Python ints for integers and pointers (unsigned, masked to their
width), Python floats for floating point, and ``bytes`` in target layout for
aggregates and vectors. All memory traffic goes through the sandbox, so every
store reaches the installed store listener.
"""

from __future__ import annotations

import logging
import math
import re
import struct
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

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
from .engine import RunOutcome
from .errors import (
    AllocationSizeMismatch,
    ExecutionDiverged,
    IRParseError,
    LayoutInconsistencyError,
    SandboxFault,
    UnsupportedOperation,
)
from .irtypes import (
    I1,
    I8,
    PTR,
    ArrayType,
    FloatType,
    FunctionType,
    IntType,
    IRType,
    PointerType,
    StructType,
    VoidType,
    is_sized,
)
from .llparse import Cursor, IRReader, reader_for, split_top_level, unquote_symbol
from .module import Function, Module
from .sandbox import ConstantEncoder, SandboxAllocator
from .tracking import StoreRecorder, TypedAllocation

LOGGER = logging.getLogger("preexec.interp")

DEFAULT_STEP_LIMIT = 1_000_000
DEFAULT_CALL_DEPTH_LIMIT = 200
HEAP_ALIGN = 8

INT_BINOPS = {"add", "sub", "mul", "udiv", "sdiv", "urem", "srem", "shl", "lshr", "ashr", "and", "or", "xor"}
FLOAT_BINOPS = {"fadd", "fsub", "fmul", "fdiv", "frem"}
CAST_OPS = {
    "bitcast", "addrspacecast", "inttoptr", "ptrtoint", "zext", "sext", "trunc",
    "fpext", "fptrunc", "sitofp", "uitofp", "fptosi", "fptoui",
}
NOOP_INTRINSICS = (
    "llvm.lifetime.",
    "llvm.dbg.",
    "llvm.assume",
    "llvm.experimental.noalias.scope.decl",
    "llvm.invariant.",
)

_RESULT_RE = re.compile(r'^%("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s*=\s*(.*)$')
_INVOKE_DEST_RE = re.compile(
    r'\bto\s+label\s+%("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s+unwind\s+label\s+%("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)'
)
_FLOAT_FORMATS = {"half": "e", "float": "f", "double": "d"}


@dataclass(frozen=True)
class Local:
    name: str


Operand = Union[Local, Constant]


class Instr:
    __slots__ = ("op", "result", "args", "text")

    def __init__(self, op: str, result: Optional[str], args: Tuple[Any, ...], text: str) -> None:
        self.op = op
        self.result = result
        self.args = args
        self.text = text


class _Frame:
    def __init__(self, function: Function) -> None:
        self.function = function
        self.values: Dict[str, Any] = {}
        self.allocas: List[int] = []


class _Jump:
    __slots__ = ("label",)

    def __init__(self, label: str) -> None:
        self.label = label


class _Return:
    __slots__ = ("value",)

    def __init__(self, value: Any) -> None:
        self.value = value


def _signed(value: int, bits: int) -> int:
    value &= (1 << bits) - 1
    if bits and value >> (bits - 1):
        return value - (1 << bits)
    return value


def _round_float(ty: FloatType, value: float) -> float:
    if ty.kind == "double":
        return float(value)
    fmt = "<" + _FLOAT_FORMATS[ty.kind]
    try:
        return struct.unpack(fmt, struct.pack(fmt, value))[0]
    except OverflowError:
        return math.copysign(math.inf, value)


def _int_div(a: int, b: int) -> int:
    quotient = abs(a) // abs(b)
    return -quotient if (a < 0) != (b < 0) else quotient


def _float_div(a: float, b: float) -> float:
    if b == 0.0:
        if a == 0.0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


class IRInterpreter:
    """Executes constructor bodies of one module inside a sandbox."""

    def __init__(
        self,
        module: Module,
        *,
        step_limit: int = DEFAULT_STEP_LIMIT,
        call_depth_limit: int = DEFAULT_CALL_DEPTH_LIMIT,
    ) -> None:
        self.module = module
        self.layout = module.layout
        self.step_limit = step_limit
        self.call_depth_limit = call_depth_limit
        self.reader: IRReader = reader_for(module)
        self._decoded: Dict[str, Instr] = {}
        self._steps = 0
        self._allocator: Optional[SandboxAllocator] = None
        self._encoder: Optional[ConstantEncoder] = None
        self._builtins: Dict[str, Callable[[List[Any]], Any]] = {
            "malloc": self._builtin_malloc,
            "calloc": self._builtin_calloc,
            "realloc": self._builtin_realloc,
            "free": self._builtin_free,
            "memset": self._builtin_memset,
            "memcpy": self._builtin_memcpy,
            "memmove": self._builtin_memcpy,
        }

    # ------------------------------------------------------------------
    # Execution capability

    def run(self, function: Function, recorder: StoreRecorder, allocator: SandboxAllocator) -> RunOutcome:
        self._allocator = allocator
        self._encoder = ConstantEncoder(self.layout, allocator.address_of)
        self._steps = 0
        previous = allocator.memory.install_store_listener(recorder)
        try:
            if function.is_declaration:
                raise UnsupportedOperation(f"@{function.name} has no body")
            self._call(function, [], 0)
        except ExecutionDiverged as exc:
            LOGGER.debug("@%s diverged: %s", function.name, exc)
            return RunOutcome.diverged(str(exc))
        except UnsupportedOperation as exc:
            LOGGER.debug("@%s unsupported: %s", function.name, exc)
            return RunOutcome.unsupported(str(exc))
        except LayoutInconsistencyError as exc:
            LOGGER.debug("@%s hit a layout error: %s", function.name, exc)
            return RunOutcome.unsupported(str(exc))
        finally:
            allocator.memory.install_store_listener(previous)
            self._allocator = None
            self._encoder = None
        LOGGER.debug("@%s completed in %d steps", function.name, self._steps)
        return RunOutcome.completed()

    @property
    def allocator(self) -> SandboxAllocator:
        if self._allocator is None:
            raise UnsupportedOperation("interpreter is not running")
        return self._allocator

    @property
    def memory(self):
        return self.allocator.memory

    # ------------------------------------------------------------------
    # Function bodies

    def _tick(self) -> None:
        self._steps += 1
        if self._steps > self.step_limit:
            raise ExecutionDiverged(f"step limit of {self.step_limit} instructions exceeded")

    def _call(self, function: Function, args: Sequence[Any], depth: int) -> Any:
        if depth > self.call_depth_limit:
            raise ExecutionDiverged(f"call depth limit of {self.call_depth_limit} exceeded in @{function.name}")
        frame = _Frame(function)
        for (_, name), value in zip(function.params, args):
            frame.values[name] = value
        label = function.entry_label
        previous: Optional[str] = None
        while True:
            if label not in function.blocks:
                raise UnsupportedOperation(f"branch to unknown block %{label} in @{function.name}")
            instrs = [self._decode(line) for line in function.blocks[label]]
            idx = 0
            incoming: Dict[str, Any] = {}
            while idx < len(instrs) and instrs[idx].op == "phi":
                self._tick()
                incoming[instrs[idx].result] = self._phi(instrs[idx], frame, previous)
                idx += 1
            frame.values.update(incoming)
            outcome: Any = None
            for instr in instrs[idx:]:
                self._tick()
                outcome = self._execute(instr, frame, depth)
                if isinstance(outcome, (_Jump, _Return)):
                    break
            if isinstance(outcome, _Jump):
                previous, label = label, outcome.label
                continue
            if isinstance(outcome, _Return):
                for address in reversed(frame.allocas):
                    self.allocator.deallocate(address)
                return outcome.value
            raise UnsupportedOperation(f"block %{label} of @{function.name} has no terminator")

    def _phi(self, instr: Instr, frame: _Frame, previous: Optional[str]) -> Any:
        ty, pairs = instr.args
        for operand, label in pairs:
            if label == previous:
                return self._value(operand, ty, frame)
        raise UnsupportedOperation(f"phi has no incoming value for %{previous}: {instr.text}")

    # ------------------------------------------------------------------
    # Decoding

    def _decode(self, line: str) -> Instr:
        cached = self._decoded.get(line)
        if cached is not None:
            return cached
        try:
            instr = self._decode_line(line)
        except (IRParseError, ValueError) as exc:
            instr = Instr("undecodable", None, (str(exc),), line)
        self._decoded[line] = instr
        return instr

    def _operand(self, cur: Cursor, ty: IRType) -> Operand:
        cur.skip_attributes()
        if cur.peek() == "%":
            return Local(cur.symbol("%"))
        return self.reader.parse_constant(cur, ty)

    def _typed_operand(self, cur: Cursor) -> Tuple[IRType, Operand]:
        ty = self.reader.parse_type(cur)
        return ty, self._operand(cur, ty)

    def _label(self, cur: Cursor) -> str:
        cur.expect("label")
        return cur.symbol("%")

    def _decode_line(self, line: str) -> Instr:
        found = _RESULT_RE.match(line)
        result = unquote_symbol(found.group(1)) if found else None
        cur = Cursor(found.group(2) if found else line)
        op = cur.word()
        if op is None:
            return Instr("unknown", result, (), line)
        if op in ("tail", "musttail", "notail"):
            op = cur.word()
        parse = self.reader.parse_type
        if op == "alloca":
            cur.accept("inalloca")
            ty = parse(cur)
            count: Optional[Tuple[IRType, Operand]] = None
            align = None
            while cur.accept(","):
                word = cur.peek_word()
                if word == "align":
                    cur.word()
                    align = int(cur.match(re.compile(r"\d+")).group(0))
                elif word == "addrspace":
                    cur.word()
                    cur.balanced()
                else:
                    count = self._typed_operand(cur)
            return Instr(op, result, (ty, count, align), line)
        if op == "load":
            if cur.accept("atomic"):
                raise IRParseError("atomic load")
            cur.accept("volatile")
            ty = parse(cur)
            cur.expect(",")
            _, ptr = self._typed_operand(cur)
            return Instr(op, result, (ty, ptr), line)
        if op == "store":
            if cur.accept("atomic"):
                raise IRParseError("atomic store")
            cur.accept("volatile")
            ty, value = self._typed_operand(cur)
            cur.expect(",")
            _, ptr = self._typed_operand(cur)
            return Instr(op, result, (ty, value, ptr), line)
        if op == "getelementptr":
            cur.skip_attributes()
            while cur.peek_word() in ("nusw", "inrange"):
                if cur.word() == "inrange":
                    cur.balanced()
            source = parse(cur)
            cur.expect(",")
            ptr_ty, base = self._typed_operand(cur)
            indices: List[Tuple[IRType, Operand]] = []
            while cur.accept(","):
                if cur.peek_word() == "inrange":
                    cur.word()
                indices.append(self._typed_operand(cur))
            if isinstance(ptr_ty, ArrayType):
                raise IRParseError("vector getelementptr")
            return Instr(op, result, (source, base, tuple(indices)), line)
        if op in INT_BINOPS or op in FLOAT_BINOPS:
            cur.skip_attributes()
            ty, a = self._typed_operand(cur)
            cur.expect(",")
            b = self._operand(cur, ty)
            return Instr(op, result, (ty, a, b), line)
        if op == "fneg":
            cur.skip_attributes()
            ty, a = self._typed_operand(cur)
            return Instr(op, result, (ty, a), line)
        if op in ("icmp", "fcmp"):
            cur.skip_attributes()
            pred = cur.word()
            ty, a = self._typed_operand(cur)
            cur.expect(",")
            b = self._operand(cur, ty)
            return Instr(op, result, (pred, ty, a, b), line)
        if op == "select":
            cur.skip_attributes()
            _, cond = self._typed_operand(cur)
            cur.expect(",")
            ty, a = self._typed_operand(cur)
            cur.expect(",")
            _, b = self._typed_operand(cur)
            return Instr(op, result, (cond, ty, a, b), line)
        if op == "phi":
            cur.skip_attributes()
            ty = parse(cur)
            pairs = []
            while cur.accept("["):
                operand = self._operand(cur, ty)
                cur.expect(",")
                pairs.append((operand, cur.symbol("%")))
                cur.expect("]")
                cur.accept(",")
            return Instr(op, result, (ty, tuple(pairs)), line)
        if op in CAST_OPS:
            cur.skip_attributes()
            src_ty, value = self._typed_operand(cur)
            cur.expect("to")
            dst_ty = parse(cur)
            return Instr(op, result, (src_ty, value, dst_ty), line)
        if op == "freeze":
            ty, value = self._typed_operand(cur)
            return Instr(op, result, (ty, value), line)
        if op == "br":
            if cur.peek_word() == "label":
                return Instr("jmp", None, (self._label(cur),), line)
            _, cond = self._typed_operand(cur)
            cur.expect(",")
            if_true = self._label(cur)
            cur.expect(",")
            if_false = self._label(cur)
            return Instr(op, None, (cond, if_true, if_false), line)
        if op == "switch":
            ty, value = self._typed_operand(cur)
            cur.expect(",")
            default = self._label(cur)
            cases = []
            cur.expect("[")
            while not cur.accept("]"):
                case = self.reader.parse_typed_constant(cur)
                cur.expect(",")
                if not isinstance(case, IntConstant):
                    raise IRParseError("non-integer switch case")
                cases.append((case.unsigned, self._label(cur)))
            return Instr(op, None, (ty, value, default, tuple(cases)), line)
        if op == "ret":
            if cur.peek_word() == "void":
                return Instr(op, None, (None, None), line)
            ty, value = self._typed_operand(cur)
            return Instr(op, None, (ty, value), line)
        if op in ("call", "invoke"):
            return self._decode_call(op, result, cur, line)
        if op == "extractvalue":
            ty, agg = self._typed_operand(cur)
            indices = self._const_indices(cur)
            return Instr(op, result, (ty, agg, indices), line)
        if op == "insertvalue":
            ty, agg = self._typed_operand(cur)
            cur.expect(",")
            elem_ty, elem = self._typed_operand(cur)
            indices = self._const_indices(cur)
            return Instr(op, result, (ty, agg, elem_ty, elem, indices), line)
        if op == "unreachable":
            return Instr(op, None, (), line)
        return Instr("unknown", result, (op,), line)

    def _const_indices(self, cur: Cursor) -> Tuple[int, ...]:
        indices = []
        while cur.accept(","):
            found = cur.match(re.compile(r"\d+"))
            if not found:
                break
            indices.append(int(found.group(0)))
        return tuple(indices)

    def _decode_call(self, op: str, result: Optional[str], cur: Cursor, line: str) -> Instr:
        cur.skip_attributes()
        ty = self.reader.parse_type(cur)
        ret = ty.ret if isinstance(ty, FunctionType) else ty
        cur.skip_attributes()
        if cur.peek_word() == "asm":
            raise IRParseError("inline assembly")
        callee: Union[str, Operand]
        if cur.peek() == "@":
            callee = cur.symbol("@")
        else:
            callee = self._operand(cur, PTR)
        args_text = cur.balanced()[1:-1]
        args: List[Tuple[IRType, Operand]] = []
        if not (isinstance(callee, str) and callee.startswith(NOOP_INTRINSICS)):
            for piece in split_top_level(args_text):
                if piece:
                    args.append(self._typed_operand(Cursor(piece)))
        normal = unwind = None
        if op == "invoke":
            found = _INVOKE_DEST_RE.search(cur.rest())
            if not found:
                raise IRParseError("invoke without destinations")
            normal, unwind = unquote_symbol(found.group(1)), unquote_symbol(found.group(2))
        return Instr(op, result, (ret, callee, tuple(args), normal, unwind), line)

    # ------------------------------------------------------------------
    # Values

    def _value(self, operand: Operand, ty: IRType, frame: _Frame) -> Any:
        if isinstance(operand, Local):
            try:
                return frame.values[operand.name]
            except KeyError:
                raise UnsupportedOperation(f"use of undefined value %{operand.name}") from None
        return self._const_value(operand, ty)

    def _const_value(self, value: Constant, ty: IRType) -> Any:
        ty = value.type
        if isinstance(ty, (ArrayType, StructType)):
            return self._encoder.encode(value, ty)
        if isinstance(value, OpaqueConstant):
            raise UnsupportedOperation(f"cannot evaluate constant expression {value.text}")
        if isinstance(value, IntConstant):
            return value.unsigned
        if isinstance(value, FloatConstant):
            return value.value
        if isinstance(value, (NullPointer, ZeroInitializer, UndefValue)):
            return 0.0 if isinstance(ty, FloatType) else 0
        if isinstance(value, GlobalReference):
            return (self.allocator.address_of(value.target) + value.offset) & self.layout.pointer_mask
        if isinstance(value, FunctionReference):
            return self.allocator.address_of(value.target)
        if isinstance(value, IntToPointer):
            return value.address & self.layout.pointer_mask
        if isinstance(value, (StringConstant, ArrayConstant, StructConstant)):
            return self._encoder.encode(value, ty)
        raise UnsupportedOperation(f"cannot evaluate {value!r}")

    def _to_bytes(self, ty: IRType, value: Any) -> bytes:
        layout = self.layout
        if isinstance(ty, IntType):
            size = layout.store_size(ty)
            return (value & ((1 << (size * 8)) - 1)).to_bytes(size, layout.byteorder)
        if isinstance(ty, PointerType):
            return (value & layout.pointer_mask).to_bytes(layout.pointer_size, layout.byteorder)
        if isinstance(ty, FloatType):
            fmt = ("<" if layout.little_endian else ">") + _FLOAT_FORMATS[ty.kind]
            return struct.pack(fmt, _round_float(ty, value))
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        raise UnsupportedOperation(f"cannot lay out a value of type {ty}")

    def _from_bytes(self, ty: IRType, data: bytes) -> Any:
        layout = self.layout
        if isinstance(ty, IntType):
            return int.from_bytes(data, layout.byteorder) & ty.mask
        if isinstance(ty, PointerType):
            return int.from_bytes(data, layout.byteorder) & layout.pointer_mask
        if isinstance(ty, FloatType):
            fmt = ("<" if layout.little_endian else ">") + _FLOAT_FORMATS[ty.kind]
            return struct.unpack(fmt, data)[0]
        return bytes(data)

    def _load(self, ty: IRType, address: int) -> Any:
        if isinstance(ty, (VoidType, FunctionType)) or not is_sized(ty):
            raise UnsupportedOperation(f"load of unsized type {ty}")
        size = self.layout.store_size(ty) if not isinstance(ty, (ArrayType, StructType)) else self.layout.size_of(ty)
        data = self.memory.read(address, size)
        if self.memory.exposes_pointer(address, size, ty):
            raise UnsupportedOperation(f"load of {ty} at 0x{address:X} would expose the bytes of a pointer")
        return self._from_bytes(ty, data)

    def _store(self, ty: IRType, address: int, value: Any) -> None:
        self.memory.write(address, self._to_bytes(ty, value), pointer_ranges=self.layout.pointer_ranges(ty))

    def _maybe_record_type(self, address: int, elem: Optional[IRType]) -> None:
        """Attach *elem* to an untyped heap allocation first viewed as ``elem*``."""
        if elem is None or elem == I8 or not is_sized(elem):
            return
        entry = self.allocator.address_map.entry_at(address)
        if entry is None or not isinstance(entry.owner, TypedAllocation):
            return
        allocation = entry.owner
        if allocation.stack or allocation.alloc_type is not None or entry.size == 0:
            return
        elem_size = self.layout.size_of(elem)
        if elem_size == 0 or entry.size % elem_size:
            return
        try:
            self.allocator.record_typed_allocation(elem, entry.size, address)
        except AllocationSizeMismatch as exc:
            LOGGER.debug("typed allocation at 0x%X not recorded: %s", address, exc)

    # ------------------------------------------------------------------
    # Instructions

    def _execute(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        handler = getattr(self, f"_op_{instr.op}", None)
        if handler is None:
            if instr.op in INT_BINOPS:
                handler = self._op_int_binop
            elif instr.op in FLOAT_BINOPS:
                handler = self._op_float_binop
            elif instr.op in CAST_OPS:
                handler = self._op_cast
            else:
                raise UnsupportedOperation(f"unsupported instruction: {instr.text}")
        value = handler(instr, frame, depth)
        if isinstance(value, (_Jump, _Return)):
            return value
        if instr.result is not None:
            frame.values[instr.result] = value
        return None

    def _op_undecodable(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        raise UnsupportedOperation(f"cannot interpret '{instr.text}': {instr.args[0]}")

    def _op_unknown(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        raise UnsupportedOperation(f"unsupported instruction: {instr.text}")

    def _op_unreachable(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        raise UnsupportedOperation("reached unreachable")

    def _op_alloca(self, instr: Instr, frame: _Frame, depth: int) -> int:
        ty, count, align = instr.args
        n = 1
        if count is not None:
            n = self._value(count[1], count[0], frame)
        size = self.layout.size_of(ty) * n
        address = self.allocator.allocate(size, align or self.layout.abi_align(ty), stack=True)
        frame.allocas.append(address)
        return address

    def _op_load(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        ty, ptr = instr.args
        return self._load(ty, self._value(ptr, PTR, frame))

    def _op_store(self, instr: Instr, frame: _Frame, depth: int) -> None:
        ty, value, ptr = instr.args
        self._store(ty, self._value(ptr, PTR, frame), self._value(value, ty, frame))

    def _op_getelementptr(self, instr: Instr, frame: _Frame, depth: int) -> int:
        source, base, indices = instr.args
        address = self._value(base, PTR, frame)
        if not indices:
            return address
        first_ty, first = indices[0]
        offset = _signed(self._value(first, first_ty, frame), first_ty.bits) * self.layout.size_of(source)
        current = source
        for idx_ty, idx_op in indices[1:]:
            index = _signed(self._value(idx_op, idx_ty, frame), idx_ty.bits)
            if isinstance(current, StructType):
                if not isinstance(idx_op, IntConstant):
                    raise UnsupportedOperation("non-constant struct index")
                if not 0 <= index < len(current.fields or ()):
                    raise UnsupportedOperation(f"field index {index} out of range for {current}")
                offset += self.layout.struct_layout(current).offsets[index]
                current = current.fields[index]
            elif isinstance(current, ArrayType):
                offset += index * self.layout.element_stride(current)
                current = current.element
            else:
                raise UnsupportedOperation(f"cannot index into {current}")
        if isinstance(source, (StructType, ArrayType)):
            self._maybe_record_type(address, source)
        return (address + offset) & self.layout.pointer_mask

    def _op_int_binop(self, instr: Instr, frame: _Frame, depth: int) -> int:
        ty, a_op, b_op = instr.args
        if not isinstance(ty, IntType):
            raise UnsupportedOperation(f"{instr.op} on {ty}")
        bits = ty.bits
        a = self._value(a_op, ty, frame)
        b = self._value(b_op, ty, frame)
        op = instr.op
        if op == "add":
            result = a + b
        elif op == "sub":
            result = a - b
        elif op == "mul":
            result = a * b
        elif op in ("udiv", "urem", "sdiv", "srem"):
            if b == 0:
                raise UnsupportedOperation(f"division by zero: {instr.text}")
            if op == "udiv":
                result = a // b
            elif op == "urem":
                result = a % b
            else:
                sa, sb = _signed(a, bits), _signed(b, bits)
                if sa == -(1 << (bits - 1)) and sb == -1:
                    raise UnsupportedOperation(f"signed division overflow: {instr.text}")
                quotient = _int_div(sa, sb)
                result = quotient if op == "sdiv" else sa - sb * quotient
        elif op in ("shl", "lshr", "ashr"):
            if b >= bits:
                raise UnsupportedOperation(f"shift amount {b} exceeds width {bits}")
            if op == "shl":
                result = a << b
            elif op == "lshr":
                result = a >> b
            else:
                result = _signed(a, bits) >> b
        elif op == "and":
            result = a & b
        elif op == "or":
            result = a | b
        else:
            result = a ^ b
        return result & ty.mask

    def _op_float_binop(self, instr: Instr, frame: _Frame, depth: int) -> float:
        ty, a_op, b_op = instr.args
        if not isinstance(ty, FloatType):
            raise UnsupportedOperation(f"{instr.op} on {ty}")
        a = self._value(a_op, ty, frame)
        b = self._value(b_op, ty, frame)
        op = instr.op
        if op == "fadd":
            result = a + b
        elif op == "fsub":
            result = a - b
        elif op == "fmul":
            result = a * b
        elif op == "fdiv":
            result = _float_div(a, b)
        else:
            result = math.fmod(a, b) if b != 0.0 and not math.isinf(a) else math.nan
        return _round_float(ty, result)

    def _op_fneg(self, instr: Instr, frame: _Frame, depth: int) -> float:
        ty, a_op = instr.args
        return -self._value(a_op, ty, frame)

    def _op_icmp(self, instr: Instr, frame: _Frame, depth: int) -> int:
        pred, ty, a_op, b_op = instr.args
        a = self._value(a_op, ty, frame)
        b = self._value(b_op, ty, frame)
        if pred[0] == "s":
            a, b = _signed(a, ty.bits), _signed(b, ty.bits)
        table = {
            "eq": a == b, "ne": a != b,
            "ugt": a > b, "uge": a >= b, "ult": a < b, "ule": a <= b,
            "sgt": a > b, "sge": a >= b, "slt": a < b, "sle": a <= b,
        }
        if pred not in table:
            raise UnsupportedOperation(f"unknown icmp predicate {pred}")
        return int(table[pred])

    def _op_fcmp(self, instr: Instr, frame: _Frame, depth: int) -> int:
        pred, ty, a_op, b_op = instr.args
        a = self._value(a_op, ty, frame)
        b = self._value(b_op, ty, frame)
        unordered = math.isnan(a) or math.isnan(b)
        if pred == "false":
            return 0
        if pred == "true":
            return 1
        if pred == "ord":
            return int(not unordered)
        if pred == "uno":
            return int(unordered)
        compare = {
            "eq": a == b, "ne": a != b, "gt": a > b, "ge": a >= b, "lt": a < b, "le": a <= b,
        }
        kind, rel = pred[0], pred[1:]
        if kind not in "ou" or rel not in compare:
            raise UnsupportedOperation(f"unknown fcmp predicate {pred}")
        if unordered:
            return int(kind == "u")
        return int(compare[rel])

    def _op_select(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        cond, ty, a_op, b_op = instr.args
        if self._value(cond, I1, frame) & 1:
            return self._value(a_op, ty, frame)
        return self._value(b_op, ty, frame)

    def _op_freeze(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        ty, value = instr.args
        return self._value(value, ty, frame)

    def _op_cast(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        src_ty, value_op, dst_ty = instr.args
        value = self._value(value_op, src_ty, frame)
        op = instr.op
        if op == "ptrtoint":
            raise UnsupportedOperation("ptrtoint would expose sandbox addresses")
        if op in ("bitcast", "addrspacecast"):
            if isinstance(src_ty, PointerType) and isinstance(dst_ty, PointerType):
                if not dst_ty.opaque:
                    self._maybe_record_type(value, dst_ty.pointee)
                return value
            if type(src_ty) is type(dst_ty) and not isinstance(src_ty, (ArrayType, StructType)):
                return value
            return self._from_bytes(dst_ty, self._to_bytes(src_ty, value))
        if op == "inttoptr":
            return value & self.layout.pointer_mask
        if op == "zext":
            return value & dst_ty.mask
        if op == "sext":
            return _signed(value, src_ty.bits) & dst_ty.mask
        if op == "trunc":
            return value & dst_ty.mask
        if op in ("fpext", "fptrunc"):
            return _round_float(dst_ty, value)
        if op == "sitofp":
            return _round_float(dst_ty, float(_signed(value, src_ty.bits)))
        if op == "uitofp":
            return _round_float(dst_ty, float(value))
        if math.isnan(value) or math.isinf(value):
            raise UnsupportedOperation(f"{op} of {value}")
        return int(value) & dst_ty.mask

    def _op_jmp(self, instr: Instr, frame: _Frame, depth: int) -> _Jump:
        return _Jump(instr.args[0])

    def _op_br(self, instr: Instr, frame: _Frame, depth: int) -> _Jump:
        cond, if_true, if_false = instr.args
        return _Jump(if_true if self._value(cond, I1, frame) & 1 else if_false)

    def _op_switch(self, instr: Instr, frame: _Frame, depth: int) -> _Jump:
        ty, value_op, default, cases = instr.args
        value = self._value(value_op, ty, frame)
        for case, label in cases:
            if case == value:
                return _Jump(label)
        return _Jump(default)

    def _op_ret(self, instr: Instr, frame: _Frame, depth: int) -> _Return:
        ty, value = instr.args
        if ty is None:
            return _Return(None)
        return _Return(self._value(value, ty, frame))

    def _op_extractvalue(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        ty, agg_op, indices = instr.args
        data = self._value(agg_op, ty, frame)
        offset, elem = self.layout.gep(ty, (0,) + indices)
        return self._from_bytes(elem, data[offset:offset + self.layout.store_size(elem)])

    def _op_insertvalue(self, instr: Instr, frame: _Frame, depth: int) -> bytes:
        ty, agg_op, elem_ty, elem_op, indices = instr.args
        data = bytearray(self._value(agg_op, ty, frame))
        offset, _ = self.layout.gep(ty, (0,) + indices)
        encoded = self._to_bytes(elem_ty, self._value(elem_op, elem_ty, frame))
        data[offset:offset + len(encoded)] = encoded
        return bytes(data)

    # ------------------------------------------------------------------
    # Calls

    def _op_call(self, instr: Instr, frame: _Frame, depth: int) -> Any:
        ret, callee, args, _, _ = instr.args
        if isinstance(callee, str):
            name = callee
            function = self.module.get_function(name)
        else:
            address = self._value(callee, PTR, frame)
            function = self.allocator.function_at(address)
            if function is None:
                raise UnsupportedOperation(f"indirect call to non-function address 0x{address:X}")
            name = function.name
        if name.startswith(NOOP_INTRINSICS):
            return 0
        values = [self._value(op, ty, frame) for ty, op in args]
        builtin = self._builtin_for(name)
        if builtin is not None:
            return builtin(values)
        if function is None:
            raise UnsupportedOperation(f"call to undeclared function @{name}")
        if function.is_declaration:
            raise UnsupportedOperation(f"call to external function @{name}")
        return self._call(function, values, depth + 1)

    def _op_invoke(self, instr: Instr, frame: _Frame, depth: int) -> _Jump:
        value = self._op_call(instr, frame, depth)
        if instr.result is not None:
            frame.values[instr.result] = value
        return _Jump(instr.args[3])

    def _builtin_for(self, name: str) -> Optional[Callable[[List[Any]], Any]]:
        builtin = self._builtins.get(name)
        if builtin is not None:
            return builtin
        if name.startswith(("_Znw", "_Zna")):
            return self._builtin_malloc
        if name.startswith(("_Zdl", "_Zda")):
            return self._builtin_free
        if name.startswith("llvm.memset."):
            return self._builtin_memset
        if name.startswith(("llvm.memcpy.", "llvm.memmove.")):
            return self._builtin_memcpy
        return None

    def _builtin_malloc(self, args: List[Any]) -> int:
        return self.allocator.allocate(args[0], HEAP_ALIGN)

    def _builtin_calloc(self, args: List[Any]) -> int:
        return self.allocator.allocate(args[0] * args[1], HEAP_ALIGN)

    def _builtin_realloc(self, args: List[Any]) -> int:
        old, size = args[0], args[1]
        if old == 0:
            return self.allocator.allocate(size, HEAP_ALIGN)
        entry = self.allocator.address_map.entry_at(old)
        if entry is None or not isinstance(entry.owner, TypedAllocation) or entry.owner.stack:
            raise SandboxFault(f"invalid realloc of 0x{old:X}", address=old, code="invalid-free")
        new = self.allocator.allocate(size, HEAP_ALIGN)
        self.memory.copy(new, old, min(size, entry.size))
        self.allocator.deallocate(old)
        return new

    def _builtin_free(self, args: List[Any]) -> None:
        address = args[0]
        if address == 0:
            return None
        entry = self.allocator.address_map.entry_at(address)
        if entry is not None and isinstance(entry.owner, TypedAllocation) and entry.owner.stack:
            raise SandboxFault(f"free of stack address 0x{address:X}", address=address, code="invalid-free")
        self.allocator.deallocate(address)
        return None

    def _builtin_memset(self, args: List[Any]) -> int:
        dest, byte, size = args[0], args[1], args[2]
        self.memory.fill(dest, byte, size)
        return dest

    def _builtin_memcpy(self, args: List[Any]) -> int:
        dest, src, size = args[0], args[1], args[2]
        self.memory.copy(dest, src, size)
        return dest
