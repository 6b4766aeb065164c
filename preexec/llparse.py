"""Reader for textual LLVM-style IR modules.

Only the parts pre-execution needs are modelled: the data layout, named
struct types, global variables, the static constructor list and function
bodies (kept as instruction lines). Everything else is carried through
verbatim.
"""

from __future__ import annotations

import logging
import re
import struct
from typing import Dict, List, Optional, Sequence, Set, Tuple

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
from .errors import IRParseError, LayoutInconsistencyError
from .irtypes import (
    FLOAT_KINDS,
    VOID,
    ArrayType,
    FloatType,
    FunctionType,
    IntType,
    IRType,
    PointerType,
    StructType,
)
from .layout import DataLayout
from .module import CTORS_NAME, CtorEntry, Function, GlobalVariable, Module

LOGGER = logging.getLogger("preexec.llparse")

IDENT_RE = re.compile(r"[-A-Za-z$._0-9]+")
WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_.]*")
INT_RE = re.compile(r"-?\d+")
FLOAT_RE = re.compile(r"[-+]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][-+]?\d+)?")
HEX_FLOAT_RE = re.compile(r"0x([KLMHR]?)([0-9A-Fa-f]+)")

# Tokens that may sit between a type and its value, or before a header's
# return type, without changing meaning for pre-execution.
ATTR_TOKENS = {
    "noundef", "nonnull", "dso_local", "dso_preemptable", "local_unnamed_addr",
    "unnamed_addr", "volatile", "nsw", "nuw", "exact", "inbounds", "signext",
    "zeroext", "inreg", "returned", "noalias", "nocapture", "readonly", "writeonly",
    "immarg", "fast", "nnan", "ninf", "nsz", "arcp", "contract", "afn", "reassoc",
    "tail", "musttail", "notail", "hidden", "protected", "default", "internal",
    "private", "external", "linkonce", "linkonce_odr", "weak", "weak_odr", "common",
    "extern_weak", "available_externally", "ccc", "fastcc", "coldcc", "disjoint",
    "nneg", "samesign",
}
_PARAMETRIC_ATTRS = ("align", "dereferenceable", "dereferenceable_or_null", "sret", "byval",
                     "elementtype", "noundef", "range", "nofpclass", "captures")

_GLOBAL_LINE_RE = re.compile(r'^@("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s*=\s*(.*)$')
_TYPE_DEF_RE = re.compile(r'^%("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s*=\s*type\s+(.*)$')
_DATALAYOUT_RE = re.compile(r'^target\s+datalayout\s*=\s*"([^"]*)"')
_FUNC_NAME_RE = re.compile(r'@("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s*\(')
_LABEL_RE = re.compile(r'^("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+):(\s*;.*)?$')
_GLOBAL_KIND_RE = re.compile(r"(?:^|\s)(global|constant)\s")
_ALIAS_KIND_RE = re.compile(r"(?:^|\s)(alias|ifunc)\s")


def parse_llvm_string_literal(body: str) -> bytes:
    out = bytearray()
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\":
            out.extend(ch.encode("utf-8"))
            i += 1
            continue
        if body[i + 1:i + 2] == "\\":
            out.append(0x5C)
            i += 2
            continue
        hx = body[i + 1:i + 3]
        if len(hx) != 2:
            raise IRParseError(f'bad string escape in c"{body}"')
        try:
            out.append(int(hx, 16))
        except ValueError as exc:
            raise IRParseError(f'bad string escape in c"{body}"') from exc
        i += 3
    return bytes(out)


def unquote_symbol(raw: str) -> str:
    if raw.startswith('"') and raw.endswith('"'):
        return parse_llvm_string_literal(raw[1:-1]).decode("utf-8", errors="replace")
    return raw


def strip_comment(line: str) -> str:
    """Drop a trailing ``; comment`` that is not inside a string."""
    in_string = False
    for idx, ch in enumerate(line):
        if ch == '"':
            in_string = not in_string
        elif ch == ";" and not in_string:
            return line[:idx].rstrip()
    return line.rstrip()


def normalize_ir_line(line: str) -> str:
    line = strip_comment(line)
    line = re.sub(r',\s*![A-Za-z_.]+\s+!\d+', '', line)
    line = re.sub(r',\s*![A-Za-z_.]+\s+!\{[^}]*\}', '', line)
    return line.strip()


def split_top_level(expr: str, sep: str = ",") -> List[str]:
    parts: List[str] = []
    depth = 0
    token: List[str] = []
    in_string = False
    for ch in expr:
        if ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch in "{[(<":
                depth += 1
            elif ch in "}])>":
                depth = max(depth - 1, 0)
        if ch == sep and depth == 0 and not in_string:
            parts.append("".join(token).strip())
            token = []
        else:
            token.append(ch)
    tail = "".join(token).strip()
    if tail or parts:
        parts.append(tail)
    return parts


class Cursor:
    """Position within one line of IR text."""

    def __init__(self, text: str, pos: int = 0) -> None:
        self.text = text
        self.pos = pos

    def skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def at_end(self) -> bool:
        self.skip_ws()
        return self.pos >= len(self.text)

    def peek(self, count: int = 1) -> str:
        self.skip_ws()
        return self.text[self.pos:self.pos + count]

    def rest(self) -> str:
        self.skip_ws()
        return self.text[self.pos:]

    def accept(self, token: str) -> bool:
        self.skip_ws()
        if self.text.startswith(token, self.pos):
            end = self.pos + len(token)
            if token[-1].isalnum() and end < len(self.text) and (self.text[end].isalnum() or self.text[end] in "_."):
                return False
            self.pos = end
            return True
        return False

    def expect(self, token: str) -> None:
        if not self.accept(token):
            raise IRParseError(f"expected {token!r} at {self.rest()[:40]!r} in: {self.text}")

    def match(self, pattern: re.Pattern) -> Optional[re.Match]:
        self.skip_ws()
        found = pattern.match(self.text, self.pos)
        if found:
            self.pos = found.end()
        return found

    def word(self) -> Optional[str]:
        found = self.match(WORD_RE)
        return found.group(0) if found else None

    def peek_word(self) -> Optional[str]:
        self.skip_ws()
        found = WORD_RE.match(self.text, self.pos)
        return found.group(0) if found else None

    def symbol(self, sigil: str) -> str:
        """Read ``@name`` / ``%name`` (bare or quoted) and return the name."""
        self.expect(sigil)
        if self.text.startswith('"', self.pos):
            end = self.pos + 1
            while end < len(self.text) and self.text[end] != '"':
                end += 2 if self.text[end] == "\\" else 1
            raw = self.text[self.pos:end + 1]
            self.pos = end + 1
            return unquote_symbol(raw)
        found = IDENT_RE.match(self.text, self.pos)
        if not found:
            raise IRParseError(f"expected a name after {sigil!r} in: {self.text}")
        self.pos = found.end()
        return found.group(0)

    def balanced(self) -> str:
        """Consume a parenthesised group starting at the cursor and return it."""
        self.skip_ws()
        start = self.pos
        depth = 0
        in_string = False
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            self.pos += 1
            if ch == '"':
                in_string = not in_string
            elif in_string:
                continue
            elif ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return self.text[start:self.pos]
        raise IRParseError(f"unbalanced parentheses in: {self.text}")

    def skip_attributes(self) -> None:
        while True:
            word = self.peek_word()
            if word is None:
                return
            if word in _PARAMETRIC_ATTRS and self.text.startswith("(", self._after_word()):
                self.word()
                self.balanced()
                continue
            if word == "align" and re.match(r"\s+\d", self.text[self._after_word():]):
                self.word()
                self.match(INT_RE)
                continue
            if word in ATTR_TOKENS:
                self.word()
                continue
            return

    def _after_word(self) -> int:
        self.skip_ws()
        found = WORD_RE.match(self.text, self.pos)
        return found.end() if found else self.pos


def _expect_int(cur: Cursor) -> int:
    found = cur.match(INT_RE)
    if not found:
        raise IRParseError(f"expected an integer at {cur.rest()[:40]!r} in: {cur.text}")
    return int(found.group(0))


class IRReader:
    """Type and constant reader bound to one module's names and layout."""

    def __init__(self, module: Module) -> None:
        self.module = module
        self.global_names: Set[str] = set()
        self.function_names: Set[str] = set()

    @property
    def layout(self) -> DataLayout:
        return self.module.layout

    def named_type(self, name: str) -> StructType:
        ty = self.module.named_types.get(name)
        if ty is None:
            ty = StructType(name=f"%{name}" if IDENT_RE.fullmatch(name) else f'%"{name}"')
            self.module.named_types[name] = ty
        return ty

    # ------------------------------------------------------------------
    # Types

    def parse_type(self, cur: Cursor) -> IRType:
        ty = self._parse_base_type(cur)
        while True:
            if cur.accept("addrspace"):
                space = int(cur.balanced()[1:-1])
                cur.expect("*")
                ty = PointerType(ty, space)
            elif cur.accept("*"):
                ty = PointerType(ty)
            elif cur.peek() == "(":
                ty = self._parse_function_type(cur, ty)
            else:
                return ty

    def _parse_function_type(self, cur: Cursor, ret: IRType) -> FunctionType:
        cur.expect("(")
        params: List[IRType] = []
        varargs = False
        while not cur.accept(")"):
            if cur.accept("..."):
                varargs = True
            else:
                params.append(self.parse_type(cur))
                cur.skip_attributes()
            cur.accept(",")
        return FunctionType(ret, tuple(params), varargs)

    def _parse_base_type(self, cur: Cursor) -> IRType:
        cur.skip_ws()
        if cur.accept("["):
            count = _expect_int(cur)
            cur.expect("x")
            element = self.parse_type(cur)
            cur.expect("]")
            return ArrayType(element, count)
        if cur.accept("<{"):
            fields = self._parse_fields(cur, "}>")
            return StructType(fields, packed=True)
        if cur.accept("<"):
            count = _expect_int(cur)
            cur.expect("x")
            element = self.parse_type(cur)
            cur.expect(">")
            return ArrayType(element, count, vector=True)
        if cur.accept("{"):
            return StructType(self._parse_fields(cur, "}"))
        if cur.peek() == "%":
            return self.named_type(cur.symbol("%"))
        word = cur.peek_word()
        if word is None:
            raise IRParseError(f"expected a type at {cur.rest()[:40]!r} in: {cur.text}")
        if word == "void":
            cur.word()
            return VOID
        if word in FLOAT_KINDS:
            cur.word()
            return FloatType(word)
        if re.fullmatch(r"i\d+", word):
            cur.word()
            return IntType(int(word[1:]))
        if word == "ptr":
            cur.word()
            space = 0
            if cur.accept("addrspace"):
                space = int(cur.balanced()[1:-1])
            return PointerType(None, space)
        raise IRParseError(f"unknown type {word!r} in: {cur.text}")

    def _parse_fields(self, cur: Cursor, closer: str) -> List[IRType]:
        fields: List[IRType] = []
        while not cur.accept(closer):
            fields.append(self.parse_type(cur))
            cur.accept(",")
        return fields

    # ------------------------------------------------------------------
    # Constants

    def parse_typed_constant(self, cur: Cursor) -> Constant:
        ty = self.parse_type(cur)
        cur.skip_attributes()
        return self.parse_constant(cur, ty)

    def parse_constant(self, cur: Cursor, ty: IRType) -> Constant:
        cur.skip_ws()
        start = cur.pos
        head = cur.peek(2)
        if head == 'c"':
            cur.pos += 1
            body = cur.match(re.compile(r'"((?:[^"\\]|\\.)*)"')).group(1)
            return StringConstant(ty, parse_llvm_string_literal(body))
        if head == "<{":
            cur.pos += 2
            fields = self._parse_const_list(cur, "}>")
            return StructConstant(ty, tuple(fields))
        first = head[:1]
        if first == "[":
            cur.pos += 1
            return ArrayConstant(ty, tuple(self._parse_const_list(cur, "]")))
        if first == "<":
            cur.pos += 1
            return ArrayConstant(ty, tuple(self._parse_const_list(cur, ">")))
        if first == "{":
            cur.pos += 1
            return StructConstant(ty, tuple(self._parse_const_list(cur, "}")))
        if first == "@":
            name = cur.symbol("@")
            if name in self.function_names and name not in self.global_names:
                return FunctionReference(ty, name)
            if name in self.global_names:
                return GlobalReference(ty, name, 0)
            return OpaqueConstant(ty, cur.text[start:cur.pos])
        if first == "%":
            raise IRParseError(f"local value where a constant is required in: {cur.text}")
        word = cur.peek_word()
        if word in ("true", "false"):
            cur.word()
            return IntConstant(ty, 1 if word == "true" else 0)
        if word == "null":
            cur.word()
            return NullPointer(ty)
        if word in ("undef", "poison"):
            cur.word()
            return UndefValue(ty, poison=word == "poison")
        if word == "zeroinitializer":
            cur.word()
            return ZeroInitializer(ty)
        if word in ("getelementptr", "bitcast", "addrspacecast", "inttoptr"):
            value = self._parse_constant_expr(cur, ty, word)
            if isinstance(value, OpaqueConstant):
                return OpaqueConstant(ty, cur.text[start:cur.pos])
            return value
        if cur.rest()[:3] in ("u0x", "s0x") and isinstance(ty, IntType):
            found = cur.match(re.compile(r"[us]0x([0-9A-Fa-f]+)"))
            return IntConstant(ty, int(found.group(1), 16))
        if word is not None:
            return self._parse_opaque(cur, ty, start)
        return self._parse_number(cur, ty)

    def _parse_const_list(self, cur: Cursor, closer: str) -> List[Constant]:
        values: List[Constant] = []
        while not cur.accept(closer):
            values.append(self.parse_typed_constant(cur))
            cur.accept(",")
        return values

    def _parse_number(self, cur: Cursor, ty: IRType) -> Constant:
        if isinstance(ty, IntType):
            found = cur.match(INT_RE)
            if not found:
                raise IRParseError(f"expected an integer at {cur.rest()[:40]!r} in: {cur.text}")
            return IntConstant(ty, int(found.group(0)))
        if isinstance(ty, FloatType):
            hex_found = cur.match(HEX_FLOAT_RE)
            if hex_found:
                prefix, digits = hex_found.groups()
                bits = int(digits, 16)
                if prefix in ("H", "R") and ty.kind == "half":
                    return FloatConstant(ty, bits & 0xFFFF)
                if prefix:
                    raise IRParseError(f"unsupported float literal 0x{prefix}{digits}")
                as_double = struct.unpack("<d", struct.pack("<Q", bits))[0]
                if ty.kind == "double":
                    return FloatConstant(ty, bits)
                return FloatConstant.from_value(ty, as_double)
            found = cur.match(FLOAT_RE)
            if not found:
                raise IRParseError(f"expected a float at {cur.rest()[:40]!r} in: {cur.text}")
            return FloatConstant.from_value(ty, float(found.group(0)))
        raise IRParseError(f"numeric literal for non-numeric type {ty} in: {cur.text}")

    def _parse_opaque(self, cur: Cursor, ty: IRType, start: int) -> Constant:
        while True:
            word = cur.word()
            if word is None:
                raise IRParseError(f"cannot read constant at {cur.rest()[:40]!r} in: {cur.text}")
            if cur.peek() == "(":
                cur.balanced()
                return OpaqueConstant(ty, cur.text[start:cur.pos])
            if cur.peek() == "@":
                cur.symbol("@")
                return OpaqueConstant(ty, cur.text[start:cur.pos])
            if cur.at_end() or cur.peek() in (",", "]", "}", ">", ")"):
                return OpaqueConstant(ty, cur.text[start:cur.pos])

    def _parse_constant_expr(self, cur: Cursor, ty: IRType, op: str) -> Constant:
        cur.word()
        if op == "getelementptr":
            while True:
                flag = cur.peek_word()
                if flag in ("inbounds", "nuw", "nusw"):
                    cur.word()
                elif flag == "inrange":
                    cur.word()
                    cur.balanced()
                else:
                    break
            cur.expect("(")
            source = self.parse_type(cur)
            cur.expect(",")
            base = self.parse_typed_constant(cur)
            indices: List[int] = []
            constant_indices = True
            while cur.accept(","):
                if cur.peek_word() == "inrange":
                    cur.word()
                index = self.parse_typed_constant(cur)
                if isinstance(index, IntConstant):
                    indices.append(index.value)
                else:
                    constant_indices = False
            cur.expect(")")
            if not isinstance(base, GlobalReference) or not indices or not constant_indices:
                return OpaqueConstant(ty, "")
            try:
                offset, elem = self.layout.gep(source, indices)
            except LayoutInconsistencyError:
                return OpaqueConstant(ty, "")
            result_type = ty if isinstance(ty, PointerType) else base.type
            if isinstance(base.type, PointerType) and not base.type.opaque:
                result_type = PointerType(elem, base.type.addrspace)
            return GlobalReference(result_type, base.target, base.offset + offset)
        cur.expect("(")
        inner = self.parse_typed_constant(cur)
        cur.expect("to")
        target = self.parse_type(cur)
        cur.expect(")")
        if op == "inttoptr":
            if isinstance(inner, IntConstant) and isinstance(target, PointerType):
                return IntToPointer(target, inner.unsigned)
            return OpaqueConstant(target, "")
        if isinstance(target, PointerType):
            if isinstance(inner, GlobalReference):
                return GlobalReference(target, inner.target, inner.offset)
            if isinstance(inner, FunctionReference):
                return FunctionReference(target, inner.target)
            if isinstance(inner, NullPointer):
                return NullPointer(target)
            if isinstance(inner, IntToPointer):
                return IntToPointer(target, inner.address)
        return OpaqueConstant(target, "")


# ---------------------------------------------------------------------------
# Module reader


def _join_multiline(lines: Sequence[str]) -> List[str]:
    """Join instructions LLVM spreads over several lines (``switch`` tables)."""
    out: List[str] = []
    pending: Optional[str] = None
    for raw in lines:
        line = normalize_ir_line(raw)
        if pending is not None:
            pending = f"{pending} {line}"
            if "]" in line:
                out.append(pending)
                pending = None
            continue
        if re.match(r"^switch\b", line) and "[" in line and "]" not in line:
            pending = line
            continue
        if line and not line.startswith("#dbg_"):
            out.append(line)
    if pending is not None:
        raise IRParseError(f"unterminated switch: {pending}")
    return out


def _parse_header_type_and_name(reader: IRReader, text: str, keyword: str) -> Tuple[IRType, str, str]:
    """Split ``define ... RET @name(PARAMS) attrs`` into its pieces."""
    body = text[len(keyword):]
    found = _FUNC_NAME_RE.search(body)
    if not found:
        raise IRParseError(f"cannot find function name in: {text}")
    name = unquote_symbol(found.group(1))
    prefix = body[:found.start()].strip()
    tokens = prefix.split()
    ret: Optional[IRType] = None
    for idx in range(len(tokens)):
        candidate = " ".join(tokens[idx:])
        cur = Cursor(candidate)
        try:
            ty = reader.parse_type(cur)
        except (IRParseError, ValueError):
            continue
        if cur.at_end():
            ret = ty
            break
    if ret is None:
        raise IRParseError(f"cannot read return type in: {text}")
    cur = Cursor(body, found.end() - 1)
    params_text = cur.balanced()[1:-1]
    return ret, name, params_text


def _parse_params(reader: IRReader, params_text: str) -> Tuple[List[Tuple[IRType, str]], bool]:
    params: List[Tuple[IRType, str]] = []
    varargs = False
    unnamed = 0
    for piece in split_top_level(params_text):
        if not piece:
            continue
        if piece == "...":
            varargs = True
            continue
        cur = Cursor(piece)
        ty = reader.parse_type(cur)
        cur.skip_attributes()
        name = ""
        rest = cur.rest()
        local = re.search(r'%("(?:[^"\\]|\\.)*"|[-A-Za-z$._0-9]+)\s*$', rest)
        if local:
            name = unquote_symbol(local.group(1))
        else:
            name = str(unnamed)
        if name.isdigit():
            unnamed += 1
        params.append((ty, name))
    return params, varargs


def _parse_function(reader: IRReader, lines: List[str]) -> Function:
    header = normalize_ir_line(lines[0])
    keyword = "define" if header.startswith("define") else "declare"
    ret, name, params_text = _parse_header_type_and_name(reader, header, keyword)
    params, varargs = _parse_params(reader, params_text)
    fn_type = FunctionType(ret, tuple(ty for ty, _ in params), varargs)
    fn = Function(name=name, type=fn_type, params=params, is_declaration=keyword == "declare", lines=list(lines))
    if fn.is_declaration:
        return fn
    # An unlabelled entry block takes the next unnamed value number.
    entry_label = str(sum(1 for _, pname in params if pname.isdigit()))
    current: Optional[List[str]] = None
    for line in _join_multiline(lines[1:-1]):
        found = _LABEL_RE.match(line)
        if found:
            current = []
            fn.blocks[unquote_symbol(found.group(1))] = current
            continue
        if current is None:
            current = []
            fn.blocks[entry_label] = current
        current.append(line)
    return fn


def _collect_names(lines: Sequence[str]) -> Tuple[Set[str], Set[str]]:
    globals_: Set[str] = set()
    functions: Set[str] = set()
    for raw in lines:
        line = raw.strip()
        found = _GLOBAL_LINE_RE.match(line)
        if found:
            rest = " " + found.group(2)
            kind = _GLOBAL_KIND_RE.search(rest)
            alias = _ALIAS_KIND_RE.search(rest)
            if kind and (alias is None or kind.start() < alias.start()):
                globals_.add(unquote_symbol(found.group(1)))
            continue
        if line.startswith(("define ", "declare ")):
            name = _FUNC_NAME_RE.search(line)
            if name:
                functions.add(unquote_symbol(name.group(1)))
    return globals_, functions


def _parse_global(reader: IRReader, name: str, rest: str) -> GlobalVariable:
    kind = _GLOBAL_KIND_RE.search(" " + rest)
    linkage = rest[:max(kind.start(1) - 1, 0)].strip()
    cur = Cursor(rest, kind.end(1) - 1)
    value_type = reader.parse_type(cur)
    is_constant = kind.group(1) == "constant"
    tail = cur.rest()
    declaration = re.search(r"\b(external|extern_weak)\b", linkage) is not None
    initializer: Optional[Constant] = None
    if not declaration or (tail and not tail.startswith(",")):
        initializer = reader.parse_constant(cur, value_type)
        tail = cur.rest()
    attributes = tail if not tail or tail.startswith(",") else f" {tail}"
    return GlobalVariable(
        name=name,
        value_type=value_type,
        initializer=initializer,
        is_constant=is_constant,
        linkage=linkage,
        attributes=attributes,
    )


def _ctor_entries(gv: GlobalVariable) -> Tuple[StructType, List[CtorEntry]]:
    ty = gv.value_type
    if not isinstance(ty, ArrayType) or not isinstance(ty.element, StructType):
        raise IRParseError(f"@{CTORS_NAME} has unexpected type {ty}")
    elem = ty.element
    entries: List[CtorEntry] = []
    init = gv.initializer
    if isinstance(init, ArrayConstant):
        for item in init.elements:
            if not isinstance(item, StructConstant) or len(item.fields) < 2:
                raise IRParseError(f"malformed @{CTORS_NAME} entry")
            prio = item.fields[0]
            if not isinstance(prio, IntConstant):
                raise IRParseError(f"malformed @{CTORS_NAME} priority")
            fn_value = item.fields[1]
            target = fn_value.target if isinstance(fn_value, FunctionReference) else None
            data = item.fields[2] if len(item.fields) > 2 else None
            entries.append(CtorEntry(prio.unsigned, target, fn_value, data))
    elif init is not None and not isinstance(init, ZeroInitializer):
        raise IRParseError(f"@{CTORS_NAME} initializer is not a constant array")
    return elem, entries


def parse_module(text: str) -> Module:
    """Read a textual IR module."""
    lines = text.splitlines()
    module = Module()
    reader = IRReader(module)
    reader.global_names, reader.function_names = _collect_names(lines)

    type_defs: List[Tuple[str, str]] = []
    for raw in lines:
        line = strip_comment(raw.strip())
        dl = _DATALAYOUT_RE.match(line)
        if dl:
            module.layout = DataLayout.parse(dl.group(1))
            continue
        td = _TYPE_DEF_RE.match(line)
        if td:
            name = unquote_symbol(td.group(1))
            reader.named_type(name)
            type_defs.append((name, td.group(2).strip()))
    for name, body in type_defs:
        ty = reader.named_type(name)
        if body == "opaque":
            continue
        cur = Cursor(body)
        parsed = reader._parse_base_type(cur)
        if not isinstance(parsed, StructType):
            raise IRParseError(f"named type %{name} is not a struct")
        ty.set_body(parsed.fields or (), packed=parsed.packed)

    idx = 0
    while idx < len(lines):
        raw = lines[idx]
        idx += 1
        line = raw.strip()
        if line.startswith(("define ", "declare ")):
            block = [raw]
            if line.startswith("define ") and not line.endswith("}"):
                while idx < len(lines):
                    block.append(lines[idx])
                    idx += 1
                    if lines[idx - 1].strip() == "}":
                        break
                else:
                    raise IRParseError(f"unterminated function body: {line}")
            fn = _parse_function(reader, block)
            module.add_function(fn)
            continue
        found = _GLOBAL_LINE_RE.match(line)
        if found:
            name = unquote_symbol(found.group(1))
            if name in reader.global_names:
                gv = _parse_global(reader, name, strip_comment(found.group(2)))
                if name == CTORS_NAME:
                    module.ctor_element_type, module.ctors = _ctor_entries(gv)
                    module.ctor_linkage = gv.linkage
                    module.ctor_attributes = gv.attributes
                    module.mark_ctors()
                else:
                    module.add_global(gv)
                continue
        module.add_text(raw)
    LOGGER.debug(
        "parsed module: %d globals, %d functions, %d constructors",
        len(module.globals),
        len(module.functions),
        len(module.ctors),
    )
    return module


def parse_type(text: str, module: Optional[Module] = None) -> IRType:
    reader = IRReader(module or Module())
    cur = Cursor(text)
    ty = reader.parse_type(cur)
    if not cur.at_end():
        raise IRParseError(f"trailing text after type: {cur.rest()!r}")
    return ty


def parse_constant(text: str, module: Optional[Module] = None) -> Constant:
    """Parse ``TYPE VALUE`` against *module*'s names and layout."""
    module = module or Module()
    reader = IRReader(module)
    reader.global_names = set(module.globals)
    reader.function_names = set(module.functions)
    cur = Cursor(text)
    value = reader.parse_typed_constant(cur)
    if not cur.at_end():
        raise IRParseError(f"trailing text after constant: {cur.rest()!r}")
    return value


def reader_for(module: Module) -> IRReader:
    reader = IRReader(module)
    reader.global_names = set(module.globals)
    reader.function_names = set(module.functions)
    return reader

