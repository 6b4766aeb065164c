"""In-memory compilation unit: globals, functions and the static constructor list."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .constants import (
    Constant,
    IntConstant,
    NullPointer,
    StructConstant,
    contains_opaque,
    format_symbol,
    render_typed,
)
from .irtypes import I32, FunctionType, IRType, PointerType, StructType
from .layout import DataLayout

CTORS_NAME = "llvm.global_ctors"
DEFAULT_CTOR_PRIORITY = 65535

_ALIGN_RE = re.compile(r"\balign\s+(\d+)")


@dataclass
class GlobalVariable:
    """A named, statically allocated storage slot."""

    name: str
    value_type: IRType
    initializer: Optional[Constant] = None
    is_constant: bool = False
    linkage: str = ""
    attributes: str = ""
    synthesized: bool = False

    @property
    def is_declaration(self) -> bool:
        return self.initializer is None

    @property
    def is_opaque(self) -> bool:
        """Contents unknown at compile time (external or unmaterializable)."""
        return self.initializer is None or contains_opaque(self.initializer)

    @property
    def align(self) -> Optional[int]:
        match = _ALIGN_RE.search(self.attributes)
        return int(match.group(1)) if match else None

    def render(self, module: Any = None) -> str:
        parts = [f"{format_symbol(self.name)} ="]
        if self.linkage:
            parts.append(self.linkage)
        parts.append("constant" if self.is_constant else "global")
        if self.initializer is None:
            parts.append(str(self.value_type))
        else:
            parts.append(render_typed(self.initializer, module))
        return " ".join(parts) + self.attributes


@dataclass
class Function:
    name: str
    type: FunctionType
    params: List[Tuple[IRType, str]] = field(default_factory=list)
    blocks: Dict[str, List[str]] = field(default_factory=dict)
    is_declaration: bool = False
    lines: List[str] = field(default_factory=list)

    @property
    def entry_label(self) -> Optional[str]:
        return next(iter(self.blocks), None)


@dataclass
class CtorEntry:
    """One element of ``@llvm.global_ctors``."""

    priority: int
    function: Optional[str]
    function_value: Constant
    data: Optional[Constant] = None


class Module:
    """Parsed compilation unit.

    Globals and functions keep their textual position so :meth:`render`
    reproduces everything it does not understand verbatim.
    """

    def __init__(self, layout: Optional[DataLayout] = None) -> None:
        self.layout = layout or DataLayout()
        self.globals: Dict[str, GlobalVariable] = {}
        self.functions: Dict[str, Function] = {}
        self.named_types: Dict[str, StructType] = {}
        self.ctors: List[CtorEntry] = []
        self.ctor_element_type: StructType = StructType((I32, PointerType(), PointerType()))
        self.ctor_linkage = "appending"
        self.ctor_attributes = ""
        self._items: List[Tuple[str, Any]] = []

    # ------------------------------------------------------------------
    # Building

    def add_text(self, line: str) -> None:
        self._items.append(("text", line))

    def add_global(self, gv: GlobalVariable, *, placed: bool = True) -> GlobalVariable:
        if gv.name in self.globals:
            raise ValueError(f"global @{gv.name} already defined")
        self.globals[gv.name] = gv
        if placed:
            self._items.append(("global", gv.name))
        return gv

    def add_function(self, fn: Function, *, placed: bool = True) -> Function:
        self.functions[fn.name] = fn
        if placed:
            self._items.append(("function", fn.name))
        return fn

    def mark_ctors(self) -> None:
        self._items.append(("ctors", None))

    # ------------------------------------------------------------------
    # Queries

    def get_global(self, name: str) -> Optional[GlobalVariable]:
        return self.globals.get(name)

    def get_function(self, name: str) -> Optional[Function]:
        return self.functions.get(name)

    def defined_globals(self) -> Iterable[GlobalVariable]:
        return (gv for gv in self.globals.values() if not gv.is_declaration)

    def static_constructors(self) -> List[CtorEntry]:
        """Constructor entries in load-time order (priority, then declaration)."""
        return sorted(self.ctors, key=lambda entry: entry.priority)

    def unique_global_name(self, prefix: str, start: int = 0) -> Tuple[str, int]:
        counter = start
        while True:
            candidate = f"{prefix}.{counter}"
            counter += 1
            if candidate not in self.globals and candidate not in self.functions:
                return candidate, counter

    # ------------------------------------------------------------------
    # Mutation

    def set_initializer(self, name: str, value: Constant) -> None:
        gv = self.globals.get(name)
        if gv is None:
            raise KeyError(name)
        gv.initializer = value

    def set_static_constructors(self, entries: Iterable[CtorEntry]) -> None:
        self.ctors = list(entries)

    # ------------------------------------------------------------------
    # Rendering

    def _render_ctors(self) -> Optional[str]:
        if not self.ctors:
            return None
        elem = self.ctor_element_type
        values = []
        for entry in self.ctors:
            fields: List[Constant] = [IntConstant(I32, entry.priority), entry.function_value]
            if len(elem.fields or ()) > 2:
                fields.append(entry.data if entry.data is not None else _null_for(elem.fields[2]))
            values.append(render_typed(StructConstant(elem, tuple(fields)), self))
        head = f"{format_symbol(CTORS_NAME)} = {self.ctor_linkage} global"
        return f"{head} [{len(values)} x {elem}] [{', '.join(values)}]{self.ctor_attributes}"

    def render(self) -> str:
        placed_globals = {name for kind, name in self._items if kind == "global"}
        extra = [gv for name, gv in self.globals.items() if name not in placed_globals]
        last_global = max((i for i, (kind, _) in enumerate(self._items) if kind == "global"), default=None)
        if last_global is None:
            last_global = next(
                (i - 1 for i, (kind, _) in enumerate(self._items) if kind in ("function", "ctors")),
                len(self._items) - 1,
            )
        lines: List[str] = []
        ctors_emitted = False

        def emit_extra() -> None:
            for gv in extra:
                lines.append(gv.render(self))

        if last_global < 0:
            emit_extra()
        for idx, (kind, payload) in enumerate(self._items):
            if kind == "text":
                lines.append(payload)
            elif kind == "global":
                lines.append(self.globals[payload].render(self))
            elif kind == "function":
                lines.extend(self.functions[payload].lines)
            elif kind == "ctors":
                ctors_emitted = True
                text = self._render_ctors()
                if text is not None:
                    lines.append(text)
            if idx == last_global:
                emit_extra()
        if not ctors_emitted:
            text = self._render_ctors()
            if text is not None:
                lines.append(text)
        return "\n".join(lines) + "\n"


def _null_for(ty: IRType) -> Constant:
    if isinstance(ty, PointerType):
        return NullPointer(ty)
    return IntConstant(I32, 0)
