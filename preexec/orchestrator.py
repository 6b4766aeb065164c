"""Top-level driver: pre-execute static constructors and fold their effects."""

from __future__ import annotations

import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .constants import Constant
from .engine import ExecutionEngine
from .errors import InternalConsistencyError, LayoutInconsistencyError, ReconstructionError, UnsupportedOperation
from .interp import DEFAULT_CALL_DEPTH_LIMIT, DEFAULT_STEP_LIMIT, IRInterpreter
from .module import CtorEntry, GlobalVariable, Module
from .reconstruct import DEFAULT_HEAP_PREFIX, ConstantReconstructor
from .sandbox import SANDBOX_BASE, SandboxSession

LOGGER = logging.getLogger("preexec.orchestrator")

EventHook = Callable[[Dict[str, Any]], None]


class SessionPhase(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    RECORDING = "recording"
    RECONSTRUCTING = "reconstructing"
    COMMITTING = "committing"


class CtorStatus(enum.Enum):
    ELIDED = "elided"
    PRESERVED = "preserved"
    SKIPPED = "skipped"


@dataclass
class PreExecuteConfig:
    restricted_address_space: bool = True
    step_limit: int = DEFAULT_STEP_LIMIT
    call_depth_limit: int = DEFAULT_CALL_DEPTH_LIMIT
    stop_at_first_failure: bool = True
    heap_global_prefix: str = DEFAULT_HEAP_PREFIX
    sandbox_base: int = SANDBOX_BASE
    address_limit: Optional[int] = None


@dataclass
class CtorResult:
    function: Optional[str]
    priority: int
    status: CtorStatus
    reason: Optional[str] = None
    modified_globals: List[str] = field(default_factory=list)
    synthesized_globals: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "function": self.function,
            "priority": self.priority,
            "status": self.status.value,
            "reason": self.reason,
            "modified_globals": list(self.modified_globals),
            "synthesized_globals": list(self.synthesized_globals),
        }


@dataclass
class PreExecuteReport:
    results: List[CtorResult] = field(default_factory=list)

    def _with_status(self, status: CtorStatus) -> List[CtorResult]:
        return [r for r in self.results if r.status is status]

    @property
    def elided(self) -> List[CtorResult]:
        return self._with_status(CtorStatus.ELIDED)

    @property
    def preserved(self) -> List[CtorResult]:
        return self._with_status(CtorStatus.PRESERVED)

    @property
    def skipped(self) -> List[CtorResult]:
        return self._with_status(CtorStatus.SKIPPED)

    @property
    def modified_globals(self) -> List[str]:
        names: List[str] = []
        for result in self.results:
            names.extend(n for n in result.modified_globals if n not in names)
        return names

    def to_dict(self) -> Dict[str, Any]:
        return {
            "constructors": [r.to_dict() for r in self.results],
            "elided": len(self.elided),
            "preserved": len(self.preserved),
            "skipped": len(self.skipped),
            "modified_globals": self.modified_globals,
        }


class StagedModule:
    """Initializer changes accepted so far in a pass, not yet applied.

    Later constructors see these values through :meth:`globals`; the real
    module only changes in :meth:`apply`.
    """

    def __init__(self, module: Module) -> None:
        self.module = module
        self._overrides: Dict[str, GlobalVariable] = {}
        self._added: Dict[str, GlobalVariable] = {}

    def globals(self) -> Iterator[GlobalVariable]:
        for name, gv in self.module.globals.items():
            yield self._overrides.get(name, gv)
        yield from self._added.values()

    def name_taken(self, name: str) -> bool:
        return name in self.module.globals or name in self.module.functions or name in self._added

    def stage(self, updates: Dict[str, Constant], synthesized: List[GlobalVariable]) -> None:
        for name, value in updates.items():
            if name in self._added:
                self._added[name] = dataclasses.replace(self._added[name], initializer=value)
                continue
            base = self._overrides.get(name) or self.module.globals.get(name)
            if base is None:
                raise InternalConsistencyError(f"staged update for unknown global @{name}")
            self._overrides[name] = dataclasses.replace(base, initializer=value)
        for gv in synthesized:
            if self.name_taken(gv.name):
                raise InternalConsistencyError(f"synthesized global @{gv.name} collides with an existing name")
            self._added[gv.name] = gv

    def apply(self) -> None:
        for name, gv in self._overrides.items():
            self.module.set_initializer(name, gv.initializer)
        for gv in self._added.values():
            self.module.add_global(gv, placed=False)


class PreExecutor:
    """Runs every static constructor of a module in a fresh sandbox.

    A constructor whose effects are fully reconstructed is removed from
    ``@llvm.global_ctors`` and its writes become global initializers; any
    other constructor stays and runs at load time as before.
    """

    def __init__(
        self,
        engine: Optional[ExecutionEngine] = None,
        config: Optional[PreExecuteConfig] = None,
        *,
        event_hook: Optional[EventHook] = None,
    ) -> None:
        self.engine = engine
        self.config = config or PreExecuteConfig()
        self._event_hook = event_hook
        self._phase = SessionPhase.IDLE

    # ------------------------------------------------------------------
    # Instrumentation

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    def set_event_hook(self, hook: Optional[EventHook]) -> None:
        self._event_hook = hook

    def _set_phase(self, phase: SessionPhase) -> None:
        self._phase = phase

    def _emit_event(self, event_type: str, **fields: Any) -> None:
        if self._event_hook is None:
            return
        event = {"type": event_type, **fields}
        try:
            self._event_hook(event)
        except Exception:
            LOGGER.exception("event hook failed for %s", event_type)

    # ------------------------------------------------------------------
    # Passes

    def _engine_for(self, module: Module) -> ExecutionEngine:
        if self.engine is not None:
            return self.engine
        return IRInterpreter(
            module,
            step_limit=self.config.step_limit,
            call_depth_limit=self.config.call_depth_limit,
        )

    def run_on_module(self, module: Module) -> PreExecuteReport:
        """Pre-execute all constructors in load-time order and rewrite *module*."""
        engine = self._engine_for(module)
        staged = StagedModule(module)
        report = PreExecuteReport()
        elided: List[int] = []
        stopped = False
        try:
            for entry in module.static_constructors():
                if stopped:
                    result = CtorResult(
                        entry.function, entry.priority, CtorStatus.SKIPPED, "an earlier constructor was preserved"
                    )
                    report.results.append(result)
                    self._emit_event("ctor_skipped", function=entry.function, priority=entry.priority)
                    continue
                result = self._run_constructor(module, entry, staged, engine)
                report.results.append(result)
                if result.status is CtorStatus.ELIDED:
                    elided.append(id(entry))
                elif self.config.stop_at_first_failure:
                    stopped = True
            self._set_phase(SessionPhase.COMMITTING)
            staged.apply()
            module.set_static_constructors(e for e in module.ctors if id(e) not in elided)
        except InternalConsistencyError as exc:
            LOGGER.error("pre-execution aborted, module left unchanged: %s", exc)
            raise
        finally:
            self._set_phase(SessionPhase.IDLE)
        self._emit_event(
            "pass_complete",
            elided=len(report.elided),
            preserved=len(report.preserved),
            skipped=len(report.skipped),
        )
        return report

    def run_on_constructor(self, module: Module, entry: CtorEntry) -> CtorResult:
        """Pre-execute a single constructor entry and commit it if it folds."""
        staged = StagedModule(module)
        try:
            result = self._run_constructor(module, entry, staged, self._engine_for(module))
            if result.status is CtorStatus.ELIDED:
                self._set_phase(SessionPhase.COMMITTING)
                staged.apply()
                module.set_static_constructors(e for e in module.ctors if e is not entry)
        finally:
            self._set_phase(SessionPhase.IDLE)
        return result

    # ------------------------------------------------------------------
    # One constructor

    def _preserved(self, entry: CtorEntry, reason: str) -> CtorResult:
        LOGGER.warning("constructor @%s preserved: %s", entry.function, reason)
        self._emit_event("ctor_preserved", function=entry.function, priority=entry.priority, reason=reason)
        return CtorResult(entry.function, entry.priority, CtorStatus.PRESERVED, reason)

    def _run_constructor(
        self, module: Module, entry: CtorEntry, staged: StagedModule, engine: ExecutionEngine
    ) -> CtorResult:
        function = module.get_function(entry.function) if entry.function else None
        if function is None or function.is_declaration:
            return self._preserved(entry, "not defined in this module")
        config = self.config
        self._set_phase(SessionPhase.RUNNING)
        with SandboxSession(module.layout, base=config.sandbox_base, address_limit=config.address_limit) as session:
            try:
                session.materialize(staged.globals(), module.functions.values())
            except (UnsupportedOperation, LayoutInconsistencyError) as exc:
                return self._preserved(entry, f"cannot materialize module state: {exc}")
            outcome = engine.run(function, session.recorder, session.allocator)
            if not outcome.ok:
                return self._preserved(entry, f"{outcome.status.value}: {outcome.reason}")

            self._set_phase(SessionPhase.RECORDING)
            ranges = session.recorder.drain_ranges()

            self._set_phase(SessionPhase.RECONSTRUCTING)
            reconstructor = ConstantReconstructor.for_session(
                session,
                restricted=config.restricted_address_space,
                heap_prefix=config.heap_global_prefix,
                name_taken=staged.name_taken,
            )
            updates: Dict[str, Constant] = {}
            current: Optional[str] = None
            try:
                for gv in self._touched_globals(session, ranges):
                    current = gv.name
                    updates[gv.name] = reconstructor.compute_initializer_from_memory(
                        gv.value_type, session.global_address(gv)
                    )
            except LayoutInconsistencyError as exc:
                return self._preserved(entry, f"layout inconsistency: {exc}")
            except ReconstructionError as exc:
                return self._preserved(entry, f"cannot reconstruct @{current}: {exc}")

            self._set_phase(SessionPhase.COMMITTING)
            synthesized = list(reconstructor.synthesized)
            staged.stage(updates, synthesized)

        result = CtorResult(
            entry.function,
            entry.priority,
            CtorStatus.ELIDED,
            modified_globals=list(updates),
            synthesized_globals=[gv.name for gv in synthesized],
        )
        LOGGER.info(
            "constructor @%s elided: %d globals rewritten, %d heap objects synthesized",
            entry.function,
            len(updates),
            len(synthesized),
        )
        self._emit_event(
            "ctor_elided",
            function=entry.function,
            priority=entry.priority,
            modified=result.modified_globals,
            synthesized=result.synthesized_globals,
        )
        return result

    def _touched_globals(self, session: SandboxSession, ranges: List[Tuple[int, int]]) -> List[GlobalVariable]:
        touched: Dict[str, GlobalVariable] = {}
        ignored = 0
        for start, size in ranges:
            entry = session.address_map.lookup(start)
            if entry is None or not isinstance(entry.owner, GlobalVariable):
                ignored += 1
                continue
            if start + size - entry.start > entry.size:
                raise LayoutInconsistencyError(
                    f"store to 0x{start:X} ({size} bytes) lies outside @{entry.owner.name} ({entry.size} bytes)"
                )
            touched.setdefault(entry.owner.name, entry.owner)
        LOGGER.debug("%d globals touched, %d stores to stack or heap ignored", len(touched), ignored)
        return list(touched.values())
