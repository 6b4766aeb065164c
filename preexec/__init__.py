"""
preexec - pre-execution of static constructors for textual IR modules.

Each constructor listed in ``@llvm.global_ctors`` is run inside a sandbox
whose memory mirrors the module's globals.  When every global it touched
can be turned back into a compile-time constant, the new initializers are
written into the module and the constructor entry is dropped.  Layout:

    irtypes.py / layout.py  → type shapes and target size/alignment rules
    constants.py / module.py → compile-time constants and the module model
    llparse.py              → textual IR reader
    address_map.py          → sandbox address bookkeeping
    sandbox.py / tracking.py → sandbox memory, allocator, store log, heap types
    reconstruct.py          → memory → constant reconstruction
    interp.py / engine.py   → reference execution engine and its protocol
    orchestrator.py         → per-module driver
"""

from .errors import (  # noqa: F401
    AllocationSizeMismatch,
    ExecutionDiverged,
    InternalConsistencyError,
    IRParseError,
    LayoutInconsistencyError,
    PreExecError,
    ReconstructionError,
    SandboxFault,
    UnresolvablePointerError,
    UnsupportedOperation,
)
from .layout import DataLayout  # noqa: F401
from .module import CtorEntry, Function, GlobalVariable, Module  # noqa: F401
from .llparse import parse_constant, parse_module, parse_type  # noqa: F401
from .address_map import AddressMap, AddressMapEntry  # noqa: F401
from .tracking import StoreRecorder, TypedAllocation, TypedAllocationTracker  # noqa: F401
from .sandbox import SandboxAllocator, SandboxMemory, SandboxSession  # noqa: F401
from .reconstruct import ConstantReconstructor  # noqa: F401
from .engine import ExecutionEngine, OutcomeStatus, RunOutcome  # noqa: F401
from .interp import IRInterpreter  # noqa: F401
from .orchestrator import (  # noqa: F401
    CtorResult,
    CtorStatus,
    PreExecuteConfig,
    PreExecuteReport,
    PreExecutor,
    SessionPhase,
)

__all__ = [
    "PreExecError",
    "IRParseError",
    "UnsupportedOperation",
    "SandboxFault",
    "ExecutionDiverged",
    "ReconstructionError",
    "UnresolvablePointerError",
    "LayoutInconsistencyError",
    "AllocationSizeMismatch",
    "InternalConsistencyError",
    "DataLayout",
    "CtorEntry",
    "Function",
    "GlobalVariable",
    "Module",
    "parse_module",
    "parse_type",
    "parse_constant",
    "AddressMap",
    "AddressMapEntry",
    "StoreRecorder",
    "TypedAllocation",
    "TypedAllocationTracker",
    "SandboxAllocator",
    "SandboxMemory",
    "SandboxSession",
    "ConstantReconstructor",
    "ExecutionEngine",
    "OutcomeStatus",
    "RunOutcome",
    "IRInterpreter",
    "CtorResult",
    "CtorStatus",
    "PreExecuteConfig",
    "PreExecuteReport",
    "PreExecutor",
    "SessionPhase",
]

__version__ = "0.1.0"
