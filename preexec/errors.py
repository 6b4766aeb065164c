"""Error taxonomy for compile-time pre-execution."""

from __future__ import annotations

from typing import Optional


class PreExecError(Exception):
    """Base class for every pre-execution failure."""

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class IRParseError(PreExecError):
    """Raised when the textual module cannot be read."""


# ---------------------------------------------------------------------------
# Recoverable per constructor


class UnsupportedOperation(PreExecError):
    """The constructor does something the sandbox cannot emulate safely."""


class SandboxFault(UnsupportedOperation):
    """Invalid access to sandbox memory, or the sandbox ran out of addresses."""

    def __init__(self, message: str, *, address: Optional[int] = None, code: Optional[str] = "fault") -> None:
        super().__init__(message, code=code)
        self.address = address


class ExecutionDiverged(UnsupportedOperation):
    """The constructor exceeded its step or call-depth budget."""


# ---------------------------------------------------------------------------
# Recoverable per global


class ReconstructionError(PreExecError):
    """A touched global could not be turned back into a constant."""


class UnresolvablePointerError(ReconstructionError):
    """A stored pointer does not name any object the module can refer to."""

    def __init__(self, message: str, *, address: Optional[int] = None) -> None:
        super().__init__(message, code="unresolvable-pointer")
        self.address = address


class LayoutInconsistencyError(ReconstructionError):
    """Memory contents do not fit the declared type's layout."""

    def __init__(self, message: str, *, code: Optional[str] = "layout") -> None:
        super().__init__(message, code=code)


class AllocationSizeMismatch(LayoutInconsistencyError):
    """A typed allocation record disagrees with the size of its region."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="allocation-size")


# ---------------------------------------------------------------------------
# Not recoverable


class InternalConsistencyError(PreExecError):
    """Bookkeeping invariant violated; the whole pass must be abandoned."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="internal")
