"""Execution capability consumed by the orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Protocol

from .module import Function
from .sandbox import SandboxAllocator
from .tracking import StoreRecorder


class OutcomeStatus(enum.Enum):
    COMPLETED = "completed"
    UNSUPPORTED = "unsupported"
    DIVERGED = "diverged"


@dataclass(frozen=True)
class RunOutcome:
    status: OutcomeStatus
    reason: Optional[str] = None

    @classmethod
    def completed(cls) -> "RunOutcome":
        return cls(OutcomeStatus.COMPLETED)

    @classmethod
    def unsupported(cls, reason: str) -> "RunOutcome":
        return cls(OutcomeStatus.UNSUPPORTED, reason)

    @classmethod
    def diverged(cls, reason: str) -> "RunOutcome":
        return cls(OutcomeStatus.DIVERGED, reason)

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.COMPLETED


class ExecutionEngine(Protocol):
    """Runs one function to completion inside a sandbox.

    Every memory write must reach *recorder* before ``run`` returns, and every
    allocation and deallocation must go through *allocator*.
    """

    def run(self, function: Function, recorder: StoreRecorder, allocator: SandboxAllocator) -> RunOutcome:
        ...
