"""Exception taxonomy for the orchestration core."""

from __future__ import annotations

from typing import List, Optional, Sequence


class CouncilError(Exception):
    """Base exception for orchestration errors."""


class NotFound(CouncilError, KeyError):
    """Raised when a pipeline, run, agent, or other entity is unknown."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class AlreadyRunning(CouncilError):
    """Raised when a run is requested while another run is active."""


class ValidationError(CouncilError):
    """Raised when a pipeline fails structural validation."""

    def __init__(self, errors: Sequence[str], warnings: Sequence[str] = ()) -> None:
        self.errors: List[str] = list(errors)
        self.warnings: List[str] = list(warnings)
        super().__init__("Pipeline validation failed: " + "; ".join(self.errors))


class HierarchyError(CouncilError):
    """Raised when an agent/position/team/pool invariant would be violated."""


class UnresolvedParticipant(CouncilError):
    """Raised when a participant spec resolves to no concrete agent."""


class AgentInvocationError(CouncilError):
    """Raised when the external agent call fails."""


class ContentRetrievalError(CouncilError):
    """Raised when the content-retrieval collaborator fails."""


class TimeoutExceeded(CouncilError, TimeoutError):
    """Raised when an action, phase, or pipeline time budget is exceeded."""

    def __init__(self, level: str, name: str, seconds: Optional[float]) -> None:
        self.level = level
        self.name = name
        self.seconds = seconds
        super().__init__(f"{level.capitalize()} '{name}' timed out after {seconds}s")


class InvalidGavelResolution(CouncilError):
    """Raised for an unrecognized or disallowed gavel resolution."""


class ModeLocked(CouncilError):
    """Raised when the delivery mode is changed during an active run."""


class InvalidRunState(CouncilError):
    """Raised when a run operation is not valid from the current status."""


class RunAborted(CouncilError):
    """Signals that the active run was aborted; observed at suspension points."""


__all__ = [
    "CouncilError",
    "NotFound",
    "AlreadyRunning",
    "ValidationError",
    "HierarchyError",
    "UnresolvedParticipant",
    "AgentInvocationError",
    "ContentRetrievalError",
    "TimeoutExceeded",
    "InvalidGavelResolution",
    "ModeLocked",
    "InvalidRunState",
    "RunAborted",
]
