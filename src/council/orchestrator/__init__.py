"""Execution engine and its collaborators."""

from .delivery import DeliveryAdapter, DeliveryMode, DeliverySlot, TokenMapping
from .engine import RunController
from .events import EventChannel, EventType, RunEvent
from .gavel import GavelDecision, GavelRequest, GavelResolution
from .participants import ParticipantResolver, ResolvedParticipant
from .run import ActionStatus, Run, RunHandle, RunStatus
from .threads import ThreadManager
from .validator import PipelineValidator, ValidationResult
from .variables import DEFAULT_GLOBALS, NOT_SET, OutputRouter, VariableStore

__all__ = [
    "DeliveryAdapter",
    "DeliveryMode",
    "DeliverySlot",
    "TokenMapping",
    "RunController",
    "EventChannel",
    "EventType",
    "RunEvent",
    "GavelDecision",
    "GavelRequest",
    "GavelResolution",
    "ParticipantResolver",
    "ResolvedParticipant",
    "ActionStatus",
    "Run",
    "RunHandle",
    "RunStatus",
    "ThreadManager",
    "PipelineValidator",
    "ValidationResult",
    "DEFAULT_GLOBALS",
    "NOT_SET",
    "OutputRouter",
    "VariableStore",
]
