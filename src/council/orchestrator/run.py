"""Run state: status machine, per-phase and per-action progress."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..state.pipelines import LifecycleStage, Pipeline
from .threads import ThreadManager
from .variables import NOT_SET, VariableStore

if TYPE_CHECKING:
    from .engine import RunController


class RunStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.ABORTED)


class ActionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


RESOLVED_ACTION_STATUSES = (ActionStatus.COMPLETED, ActionStatus.FAILED, ActionStatus.SKIPPED)


@dataclass
class ActionState:
    action_id: str
    status: ActionStatus = ActionStatus.PENDING
    attempts: int = 0
    output: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action_id": self.action_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": self.output,
            "error": self.error,
        }


@dataclass
class PhaseState:
    phase_id: str
    stage: Optional[LifecycleStage] = None
    completed: bool = False
    skipped: bool = False
    output: Any = None
    actions: Dict[str, ActionState] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "stage": self.stage.value if self.stage else None,
            "completed": self.completed,
            "skipped": self.skipped,
            "output": None if self.output is NOT_SET else self.output,
            "actions": [a.to_dict() for a in self.actions.values()],
        }


@dataclass
class Run:
    """One live execution of a pipeline; owned by the run controller."""

    run_id: str
    pipeline_id: str
    mode: str
    initial_input: str = ""
    status: RunStatus = RunStatus.IDLE
    current_phase_index: int = 0
    current_action_index: int = 0
    variables: VariableStore = field(default_factory=VariableStore)
    threads: ThreadManager = field(default_factory=ThreadManager)
    phases: List[PhaseState] = field(default_factory=list)
    output: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)
    fired_events: List[str] = field(default_factory=list)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @classmethod
    def create(cls, run_id: str, pipeline: Pipeline, mode: str, initial_input: str, threads: ThreadManager) -> "Run":
        run = cls(
            run_id=run_id,
            pipeline_id=pipeline.id,
            mode=mode,
            initial_input=initial_input,
            variables=VariableStore(pipeline.globals),
            threads=threads,
        )
        for phase in pipeline.phases:
            state = PhaseState(phase_id=phase.id)
            for action in phase.actions:
                state.actions[action.id] = ActionState(action_id=action.id)
            run.phases.append(state)
        return run

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def thread_log(self) -> List[Any]:
        return self.threads.log

    def record_error(self, message: str, phase_id: Optional[str] = None, action_id: Optional[str] = None, **extra: Any) -> None:
        self.errors.append(
            {
                "timestamp": datetime.utcnow().isoformat(),
                "phase_id": phase_id,
                "action_id": action_id,
                "error": message,
                **extra,
            }
        )

    def progress(self) -> Dict[str, Any]:
        actions_total = sum(len(p.actions) for p in self.phases)
        actions_done = sum(
            1 for p in self.phases for a in p.actions.values() if a.status in RESOLVED_ACTION_STATUSES
        )
        phases_done = sum(1 for p in self.phases if p.completed)
        if self.status == RunStatus.COMPLETED:
            percent = 100.0
        elif actions_total:
            percent = round(100.0 * actions_done / actions_total, 1)
        else:
            percent = 0.0
        current = self.phases[self.current_phase_index].phase_id if self.phases and not self.is_terminal else None
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "percent": percent,
            "phases_completed": phases_done,
            "phases_total": len(self.phases),
            "actions_completed": actions_done,
            "actions_total": actions_total,
            "current_phase": current,
            "current_action_index": self.current_action_index,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "mode": self.mode,
            "status": self.status.value,
            "initial_input": self.initial_input,
            "current_phase_index": self.current_phase_index,
            "current_action_index": self.current_action_index,
            "variables": self.variables.to_plain(),
            "phases": [p.to_dict() for p in self.phases],
            "output": self.output,
            "errors": list(self.errors),
            "fired_events": list(self.fired_events),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class RunHandle:
    """Caller-side reference to a started run."""

    def __init__(self, controller: "RunController", run: Run, task: "asyncio.Task[Run]") -> None:
        self._controller = controller
        self.run = run
        self.task = task

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def status(self) -> RunStatus:
        return self.run.status

    def pause(self) -> RunStatus:
        return self._controller.pause(self.run_id)

    def resume(self, resolution: Optional[str] = None, text: Optional[str] = None) -> RunStatus:
        return self._controller.resume(self.run_id, resolution, text)

    def abort(self) -> RunStatus:
        return self._controller.abort(self.run_id)

    async def wait(self) -> Run:
        """Wait for the run to reach a terminal status."""
        try:
            await asyncio.shield(self.task)
        except asyncio.CancelledError:
            if not self.run.is_terminal:
                raise
        return self.run
