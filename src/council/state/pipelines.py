"""Pipeline definitions: phases, actions, and the pipeline store."""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..errors import NotFound
from .presets import SupportsPresetApply, SupportsPresetExport

logger = logging.getLogger("council.pipelines")

PIPELINE_SCOPE = "pipelines"


class ActionType(str, Enum):
    STANDARD = "standard"
    CRUD_PIPELINE = "crud_pipeline"
    RAG_PIPELINE = "rag_pipeline"
    DELIBERATIVE_RAG = "deliberative_rag"
    USER_GAVEL = "user_gavel"
    SYSTEM = "system"
    CHARACTER_WORKSHOP = "character_workshop"


# Action types that must name at least one participant.
AGENT_ACTION_TYPES = (ActionType.STANDARD, ActionType.CHARACTER_WORKSHOP)
RETRIEVAL_ACTION_TYPES = (ActionType.CRUD_PIPELINE, ActionType.RAG_PIPELINE, ActionType.DELIBERATIVE_RAG)


class ExecutionMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


class TriggerType(str, Enum):
    SEQUENTIAL = "sequential"
    AWAIT = "await"
    ON = "on"
    IMMEDIATE = "immediate"


class Consolidation(str, Enum):
    LAST_ACTION = "last_action"
    SYNTHESIZE = "synthesize"
    USER_GAVEL = "user_gavel"
    MERGE = "merge"
    DESIGNATED = "designated"


class LifecycleStage(str, Enum):
    START = "START"
    BEFORE_ACTIONS = "BEFORE_ACTIONS"
    IN_PROGRESS = "IN_PROGRESS"
    AFTER_ACTIONS = "AFTER_ACTIONS"
    END = "END"
    RESPOND = "RESPOND"


class ParticipantKind(str, Enum):
    EXPLICIT = "explicit"
    TEAM = "team"
    POOL = "pool"
    DYNAMIC = "dynamic"
    ALL_EXECUTIVES = "all_executives"


class Orchestration(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    CONSENSUS = "consensus"


class InputSource(str, Enum):
    PHASE_INPUT = "phase_input"
    PREVIOUS_ACTION = "previous_action"
    RUN_INPUT = "run_input"
    VARIABLE = "variable"


class VariableScope(str, Enum):
    PHASE = "phase"
    GLOBAL = "global"


def _plain(value: Any) -> Any:
    """Convert enums (including dict keys) to their values for serialization."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {_plain(k): _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


@dataclass
class ParticipantSpec:
    """Abstract description of who takes part in an action.

    ``ids`` holds agent or position ids for ``explicit``; ``director`` and
    ``candidates`` (also agent or position ids) drive ``dynamic`` selection.
    """

    kind: ParticipantKind = ParticipantKind.EXPLICIT
    ids: List[str] = field(default_factory=list)
    team_ids: List[str] = field(default_factory=list)
    pool_id: Optional[str] = None
    director: Optional[str] = None
    candidates: List[str] = field(default_factory=list)
    min_select: int = 1
    max_select: Optional[int] = None
    orchestration: Orchestration = Orchestration.SEQUENTIAL

    @property
    def is_empty(self) -> bool:
        if self.kind == ParticipantKind.EXPLICIT:
            return not self.ids
        if self.kind == ParticipantKind.TEAM:
            return not self.team_ids
        if self.kind == ParticipantKind.POOL:
            return not self.pool_id
        if self.kind == ParticipantKind.DYNAMIC:
            return not (self.director and self.candidates)
        return False

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ParticipantSpec":
        max_select = data.get("max_select")
        return ParticipantSpec(
            kind=ParticipantKind(data.get("kind", ParticipantKind.EXPLICIT.value)),
            ids=list(data.get("ids") or []),
            team_ids=list(data.get("team_ids") or []),
            pool_id=data.get("pool_id"),
            director=data.get("director"),
            candidates=list(data.get("candidates") or []),
            min_select=int(data.get("min_select", 1)),
            max_select=None if max_select is None else int(max_select),
            orchestration=Orchestration(data.get("orchestration", Orchestration.SEQUENTIAL.value)),
        )


@dataclass
class RetryPolicy:
    count: int = 0
    delay_ms: Optional[int] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "RetryPolicy":
        delay = data.get("delay_ms")
        return RetryPolicy(count=max(0, int(data.get("count", 0))), delay_ms=None if delay is None else int(delay))


@dataclass
class InputSpec:
    source: InputSource = InputSource.PHASE_INPUT
    variable: str = ""

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "InputSpec":
        return InputSpec(
            source=InputSource(data.get("source", InputSource.PHASE_INPUT.value)),
            variable=str(data.get("variable", "")),
        )


@dataclass
class OutputSpec:
    variable: str = ""
    scope: VariableScope = VariableScope.PHASE
    append: bool = False

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "OutputSpec":
        return OutputSpec(
            variable=str(data.get("variable", "")),
            scope=VariableScope(data.get("scope", VariableScope.PHASE.value)),
            append=bool(data.get("append", False)),
        )


@dataclass
class RetrievalConfig:
    pipeline_id: str = ""
    query_template: str = "{{input}}"

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "RetrievalConfig":
        return RetrievalConfig(
            pipeline_id=str(data.get("pipeline_id", "")),
            query_template=str(data.get("query_template", "{{input}}")),
        )


@dataclass
class GavelConfig:
    prompt: str = "Review the output before the pipeline continues."
    can_skip: bool = True

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "GavelConfig":
        return GavelConfig(
            prompt=str(data.get("prompt", GavelConfig.prompt)),
            can_skip=bool(data.get("can_skip", True)),
        )


@dataclass
class ThreadConfig:
    """Settings for one phase, team, or action thread."""

    enabled: bool = True
    first_message: str = ""
    max_messages: Optional[int] = None

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ThreadConfig":
        max_messages = data.get("max_messages")
        return ThreadConfig(
            enabled=bool(data.get("enabled", True)),
            first_message=str(data.get("first_message", "")),
            max_messages=None if max_messages is None else int(max_messages),
        )


@dataclass
class Action:
    """Atomic unit of agent or tool work inside a phase."""

    id: str
    name: str = ""
    type: ActionType = ActionType.STANDARD
    execution_mode: ExecutionMode = ExecutionMode.SYNC
    trigger_type: TriggerType = TriggerType.SEQUENTIAL
    awaits: List[str] = field(default_factory=list)
    on_event: str = ""
    emits: List[str] = field(default_factory=list)
    participants: ParticipantSpec = field(default_factory=ParticipantSpec)
    prompt_template: str = "{{input}}"
    input: InputSpec = field(default_factory=InputSpec)
    output: OutputSpec = field(default_factory=OutputSpec)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    gavel: GavelConfig = field(default_factory=GavelConfig)
    context_thread: str = ""
    action_thread: ThreadConfig = field(default_factory=ThreadConfig)
    team_task_threads: Dict[str, ThreadConfig] = field(default_factory=dict)
    timeout: Optional[float] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    def to_dict(self) -> Dict[str, Any]:
        return _plain(asdict(self))

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Action":
        if not data.get("id"):
            raise ValueError("Action ID is required")
        return Action(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            type=ActionType(data.get("type", ActionType.STANDARD.value)),
            execution_mode=ExecutionMode(data.get("execution_mode", ExecutionMode.SYNC.value)),
            trigger_type=TriggerType(data.get("trigger_type", TriggerType.SEQUENTIAL.value)),
            awaits=list(data.get("awaits") or []),
            on_event=str(data.get("on_event", "")),
            emits=list(data.get("emits") or []),
            participants=ParticipantSpec.from_dict(data.get("participants") or {}),
            prompt_template=str(data.get("prompt_template", "{{input}}")),
            input=InputSpec.from_dict(data.get("input") or {}),
            output=OutputSpec.from_dict(data.get("output") or {}),
            retrieval=RetrievalConfig.from_dict(data.get("retrieval") or {}),
            gavel=GavelConfig.from_dict(data.get("gavel") or {}),
            context_thread=str(data.get("context_thread", "")),
            action_thread=ThreadConfig.from_dict(data.get("action_thread") or {}),
            team_task_threads={
                str(team_id): ThreadConfig.from_dict(config or {})
                for team_id, config in (data.get("team_task_threads") or {}).items()
            },
            timeout=_opt_float(data.get("timeout")),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy") or {}),
        )


@dataclass
class Phase:
    """Ordered group of actions with lifecycle hooks and output consolidation."""

    id: str
    name: str = ""
    actions: List[Action] = field(default_factory=list)
    lifecycle_hooks: Dict[LifecycleStage, List[str]] = field(default_factory=dict)
    consolidation: Consolidation = Consolidation.LAST_ACTION
    consolidation_agent: str = ""
    designated_action_id: str = ""
    merge_separator: str = "\n\n"
    output_variable: str = ""
    variables: Dict[str, Any] = field(default_factory=dict)
    promote: List[str] = field(default_factory=list)
    continue_on_action_error: bool = False
    timeout: Optional[float] = None
    gavel: GavelConfig = field(default_factory=GavelConfig)
    phase_thread: ThreadConfig = field(default_factory=ThreadConfig)
    team_threads: Dict[str, ThreadConfig] = field(default_factory=dict)

    def action(self, action_id: str) -> Optional[Action]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None

    def hooks(self, stage: LifecycleStage) -> List[str]:
        return list(self.lifecycle_hooks.get(stage, []))

    def to_dict(self) -> Dict[str, Any]:
        data = _plain(asdict(self))
        data["actions"] = [a.to_dict() for a in self.actions]
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Phase":
        if not data.get("id"):
            raise ValueError("Phase ID is required")
        hooks = {
            LifecycleStage(str(stage).upper()): list(events or [])
            for stage, events in (data.get("lifecycle_hooks") or {}).items()
        }
        return Phase(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            actions=[Action.from_dict(a) for a in data.get("actions") or []],
            lifecycle_hooks=hooks,
            consolidation=Consolidation(data.get("consolidation", Consolidation.LAST_ACTION.value)),
            consolidation_agent=str(data.get("consolidation_agent", "")),
            designated_action_id=str(data.get("designated_action_id", "")),
            merge_separator=str(data.get("merge_separator", "\n\n")),
            output_variable=str(data.get("output_variable", "")),
            variables=dict(data.get("variables") or {}),
            promote=list(data.get("promote") or []),
            continue_on_action_error=bool(data.get("continue_on_action_error", False)),
            timeout=_opt_float(data.get("timeout")),
            gavel=GavelConfig.from_dict(data.get("gavel") or {}),
            phase_thread=ThreadConfig.from_dict(data.get("phase_thread") or {}),
            team_threads={
                str(team_id): ThreadConfig.from_dict(config or {})
                for team_id, config in (data.get("team_threads") or {}).items()
            },
        )


@dataclass
class ThreadsConfig:
    enabled: bool = True
    max_messages: Optional[int] = None
    context_format: str = ""

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ThreadsConfig":
        max_messages = data.get("max_messages")
        return ThreadsConfig(
            enabled=bool(data.get("enabled", True)),
            max_messages=None if max_messages is None else int(max_messages),
            context_format=str(data.get("context_format", "")),
        )


@dataclass
class Pipeline:
    """Reusable template a run is created from."""

    id: str
    name: str = ""
    description: str = ""
    version: str = "1.0.0"
    phases: List[Phase] = field(default_factory=list)
    globals: Dict[str, Any] = field(default_factory=dict)
    threads_config: ThreadsConfig = field(default_factory=ThreadsConfig)
    timeout: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def phase(self, phase_id: str) -> Optional[Phase]:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def all_actions(self) -> List[Action]:
        return [action for phase in self.phases for action in phase.actions]

    def to_dict(self) -> Dict[str, Any]:
        data = _plain(asdict(self))
        data["phases"] = [p.to_dict() for p in self.phases]
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Pipeline":
        if not data.get("id"):
            raise ValueError("Pipeline ID is required")
        return Pipeline(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            description=str(data.get("description", "")),
            version=str(data.get("version", "1.0.0")),
            phases=[Phase.from_dict(p) for p in data.get("phases") or []],
            globals=dict(data.get("globals") or {}),
            threads_config=ThreadsConfig.from_dict(data.get("threads_config") or {}),
            timeout=_opt_float(data.get("timeout")),
            metadata=dict(data.get("metadata") or {}),
        )


class PipelineStore(SupportsPresetExport, SupportsPresetApply):
    """CRUD over pipeline templates, with optional persistence."""

    preset_key = "pipelines"

    def __init__(self, store: Optional[Any] = None) -> None:
        self.pipelines: Dict[str, Pipeline] = {}
        self.store = store

    def create(self, data: Mapping[str, Any] | Pipeline) -> Pipeline:
        pipeline = data if isinstance(data, Pipeline) else Pipeline.from_dict(data)
        if pipeline.id in self.pipelines:
            raise ValueError(f"Pipeline '{pipeline.id}' already exists")
        self.pipelines[pipeline.id] = pipeline
        return pipeline

    def get(self, pipeline_id: str) -> Optional[Pipeline]:
        return self.pipelines.get(pipeline_id)

    def require(self, pipeline_id: str) -> Pipeline:
        pipeline = self.pipelines.get(pipeline_id)
        if pipeline is None:
            raise NotFound(f"Pipeline '{pipeline_id}' not found")
        return pipeline

    def list_all(self) -> List[Pipeline]:
        return list(self.pipelines.values())

    def update(self, pipeline_id: str, updates: Mapping[str, Any]) -> Pipeline:
        current = self.require(pipeline_id).to_dict()
        current.update({k: v for k, v in updates.items() if k != "id"})
        pipeline = Pipeline.from_dict(current)
        self.pipelines[pipeline_id] = pipeline
        return pipeline

    def delete(self, pipeline_id: str) -> bool:
        return self.pipelines.pop(pipeline_id, None) is not None

    def clone(self, pipeline_id: str, new_id: Optional[str] = None) -> Pipeline:
        pipeline = copy.deepcopy(self.require(pipeline_id))
        pipeline.id = new_id or f"{pipeline_id}_copy"
        pipeline.name = f"{pipeline.name} (Copy)"
        return self.create(pipeline)

    # ------------------------------------------------------------------ #
    # Import / export
    # ------------------------------------------------------------------ #
    def export_json(self, pipeline_id: str) -> str:
        return json.dumps(self.require(pipeline_id).to_dict(), indent=2)

    def import_json(self, text: str, overwrite: bool = False) -> Pipeline:
        pipeline = Pipeline.from_dict(json.loads(text))
        if overwrite:
            self.pipelines[pipeline.id] = pipeline
            return pipeline
        return self.create(pipeline)

    def save(self, pipeline_id: str) -> None:
        """Persist one pipeline through the store collaborator."""
        if self.store is None:
            raise RuntimeError("No persistence store configured")
        self.store.save(pipeline_id, self.require(pipeline_id).to_dict(), PIPELINE_SCOPE)

    def load(self, pipeline_id: str) -> Pipeline:
        if self.store is None:
            raise RuntimeError("No persistence store configured")
        data = self.store.load(pipeline_id, {"scope": PIPELINE_SCOPE})
        if not data:
            raise NotFound(f"Pipeline '{pipeline_id}' not found in store")
        pipeline = Pipeline.from_dict(data)
        self.pipelines[pipeline.id] = pipeline
        logger.debug("Loaded pipeline %s", pipeline.id)
        return pipeline

    # ------------------------------------------------------------------ #
    # Preset capability
    # ------------------------------------------------------------------ #
    def export_preset(self) -> Dict[str, Any]:
        return {"pipelines": [p.to_dict() for p in self.pipelines.values()]}

    def apply_preset(self, data: Mapping[str, Any], merge: bool = False) -> None:
        if not merge:
            self.pipelines.clear()
        for raw in data.get("pipelines", []):
            pipeline = Pipeline.from_dict(raw)
            if merge and pipeline.id in self.pipelines:
                continue
            self.pipelines[pipeline.id] = pipeline
