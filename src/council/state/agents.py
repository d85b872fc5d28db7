"""Agent definitions and the agent registry."""

from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from ..errors import HierarchyError, NotFound
from .presets import SupportsPresetApply, SupportsPresetExport


class PromptSource(str, Enum):
    CUSTOM = "custom"
    PRESET = "preset"
    TOKENS = "tokens"


@dataclass
class ApiConfig:
    """Connection and sampling settings for one agent."""

    use_host_connection: bool = True
    endpoint: str = ""
    api_key: str = ""
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 1.0

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ApiConfig":
        return ApiConfig(
            use_host_connection=bool(data.get("use_host_connection", True)),
            endpoint=str(data.get("endpoint", "")),
            api_key=str(data.get("api_key", "")),
            model=str(data.get("model", "")),
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=int(data.get("max_tokens", 2048)),
            top_p=float(data.get("top_p", 1.0)),
        )


class StackItemType(str, Enum):
    TEXT = "text"
    STATIC = "static"
    TOKEN = "token"
    TEMPLATE = "template"
    CONDITIONAL = "conditional"


@dataclass
class PromptStackItem:
    """One block of a built system prompt.

    ``text``/``static`` blocks are used as written, ``token`` blocks resolve a
    single token, ``template`` blocks substitute every token in ``content``,
    and ``conditional`` blocks render ``content`` only when the ``condition``
    token resolves to a non-empty value. ``transforms`` run in order on the
    result (uppercase, lowercase, capitalize, trim, truncate, truncate:N).
    """

    type: StackItemType = StackItemType.TEXT
    content: str = ""
    token: str = ""
    condition: str = ""
    transforms: List[str] = field(default_factory=list)
    enabled: bool = True

    @staticmethod
    def from_dict(data: Any) -> "PromptStackItem":
        if isinstance(data, str):
            return PromptStackItem(content=data)
        return PromptStackItem(
            type=StackItemType(data.get("type", StackItemType.TEXT.value)),
            content=str(data.get("content", "")),
            token=str(data.get("token", "")),
            condition=str(data.get("condition", "")),
            transforms=[str(t) for t in data.get("transforms") or []],
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class SystemPromptSpec:
    """Where an agent's system prompt comes from.

    ``tokens`` prompts are built from ``stack`` when it has items; a bare
    ``builder_tokens`` list is shorthand for one token block per name.
    """

    source: PromptSource = PromptSource.CUSTOM
    custom_text: str = ""
    preset_name: str = ""
    builder_tokens: List[str] = field(default_factory=list)
    stack: List[PromptStackItem] = field(default_factory=list)
    separator: str = "\n\n"

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "SystemPromptSpec":
        return SystemPromptSpec(
            source=PromptSource(data.get("source", PromptSource.CUSTOM.value)),
            custom_text=str(data.get("custom_text", "")),
            preset_name=str(data.get("preset_name", "")),
            builder_tokens=list(data.get("builder_tokens", [])),
            stack=[PromptStackItem.from_dict(item) for item in data.get("stack") or []],
            separator=str(data.get("separator", "\n\n")),
        )


@dataclass
class ReasoningConfig:
    """Delimited "thinking" blocks an agent may emit before its answer."""

    enabled: bool = False
    prefix: str = "<thinking>"
    suffix: str = "</thinking>"
    hide_from_output: bool = True

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "ReasoningConfig":
        return ReasoningConfig(
            enabled=bool(data.get("enabled", False)),
            prefix=str(data.get("prefix", "<thinking>")),
            suffix=str(data.get("suffix", "</thinking>")),
            hide_from_output=bool(data.get("hide_from_output", True)),
        )

    def strip(self, text: str) -> str:
        """Remove reasoning blocks from ``text`` when configured to hide them."""
        if not (self.enabled and self.hide_from_output and self.prefix and self.suffix):
            return text
        result = text
        while True:
            start = result.find(self.prefix)
            if start == -1:
                break
            end = result.find(self.suffix, start + len(self.prefix))
            if end == -1:
                # Unterminated block: drop everything after the prefix.
                result = result[:start]
                break
            result = result[:start] + result[end + len(self.suffix) :]
        return result.strip()


@dataclass
class Agent:
    """An LLM-backed participant."""

    id: str
    name: str
    description: str = ""
    api_config: ApiConfig = field(default_factory=ApiConfig)
    system_prompt: SystemPromptSpec = field(default_factory=SystemPromptSpec)
    reasoning: ReasoningConfig = field(default_factory=ReasoningConfig)
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["system_prompt"]["source"] = self.system_prompt.source.value
        for item in data["system_prompt"]["stack"]:
            item["type"] = item["type"].value
        return data

    @staticmethod
    def from_dict(data: Mapping[str, Any]) -> "Agent":
        if not data.get("id"):
            raise HierarchyError("Agent ID is required")
        if not data.get("name"):
            raise HierarchyError("Agent name is required")
        return Agent(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(data.get("description", "")),
            api_config=ApiConfig.from_dict(data.get("api_config") or {}),
            system_prompt=SystemPromptSpec.from_dict(data.get("system_prompt") or {}),
            reasoning=ReasoningConfig.from_dict(data.get("reasoning") or {}),
            tags=list(data.get("tags", [])),
        )

    def snapshot(self) -> "Agent":
        """Deep copy used while an action consumes the agent."""
        return copy.deepcopy(self)


class AgentRegistry(SupportsPresetExport, SupportsPresetApply):
    """Holds agent definitions and named system-prompt presets."""

    preset_key = "agents"

    def __init__(self) -> None:
        self.agents: Dict[str, Agent] = {}
        self.prompt_presets: Dict[str, str] = {}
        # Set by the hierarchy so deletes can check for references.
        self.reference_check: Optional[Callable[[str], List[str]]] = None

    def create(self, data: Mapping[str, Any] | Agent) -> Agent:
        """Register a new agent."""
        agent = data if isinstance(data, Agent) else Agent.from_dict(data)
        if agent.id in self.agents:
            raise HierarchyError(f"Agent '{agent.id}' already exists")
        self.agents[agent.id] = agent
        return agent

    def get(self, agent_id: str) -> Optional[Agent]:
        return self.agents.get(agent_id)

    def require(self, agent_id: str) -> Agent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise NotFound(f"Agent '{agent_id}' not found")
        return agent

    def list_all(self) -> List[Agent]:
        return list(self.agents.values())

    def update(self, agent_id: str, updates: Mapping[str, Any]) -> Agent:
        """Replace fields of an agent; the id cannot change."""
        current = self.require(agent_id).to_dict()
        for key, value in updates.items():
            if key == "id":
                continue
            if isinstance(value, Mapping) and isinstance(current.get(key), dict):
                current[key].update(value)
            else:
                current[key] = value
        agent = Agent.from_dict(current)
        self.agents[agent_id] = agent
        return agent

    def delete(self, agent_id: str) -> bool:
        if agent_id not in self.agents:
            return False
        if self.reference_check:
            refs = self.reference_check(agent_id)
            if refs:
                raise HierarchyError(
                    f"Agent '{agent_id}' is still referenced by: {', '.join(refs)}"
                )
        del self.agents[agent_id]
        return True

    def duplicate(self, agent_id: str, new_id: Optional[str] = None) -> Agent:
        source = self.require(agent_id).snapshot()
        source.id = new_id or f"{agent_id}_copy"
        source.name = f"{source.name} (Copy)"
        return self.create(source)

    def set_prompt_preset(self, name: str, text: str) -> None:
        self.prompt_presets[name] = text

    def get_prompt_preset(self, name: str) -> Optional[str]:
        return self.prompt_presets.get(name)

    # ------------------------------------------------------------------ #
    # Preset capability
    # ------------------------------------------------------------------ #
    def export_preset(self) -> Dict[str, Any]:
        return {
            "agents": [agent.to_dict() for agent in self.agents.values()],
            "prompt_presets": dict(self.prompt_presets),
        }

    def apply_preset(self, data: Mapping[str, Any], merge: bool = False) -> None:
        if not merge:
            self.agents.clear()
            self.prompt_presets.clear()
        for raw in data.get("agents", []):
            agent = Agent.from_dict(raw)
            if merge and agent.id in self.agents:
                continue
            self.agents[agent.id] = agent
        for name, text in (data.get("prompt_presets") or {}).items():
            if merge and name in self.prompt_presets:
                continue
            self.prompt_presets[name] = text

    def __contains__(self, agent_id: object) -> bool:
        return agent_id in self.agents

    def __iter__(self) -> Iterator[Agent]:
        return iter(self.agents.values())
