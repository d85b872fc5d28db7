"""Long-lived configuration: agents, hierarchy, pipelines, presets, persistence."""

from .agents import Agent, AgentRegistry, ApiConfig, PromptSource, ReasoningConfig, SystemPromptSpec
from .hierarchy import AgentPool, Hierarchy, Position, SelectionMode, Team, Tier
from .persistence import JsonFileStore, Persistence
from .pipelines import Action, Phase, Pipeline, PipelineStore
from .presets import PresetManager, SupportsPresetApply, SupportsPresetExport

__all__ = [
    "Agent",
    "AgentRegistry",
    "ApiConfig",
    "PromptSource",
    "ReasoningConfig",
    "SystemPromptSpec",
    "AgentPool",
    "Hierarchy",
    "Position",
    "SelectionMode",
    "Team",
    "Tier",
    "JsonFileStore",
    "Persistence",
    "Action",
    "Phase",
    "Pipeline",
    "PipelineStore",
    "PresetManager",
    "SupportsPresetApply",
    "SupportsPresetExport",
]
