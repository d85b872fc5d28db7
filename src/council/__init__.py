"""The Council - multi-agent pipeline orchestration engine."""

__version__ = "0.1.0"

from .config import Config
from .orchestrator.engine import RunController
from .state.agents import AgentRegistry
from .state.hierarchy import Hierarchy
from .state.pipelines import PipelineStore

__all__ = ["Config", "RunController", "AgentRegistry", "Hierarchy", "PipelineStore"]
