"""Contracts for the external systems the engine talks to."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, runtime_checkable

from ..models.base import ChatMessage
from ..state.agents import Agent


@runtime_checkable
class HostCollaborator(Protocol):
    """The chat host that receives delivered output."""

    async def append_message(self, text: str, metadata: Mapping[str, Any]) -> None: ...

    async def provide_generation_prompt(self, text: str) -> None: ...


@runtime_checkable
class ContentRetriever(Protocol):
    """Runs a curation (CRUD/RAG) pipeline and returns its text result."""

    async def execute_pipeline(self, pipeline_id: str, query_context: str) -> str: ...


@runtime_checkable
class AgentInvoker(Protocol):
    """Calls an LLM on behalf of an agent; failures raise AgentInvocationError."""

    async def invoke(self, agent: Agent, system_prompt: str, messages: Sequence[ChatMessage]) -> str: ...


@runtime_checkable
class PersistenceStore(Protocol):
    def save(self, key: str, data: Mapping[str, Any], scope: Optional[str] = None) -> None: ...

    def load(self, key: str, options: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]: ...
