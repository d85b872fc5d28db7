"""OpenAI-compatible agent invocation client."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Sequence

import httpx

from ..errors import AgentInvocationError
from ..state.agents import Agent
from .base import ChatMessage, ChatRequest, ChatResponse, Usage

logger = logging.getLogger("council.models")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class AgentClient:
    """Invokes an agent against a Chat Completions endpoint.

    Agents with ``use_host_connection`` are delegated to ``host_invoker`` (the
    host application's own LLM connection) when one is supplied; otherwise the
    request goes to the agent's endpoint, falling back to ``llm.base_url``.
    Any transport or response failure surfaces as ``AgentInvocationError``.
    """

    def __init__(
        self,
        config: Optional[Any] = None,
        host_invoker: Optional[Any] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self.host_invoker = host_invoker
        self.transport = transport
        self.base_url = str(self._config_value("llm.base_url", DEFAULT_BASE_URL)).rstrip("/")
        self.default_model = str(self._config_value("llm.model", "gpt-4o-mini"))
        self.timeout = float(self._config_value("llm.timeout_seconds", 60.0))

    async def invoke(self, agent: Agent, system_prompt: str, messages: Sequence[ChatMessage]) -> str:
        """Return the agent's reply text with hidden reasoning removed."""
        if agent.api_config.use_host_connection and self.host_invoker is not None:
            try:
                text = await self.host_invoker.invoke(agent, system_prompt, messages)
            except AgentInvocationError:
                raise
            except Exception as exc:
                raise AgentInvocationError(f"Host invocation failed for {agent.id}: {exc}") from exc
        else:
            response = await self.chat(agent, self._build_request(agent, system_prompt, messages))
            text = response.content
        return agent.reasoning.strip(text or "")

    async def chat(self, agent: Agent, request: ChatRequest) -> ChatResponse:
        api_key = self._api_key(agent)
        if not api_key:
            raise AgentInvocationError(f"No API key configured for agent {agent.id}")
        base_url = (agent.api_config.endpoint or self.base_url).rstrip("/")
        url = f"{base_url}/chat/completions"

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(url, headers=self._headers(api_key), json=self._build_payload(request))
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as exc:
                raise AgentInvocationError(f"Request for agent {agent.id} failed: {exc}") from exc

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        logger.debug("Agent %s answered via %s", agent.id, url)
        return ChatResponse(
            content=message.get("content") or "",
            model=data.get("model") or request.model,
            usage=self._parse_usage(data.get("usage")),
            finish_reason=choice.get("finish_reason"),
            metadata={"id": data.get("id")},
        )

    def _build_request(self, agent: Agent, system_prompt: str, messages: Sequence[ChatMessage]) -> ChatRequest:
        chat_messages = []
        if system_prompt:
            chat_messages.append(ChatMessage(role="system", content=system_prompt))
        chat_messages.extend(messages)
        cfg = agent.api_config
        return ChatRequest(
            messages=chat_messages,
            model=cfg.model or self.default_model,
            temperature=cfg.temperature,
            max_tokens=cfg.max_tokens,
            top_p=cfg.top_p,
        )

    def _build_payload(self, request: ChatRequest) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "model": request.model,
            "messages": [m.to_dict() for m in request.messages],
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        if request.top_p is not None:
            payload["top_p"] = request.top_p
        return payload

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _api_key(self, agent: Agent) -> Optional[str]:
        if agent.api_config.api_key:
            return agent.api_config.api_key
        if self.config is not None:
            key = self.config.get_credential("llm", "api_key")
            if key:
                return key
        return os.environ.get("COUNCIL_API_KEY")

    def _parse_usage(self, payload: Optional[Dict[str, Any]]) -> Optional[Usage]:
        if not payload:
            return None
        prompt = int(payload.get("prompt_tokens") or 0)
        completion = int(payload.get("completion_tokens") or 0)
        total = int(payload.get("total_tokens") or prompt + completion)
        return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)

    def _config_value(self, key: str, default: Any) -> Any:
        if self.config is None:
            return default
        return self.config.get(key, default)
