import asyncio
import os

import pytest

from council.config import ConfigLoader
from council.errors import ContentRetrievalError
from council.orchestrator.engine import RunController
from council.state.agents import AgentRegistry
from council.state.hierarchy import Hierarchy
from council.state.pipelines import PipelineStore


class ScriptedInvoker:
    """Agent invoker stand-in.

    ``replies`` maps agent id to a list of strings or exceptions consumed in
    order; once exhausted, the agent echoes the last user message.
    """

    def __init__(self, replies=None, delays=None):
        self.replies = {k: list(v) for k, v in (replies or {}).items()}
        self.delays = delays or {}
        self.calls = []

    async def invoke(self, agent, system_prompt, messages):
        self.calls.append(
            {"agent": agent.id, "system": system_prompt, "messages": [m.content for m in messages]}
        )
        delay = self.delays.get(agent.id)
        if delay:
            await asyncio.sleep(delay)
        script = self.replies.get(agent.id)
        if script:
            item = script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return f"{agent.id}: {messages[-1].content}"

    def agents_called(self):
        return [c["agent"] for c in self.calls]


class RecordingHost:
    def __init__(self, fail=False):
        self.messages = []
        self.prompts = []
        self.fail = fail

    async def append_message(self, text, metadata):
        if self.fail:
            raise RuntimeError("host unavailable")
        self.messages.append((text, dict(metadata)))

    async def provide_generation_prompt(self, text):
        self.prompts.append(text)


class DictRetriever:
    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    async def execute_pipeline(self, pipeline_id, query_context):
        self.calls.append((pipeline_id, query_context))
        if pipeline_id not in self.results:
            raise ContentRetrievalError(f"unknown pipeline {pipeline_id}")
        return self.results[pipeline_id]


@pytest.fixture
def config(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith("COUNCIL_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("COUNCIL_ORCHESTRATION__RETRY_DELAY_MS", "0")
    return ConfigLoader(global_dir=tmp_path / "config", project_dir=tmp_path / "project")


@pytest.fixture
def registry():
    registry = AgentRegistry()
    for agent_id, name in [
        ("writer", "Writer"),
        ("editor", "Editor"),
        ("agent_a", "Agent A"),
        ("agent_b", "Agent B"),
        ("director", "Director"),
    ]:
        registry.create(
            {
                "id": agent_id,
                "name": name,
                "system_prompt": {"source": "custom", "custom_text": f"You are {name}."},
            }
        )
    return registry


@pytest.fixture
def hierarchy(registry):
    return Hierarchy(registry)


@pytest.fixture
def pipelines():
    return PipelineStore()


@pytest.fixture
def invoker():
    return ScriptedInvoker()


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def retriever():
    return DictRetriever({"lore": "Dragons hoard gold.\n\nKnights hunt dragons."})


@pytest.fixture
def controller(registry, hierarchy, pipelines, invoker, host, retriever, config):
    return RunController(
        registry,
        hierarchy,
        pipelines,
        invoker=invoker,
        host=host,
        retriever=retriever,
        config=config,
    )


@pytest.fixture
def wait_status():
    async def _wait(handle, status, timeout=2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while handle.status != status:
            if loop.time() > deadline:
                raise AssertionError(f"run stayed {handle.status.value}, expected {status.value}")
            await asyncio.sleep(0.001)

    return _wait
