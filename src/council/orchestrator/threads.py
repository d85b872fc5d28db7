"""Thread-scoped conversation logs for a run."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from ..models.base import ChatMessage
from ..state.pipelines import Phase, ThreadConfig


class ThreadType(str, Enum):
    PHASE = "phase"
    TEAM = "team"
    ACTION = "action"
    TEAM_TASK = "team_task"
    CUSTOM = "custom"


def phase_thread_id(phase_id: str) -> str:
    return f"phase:{phase_id}"


def team_thread_id(phase_id: str, team_id: str) -> str:
    return f"team:{phase_id}:{team_id}"


def team_task_thread_id(action_id: str, team_id: str) -> str:
    return f"task:{action_id}:{team_id}"


@dataclass
class ThreadMessage:
    thread_id: str
    role: str
    content: str
    name: Optional[str] = None
    agent_id: Optional[str] = None
    phase_id: Optional[str] = None
    action_id: Optional[str] = None
    is_first: bool = False
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Thread:
    id: str
    type: ThreadType = ThreadType.CUSTOM
    phase_id: Optional[str] = None
    team_id: Optional[str] = None
    action_id: Optional[str] = None
    max_messages: int = 100
    messages: List[ThreadMessage] = field(default_factory=list)

    def append(self, message: ThreadMessage) -> None:
        self.messages.append(message)
        overflow = len(self.messages) - self.max_messages
        if self.max_messages <= 0 or overflow <= 0:
            return
        # A first message survives trimming.
        start = 1 if self.messages[0].is_first else 0
        del self.messages[start : start + overflow]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "phase_id": self.phase_id,
            "team_id": self.team_id,
            "action_id": self.action_id,
            "messages": [m.to_dict() for m in self.messages],
        }


class ThreadManager:
    """Typed conversation threads plus the run-wide log.

    Each thread keeps at most ``max_messages`` messages; the run-wide log
    keeps everything for export. Action threads are keyed by action id so
    ``context_thread`` can name an action directly.
    """

    def __init__(self, max_messages: int = 100, context_format: str = "dialogue") -> None:
        self.max_messages = max_messages
        self.context_format = context_format
        self.threads: Dict[str, Thread] = {}
        self.disabled: Set[str] = set()
        self.log: List[ThreadMessage] = []

    def create(
        self,
        thread_id: str,
        type: ThreadType = ThreadType.CUSTOM,
        phase_id: Optional[str] = None,
        team_id: Optional[str] = None,
        action_id: Optional[str] = None,
        first_message: str = "",
        max_messages: Optional[int] = None,
    ) -> Thread:
        if thread_id in self.threads:
            raise ValueError(f"Thread '{thread_id}' already exists")
        thread = Thread(
            id=thread_id,
            type=type,
            phase_id=phase_id,
            team_id=team_id,
            action_id=action_id,
            max_messages=max_messages or self.max_messages,
        )
        if first_message:
            thread.append(
                ThreadMessage(thread_id=thread_id, role="system", content=first_message, phase_id=phase_id,
                              action_id=action_id, is_first=True)
            )
        self.threads[thread_id] = thread
        return thread

    def open_phase(self, phase: Phase, render: Optional[Callable[[str], str]] = None) -> None:
        """Create the configured phase, team, action, and team task threads of ``phase``.

        ``render`` resolves tokens in first messages once the phase's
        variables are in scope.
        """
        self._create_configured(phase_thread_id(phase.id), ThreadType.PHASE, phase.phase_thread, phase.id, render)
        for team_id, config in phase.team_threads.items():
            self._create_configured(
                team_thread_id(phase.id, team_id), ThreadType.TEAM, config, phase.id, render, team_id=team_id
            )
        for action in phase.actions:
            self._create_configured(
                action.id, ThreadType.ACTION, action.action_thread, phase.id, render, action_id=action.id
            )
            for team_id, config in action.team_task_threads.items():
                self._create_configured(
                    team_task_thread_id(action.id, team_id),
                    ThreadType.TEAM_TASK,
                    config,
                    phase.id,
                    render,
                    team_id=team_id,
                    action_id=action.id,
                )

    def _create_configured(
        self,
        thread_id: str,
        type: ThreadType,
        config: ThreadConfig,
        phase_id: str,
        render: Optional[Callable[[str], str]],
        team_id: Optional[str] = None,
        action_id: Optional[str] = None,
    ) -> None:
        if not config.enabled:
            self.disabled.add(thread_id)
            return
        if thread_id in self.threads:
            return
        first_message = config.first_message
        if first_message and render is not None:
            first_message = render(first_message)
        self.create(
            thread_id,
            type,
            phase_id=phase_id,
            team_id=team_id,
            action_id=action_id,
            first_message=first_message,
            max_messages=config.max_messages,
        )

    def has(self, thread_id: str) -> bool:
        return thread_id in self.threads

    def add(
        self,
        thread_id: str,
        role: str,
        content: str,
        name: Optional[str] = None,
        phase_id: Optional[str] = None,
        action_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        also: Sequence[str] = (),
    ) -> ThreadMessage:
        """Record a message once in the run-wide log and in each enabled thread.

        ``also`` names further threads that share the message, such as the
        phase or team thread of an action reply.
        """
        message = ThreadMessage(
            thread_id=thread_id,
            role=role,
            content=content,
            name=name,
            agent_id=agent_id,
            phase_id=phase_id,
            action_id=action_id,
        )
        for target in [thread_id, *also]:
            if target in self.disabled:
                continue
            thread = self.threads.get(target)
            if thread is None:
                thread = self.create(target, phase_id=phase_id, action_id=action_id)
            thread.append(message)
        self.log.append(message)
        return message

    def get_messages(
        self,
        thread_id: str,
        role: Optional[str] = None,
        agent_id: Optional[str] = None,
        limit: Optional[int] = None,
        skip_first: bool = False,
    ) -> List[ThreadMessage]:
        """Messages of a thread, filtered, newest ``limit`` kept."""
        thread = self.threads.get(thread_id)
        if thread is None:
            return []
        messages = list(thread.messages)
        if skip_first and messages and messages[0].is_first:
            messages = messages[1:]
        if role:
            messages = [m for m in messages if m.role == role]
        if agent_id:
            messages = [m for m in messages if m.agent_id == agent_id]
        if limit and limit > 0:
            messages = messages[-limit:]
        return messages

    def clear(self, thread_id: str, keep_first: bool = True) -> bool:
        thread = self.threads.get(thread_id)
        if thread is None:
            return False
        if keep_first and thread.messages and thread.messages[0].is_first:
            thread.messages = thread.messages[:1]
        else:
            thread.messages = []
        return True

    def of_type(self, type: ThreadType) -> List[Thread]:
        return [t for t in self.threads.values() if t.type == type]

    def context_messages(self, thread_id: str) -> List[ChatMessage]:
        """Render a thread as chat context for the next agent call."""
        messages = self.get_messages(thread_id)
        if not messages:
            return []
        if self.context_format == "transcript":
            lines = [f"{m.name or m.role}: {m.content}" for m in messages]
            return [ChatMessage(role="user", content="Conversation so far:\n" + "\n".join(lines))]
        return [ChatMessage(role=m.role, content=m.content) for m in messages]

    def export(self) -> Dict[str, Any]:
        return {
            "threads": {tid: thread.to_dict() for tid, thread in self.threads.items()},
            "messages": [m.to_dict() for m in self.log],
        }
