"""Run controller: drives pipeline runs through phases and actions."""

from __future__ import annotations

import asyncio
import copy
import logging
import random
import time
import uuid
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from ..config import Config
from ..errors import (
    AgentInvocationError,
    AlreadyRunning,
    ContentRetrievalError,
    CouncilError,
    InvalidGavelResolution,
    InvalidRunState,
    NotFound,
    RunAborted,
    TimeoutExceeded,
    UnresolvedParticipant,
    ValidationError,
)
from ..models.base import ChatMessage
from ..state.agents import AgentRegistry
from ..state.hierarchy import Hierarchy
from ..state.pipelines import (
    RETRIEVAL_ACTION_TYPES,
    Action,
    ActionType,
    Consolidation,
    ExecutionMode,
    InputSource,
    LifecycleStage,
    Orchestration,
    Phase,
    Pipeline,
    PipelineStore,
    TriggerType,
    VariableScope,
)
from .collaborators import AgentInvoker, ContentRetriever, HostCollaborator, PersistenceStore
from .delivery import DeliveryAdapter, DeliveryMode, TokenMapping
from .events import EventChannel, EventType
from .gavel import GavelDecision, GavelGate
from .participants import ParticipantResolver, ResolvedParticipant
from .run import ActionState, ActionStatus, PhaseState, Run, RunHandle, RunStatus
from .threads import ThreadManager, phase_thread_id, team_task_thread_id, team_thread_id
from .tokens import BUILTIN_TOKENS, substitute
from .validator import PipelineValidator, ValidationResult
from .variables import NOT_SET, OutputRouter, as_text

logger = logging.getLogger("council.engine")

THREAD_SCOPE = "threads"

SYNTHESIS_PROMPT = """Combine the following contributions into a single, coherent response.

{contributions}"""

CONSENSUS_PROMPT = """Several participants answered the same request.

Request:
{request}

Responses:
{responses}

Write the consensus answer that best reflects their agreement."""


class _ActionFailed(CouncilError):
    """An action exhausted its retries and the phase does not continue on errors."""


def _now() -> str:
    return datetime.utcnow().isoformat()


def _label(responses: Sequence[Tuple[ResolvedParticipant, str]]) -> str:
    if len(responses) == 1:
        return responses[0][1]
    return "\n\n".join(f"{participant.name}:\n{text}" for participant, text in responses)


async def _gather_or_cancel(coros: Sequence[Awaitable[str]]) -> List[str]:
    """Run ``coros`` concurrently; the first failure cancels the rest before it propagates."""
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class _Execution:
    """Mutable machinery for one run: cursor, timers, in-flight work, gavel."""

    def __init__(self, controller: "RunController", run: Run, pipeline: Pipeline) -> None:
        self.controller = controller
        self.run = run
        self.pipeline = pipeline
        self.events = controller.events
        self.resolver = ParticipantResolver(
            controller.registry, controller.hierarchy, controller.invoker, controller.rng
        )
        self.router = OutputRouter(run.variables, on_conflict=self._on_conflict)
        self.gate = GavelGate()
        self.gavel_lock = asyncio.Lock()
        self.resume_event = asyncio.Event()
        self.resume_event.set()
        self.abort_requested = False
        self.task: Optional["asyncio.Task[Run]"] = None

        self.started = controller.clock()
        self.paused_total = 0.0
        self.pause_started: Optional[float] = None

        self.phase: Optional[Phase] = None
        self.phase_state: Optional[PhaseState] = None
        self.phase_started = self.started
        self.phase_paused_mark = 0.0
        self.phase_input = run.initial_input
        self.phase_output: Any = NOT_SET
        self.last_phase_output: Any = NOT_SET
        self.last_action_output: Optional[str] = None
        self.phase_skipped = False

        self.inflight: Dict[str, "asyncio.Task[Optional[str]]"] = {}
        self.listening: Dict[str, Action] = {}
        self.awaited: Set[str] = set()
        self.merged: Set[str] = set()

    # ------------------------------------------------------------------ #
    # Top level
    # ------------------------------------------------------------------ #
    async def run_pipeline(self) -> Run:
        try:
            for index, phase in enumerate(self.pipeline.phases):
                await self.checkpoint()
                await self.run_phase(index, phase)
            await self.controller._complete(self)
        except asyncio.CancelledError:
            if not self.abort_requested:
                self.controller._fail(self, "Run task was cancelled")
                raise
        except RunAborted:
            # abort() has already finalized the run.
            pass
        except _ActionFailed as exc:
            self.controller._fail(self, str(exc))
        except TimeoutExceeded as exc:
            self.run.record_error(str(exc), self._phase_id(), None, level=exc.level)
            self.controller._fail(self, str(exc))
        except CouncilError as exc:
            self.run.record_error(str(exc), self._phase_id(), None)
            self.controller._fail(self, str(exc))
        except Exception as exc:
            logger.exception("Run %s crashed", self.run.run_id)
            self.run.record_error(f"Unexpected error: {exc}", self._phase_id(), None)
            self.controller._fail(self, str(exc))
        finally:
            await self.cancel_inflight()
        return self.run

    async def run_phase(self, index: int, phase: Phase) -> None:
        run = self.run
        state = run.phases[index]
        run.current_phase_index = index
        run.current_action_index = 0
        self.phase, self.phase_state = phase, state
        self.phase_started = self.controller.clock()
        self.phase_paused_mark = self.paused_now()
        self.phase_output = NOT_SET
        self.last_action_output = None
        self.phase_skipped = False
        self.inflight, self.listening = {}, {}
        self.awaited, self.merged = set(), set()
        run.variables.begin_phase(phase.variables)
        run.threads.open_phase(phase, self._render_plain)
        self.router.begin_phase()
        self.events.emit(EventType.PHASE_STARTED, run.run_id, phase_id=phase.id, index=index)

        await self.enter_stage(LifecycleStage.START)
        await self.enter_stage(LifecycleStage.BEFORE_ACTIONS)
        for action in phase.actions:
            if action.trigger_type == TriggerType.IMMEDIATE:
                self.dispatch(action)

        await self.enter_stage(LifecycleStage.IN_PROGRESS)
        for action in phase.actions:
            if action.trigger_type == TriggerType.ON:
                self.listen(action)

        for position, action in enumerate(phase.actions):
            if action.trigger_type in (TriggerType.IMMEDIATE, TriggerType.ON):
                continue
            run.current_action_index = position
            await self.checkpoint()
            if action.trigger_type == TriggerType.AWAIT:
                await self.await_actions(action.awaits)
            if action.execution_mode == ExecutionMode.ASYNC:
                self.dispatch(action)
            else:
                await self.execute_action(action, staged=False)

        await self.reconcile()
        await self.enter_stage(LifecycleStage.AFTER_ACTIONS)

        output = await self.consolidate(phase, state)
        state.output = output
        state.skipped = output is NOT_SET and self.phase_skipped
        self.phase_output = output
        if phase.output_variable:
            run.variables.set(phase.output_variable, output, VariableScope.GLOBAL)

        await self.enter_stage(LifecycleStage.END)
        run.variables.end_phase(phase.promote)
        await self.enter_stage(LifecycleStage.RESPOND)

        state.completed = True
        self.last_phase_output = output
        self.phase_input = as_text(output)
        self.events.emit(
            EventType.PHASE_COMPLETED,
            run.run_id,
            phase_id=phase.id,
            output=as_text(output),
            skipped=state.skipped,
        )

    async def enter_stage(self, stage: LifecycleStage) -> None:
        await self.checkpoint()
        phase, state = self.current()
        state.stage = stage
        self.events.emit(EventType.PHASE_STAGE, self.run.run_id, phase_id=phase.id, stage=stage.value)
        for name in phase.hooks(stage):
            self.fire(name)

    def current(self) -> Tuple[Phase, PhaseState]:
        if self.phase is None or self.phase_state is None:
            raise RuntimeError(f"Run {self.run.run_id} has no phase in progress")
        return self.phase, self.phase_state

    # ------------------------------------------------------------------ #
    # Suspension points
    # ------------------------------------------------------------------ #
    async def checkpoint(self) -> None:
        if self.abort_requested:
            raise RunAborted(self.run.run_id)
        if self.run.status == RunStatus.PAUSED:
            await self.resume_event.wait()
            if self.abort_requested:
                raise RunAborted(self.run.run_id)
        self.check_budgets()

    def paused_now(self) -> float:
        current = 0.0
        if self.pause_started is not None:
            current = self.controller.clock() - self.pause_started
        return self.paused_total + current

    def mark_paused(self) -> None:
        self.run.status = RunStatus.PAUSED
        if self.pause_started is None:
            self.pause_started = self.controller.clock()
        self.resume_event.clear()

    def mark_resumed(self) -> None:
        if self.pause_started is not None:
            self.paused_total += self.controller.clock() - self.pause_started
            self.pause_started = None
        self.run.status = RunStatus.RUNNING
        self.resume_event.set()

    def remaining(self, level: str) -> Optional[Tuple[float, float, str]]:
        """(seconds left, budget, name) for the phase or pipeline budget, or None when unlimited."""
        if level == "phase":
            if self.phase is None:
                return None
            budget = self.phase.timeout if self.phase.timeout is not None else self.controller.phase_timeout
            started, mark, name = self.phase_started, self.phase_paused_mark, self.phase.id
        else:
            budget = self.pipeline.timeout if self.pipeline.timeout is not None else self.controller.pipeline_timeout
            started, mark, name = self.started, 0.0, self.pipeline.id
        if not budget or budget <= 0:
            return None
        elapsed = self.controller.clock() - started - (self.paused_now() - mark)
        return budget - elapsed, budget, name

    def check_budgets(self) -> None:
        for level in ("pipeline", "phase"):
            left = self.remaining(level)
            if left is not None and left[0] <= 0:
                raise TimeoutExceeded(level, left[2], left[1])

    async def call_with_budget(self, awaitable: Awaitable[Any], action_timeout: Optional[float], name: str) -> Any:
        """Await ``awaitable`` under the tightest of the action, phase, and pipeline budgets."""
        limits: List[Tuple[float, str, str, float]] = []
        if action_timeout and action_timeout > 0:
            limits.append((action_timeout, "action", name, action_timeout))
        for level in ("phase", "pipeline"):
            left = self.remaining(level)
            if left is not None:
                limits.append((left[0], level, left[2], left[1]))
        if not limits:
            return await awaitable

        seconds, level, label, budget = min(limits, key=lambda item: item[0])
        if seconds <= 0:
            close = getattr(awaitable, "close", None)
            if close:
                close()
            raise TimeoutExceeded(level, label, budget)
        try:
            return await asyncio.wait_for(awaitable, seconds)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(level, label, budget) from None

    # ------------------------------------------------------------------ #
    # Triggers and in-flight work
    # ------------------------------------------------------------------ #
    def fire(self, name: str) -> None:
        self.run.fired_events.append(name)
        self.events.emit(
            EventType.PIPELINE_EVENT, self.run.run_id, name=name, phase_id=self._phase_id()
        )
        for action_id, action in list(self.listening.items()):
            if action.on_event == name:
                del self.listening[action_id]
                self.dispatch(action)

    def listen(self, action: Action) -> None:
        if action.on_event in self.run.fired_events:
            self.dispatch(action)
        else:
            self.listening[action.id] = action

    def dispatch(self, action: Action) -> None:
        self.inflight[action.id] = asyncio.create_task(self.execute_action(action, staged=True))

    async def await_actions(self, action_ids: Sequence[str]) -> None:
        for action_id in self._definition_order(action_ids):
            task = self.inflight.get(action_id)
            if task is None:
                logger.debug("Await on %s skipped: not dispatched", action_id)
                continue
            self.awaited.add(action_id)
            await task
        self.merge_staged(action_ids)

    async def reconcile(self) -> None:
        """Wait for every in-flight action of the phase, then apply their writes."""
        while True:
            pending = [aid for aid in self._definition_order(self.inflight) if aid not in self.awaited]
            if not pending:
                break
            for action_id in pending:
                self.awaited.add(action_id)
                await self.inflight[action_id]

        _, phase_state = self.current()
        for action_id in list(self.listening):
            state = phase_state.actions[action_id]
            state.status = ActionStatus.SKIPPED
            self.events.emit(
                EventType.ACTION_SKIPPED,
                self.run.run_id,
                phase_id=self._phase_id(),
                action_id=action_id,
                reason="trigger never fired",
            )
        self.listening.clear()
        self.merge_staged(None)

    def merge_staged(self, action_ids: Optional[Sequence[str]]) -> None:
        phase, phase_state = self.current()
        order = [a.id for a in phase.actions]
        self.router.reconcile(order, only=action_ids)
        for action_id in order:
            if action_ids is not None and action_id not in action_ids:
                continue
            if action_id not in self.inflight or action_id in self.merged:
                continue
            self.merged.add(action_id)
            state = phase_state.actions[action_id]
            if state.status == ActionStatus.COMPLETED and state.output is not None:
                self.phase_output = state.output
                self.last_action_output = state.output

    async def cancel_inflight(self) -> None:
        tasks = [t for t in self.inflight.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # Retrieve exceptions of finished tasks nobody awaited.
        for task in self.inflight.values():
            if task.done() and not task.cancelled():
                task.exception()

    def _definition_order(self, action_ids: Any) -> List[str]:
        wanted = set(action_ids)
        phase, _ = self.current()
        return [a.id for a in phase.actions if a.id in wanted]

    # ------------------------------------------------------------------ #
    # Actions
    # ------------------------------------------------------------------ #
    async def execute_action(self, action: Action, staged: bool) -> Optional[str]:
        phase, phase_state = self.current()
        state = phase_state.actions[action.id]
        state.status = ActionStatus.RUNNING
        self.events.emit(
            EventType.ACTION_STARTED, self.run.run_id, phase_id=phase.id, action_id=action.id, staged=staged
        )

        if action.type == ActionType.USER_GAVEL:
            await self.checkpoint()
            state.attempts = 1
            decision = await self.gavel_action(action)
            if decision.skipped:
                self.phase_skipped = True
                state.status = ActionStatus.COMPLETED
                state.output = None
                self.events.emit(
                    EventType.ACTION_COMPLETED, self.run.run_id, phase_id=phase.id, action_id=action.id, skipped=True
                )
                self.fire(f"action:{action.id}:complete")
                return None
            return self._succeeded(action, state, as_text(decision.text), staged)

        policy = action.retry_policy
        attempts = policy.count + 1
        delay_ms = policy.delay_ms if policy.delay_ms is not None else self.controller.retry_delay_ms
        error: Exception = AgentInvocationError(f"Action '{action.id}' made no attempt")
        for attempt in range(1, attempts + 1):
            await self.checkpoint()
            state.attempts = attempt
            try:
                output = await self.perform(action)
            except UnresolvedParticipant as exc:
                self.run.record_error(str(exc), phase.id, action.id, attempt=attempt)
                return self._failed(action, state, exc)
            except (AgentInvocationError, ContentRetrievalError) as exc:
                error = exc
            except TimeoutExceeded as exc:
                if exc.level != "action":
                    raise
                error = exc
            else:
                return self._succeeded(action, state, output, staged)

            self.run.record_error(str(error), phase.id, action.id, attempt=attempt)
            if attempt < attempts:
                logger.info("Action %s attempt %d failed: %s; retrying", action.id, attempt, error)
                self.events.emit(
                    EventType.ACTION_RETRY,
                    self.run.run_id,
                    phase_id=phase.id,
                    action_id=action.id,
                    attempt=attempt,
                    error=str(error),
                )
                await self.controller.sleep(delay_ms / 1000.0)
        return self._failed(action, state, error)

    def _succeeded(self, action: Action, state: ActionState, output: str, staged: bool) -> str:
        state.status = ActionStatus.COMPLETED
        state.output = output
        state.error = None
        self.router.route(action, output, staged=staged)
        if not staged:
            self.phase_output = output
            self.last_action_output = output
        self.events.emit(
            EventType.ACTION_COMPLETED,
            self.run.run_id,
            phase_id=self._phase_id(),
            action_id=action.id,
            output=output,
        )
        self.fire(f"action:{action.id}:complete")
        for name in action.emits:
            self.fire(name)
        return output

    def _failed(self, action: Action, state: ActionState, error: Exception) -> None:
        phase, _ = self.current()
        state.status = ActionStatus.FAILED
        state.error = str(error)
        self.events.emit(
            EventType.ACTION_FAILED,
            self.run.run_id,
            phase_id=phase.id,
            action_id=action.id,
            attempts=state.attempts,
            error=str(error),
        )
        if not phase.continue_on_action_error:
            raise _ActionFailed(f"Action '{action.id}' failed after {state.attempts} attempt(s): {error}")
        logger.warning("Action %s failed; phase %s continues", action.id, phase.id)
        return None

    async def perform(self, action: Action) -> str:
        if action.type == ActionType.SYSTEM:
            return self.render(action.prompt_template, action)
        if action.type in RETRIEVAL_ACTION_TYPES:
            retrieved = await self.retrieve(action)
            if action.type == ActionType.DELIBERATIVE_RAG and not action.participants.is_empty:
                return await self.deliberate(action, {"ragContext": retrieved})
            return retrieved
        return await self.deliberate(action, {})

    async def retrieve(self, action: Action) -> str:
        retriever = self.controller.retriever
        if retriever is None:
            raise ContentRetrievalError("No content retriever configured")
        query = self.render(action.retrieval.query_template, action)

        async def _call() -> str:
            try:
                return str(await retriever.execute_pipeline(action.retrieval.pipeline_id, query))
            except ContentRetrievalError:
                raise
            except Exception as exc:
                raise ContentRetrievalError(
                    f"Retrieval pipeline '{action.retrieval.pipeline_id}' failed: {exc}"
                ) from exc

        return await self.call_with_budget(_call(), self._action_timeout(action), action.id)

    async def deliberate(self, action: Action, extras: Dict[str, str]) -> str:
        context = self.action_input(action)

        async def director_call(director: ResolvedParticipant, messages: List[ChatMessage]) -> str:
            return await self.consult(action, director, messages)

        participants = await self.resolver.resolve(
            action.participants, context, lambda text: self.render(text, action, extras), director_call
        )
        orchestration = action.participants.orchestration

        if orchestration == Orchestration.SEQUENTIAL:
            previous = as_text(self.last_action_output)
            for participant in participants:
                await self.checkpoint()
                prompt = self.render(
                    action.prompt_template,
                    action,
                    {**extras, "previousResponse": previous, "participant.name": participant.name},
                )
                previous = await self.invoke(action, participant, prompt)
            return previous

        prompts = [
            self.render(action.prompt_template, action, {**extras, "participant.name": p.name})
            for p in participants
        ]
        replies = await _gather_or_cancel([self.invoke(action, p, prompt) for p, prompt in zip(participants, prompts)])
        responses = list(zip(participants, replies))
        if orchestration == Orchestration.PARALLEL:
            return _label(responses)

        synthesizer = participants[0]
        prompt = CONSENSUS_PROMPT.format(request=prompts[0], responses=_label(responses))
        return await self.invoke(action, synthesizer, prompt)

    async def invoke(self, action: Action, participant: ResolvedParticipant, prompt: str) -> str:
        threads = self.run.threads
        messages: List[ChatMessage] = []
        if action.context_thread:
            messages.extend(threads.context_messages(action.context_thread))
        messages.append(ChatMessage(role="user", content=prompt))
        threads.add(action.id, "user", prompt, phase_id=self._phase_id(), action_id=action.id)
        reply = await self._invoke_agent(participant, messages, self._action_timeout(action), action.id)
        self.record_reply(action, participant, reply)
        return reply

    async def consult(self, action: Action, director: ResolvedParticipant, messages: List[ChatMessage]) -> str:
        """Budgeted call for a dynamic-selection director."""
        reply = await self._invoke_agent(director, messages, self._action_timeout(action), action.id)
        self.run.threads.add(
            action.id,
            "assistant",
            reply,
            name=director.name,
            phase_id=self._phase_id(),
            action_id=action.id,
            agent_id=director.agent.id,
        )
        return reply

    def record_reply(self, action: Action, participant: ResolvedParticipant, reply: str) -> None:
        """Log a reply to its action thread and to any phase or team thread it belongs to."""
        threads = self.run.threads
        phase_id = self._phase_id()
        shared: List[str] = []
        if phase_id and threads.has(phase_thread_id(phase_id)):
            shared.append(phase_thread_id(phase_id))
        if phase_id and participant.team_id and threads.has(team_thread_id(phase_id, participant.team_id)):
            shared.append(team_thread_id(phase_id, participant.team_id))
        if participant.team_id and threads.has(team_task_thread_id(action.id, participant.team_id)):
            shared.append(team_task_thread_id(action.id, participant.team_id))
        threads.add(
            action.id,
            "assistant",
            reply,
            name=participant.name,
            phase_id=phase_id,
            action_id=action.id,
            agent_id=participant.agent.id,
            also=shared,
        )

    async def _invoke_agent(
        self, participant: ResolvedParticipant, messages: List[ChatMessage], timeout: Optional[float], name: str
    ) -> str:
        invoker = self.controller.invoker

        async def _call() -> str:
            try:
                return await invoker.invoke(participant.agent, participant.system_prompt, messages)
            except CouncilError:
                raise
            except Exception as exc:
                raise AgentInvocationError(f"Agent '{participant.agent.id}' failed: {exc}") from exc

        reply = await self.call_with_budget(_call(), timeout, name)
        return participant.agent.reasoning.strip(reply or "")

    # ------------------------------------------------------------------ #
    # Gavel
    # ------------------------------------------------------------------ #
    async def gavel_action(self, action: Action) -> GavelDecision:
        if self.phase_output is not NOT_SET:
            text = as_text(self.phase_output)
        else:
            text = self.action_input(action)
        return await self.request_gavel(action.id, self.render(action.gavel.prompt, action), text, action.gavel.can_skip)

    async def request_gavel(self, action_id: Optional[str], prompt: str, text: str, can_skip: bool) -> GavelDecision:
        """Pause for review; concurrent requests queue behind the pending one."""
        async with self.gavel_lock:
            await self.checkpoint()
            request = self.gate.open(self.run.run_id, self._phase_id() or "", action_id, prompt, text, can_skip)
            self.mark_paused()
            self.events.emit(EventType.RUN_PAUSED, self.run.run_id, reason="gavel", gavel_id=request.id)
            self.events.emit(EventType.GAVEL_REQUESTED, self.run.run_id, **request.event_payload())
            decision = await self.gate.wait()
        self.events.emit(
            EventType.GAVEL_RESOLVED,
            self.run.run_id,
            gavel_id=request.id,
            phase_id=request.phase_id,
            action_id=action_id,
            resolution=decision.resolution.value,
        )
        return decision

    # ------------------------------------------------------------------ #
    # Consolidation
    # ------------------------------------------------------------------ #
    async def consolidate(self, phase: Phase, state: PhaseState) -> Any:
        if self.phase_skipped:
            return NOT_SET
        outputs = [
            (action, state.actions[action.id].output)
            for action in phase.actions
            if state.actions[action.id].status == ActionStatus.COMPLETED
            and state.actions[action.id].output is not None
        ]
        texts = [text for _, text in outputs]

        if phase.consolidation == Consolidation.LAST_ACTION:
            return texts[-1] if texts else NOT_SET
        if phase.consolidation == Consolidation.MERGE:
            return phase.merge_separator.join(texts) if texts else NOT_SET
        if phase.consolidation == Consolidation.DESIGNATED:
            designated = state.actions.get(phase.designated_action_id)
            if designated and designated.status == ActionStatus.COMPLETED and designated.output is not None:
                return designated.output
            return NOT_SET
        if phase.consolidation == Consolidation.SYNTHESIZE:
            return await self.synthesize(phase, outputs)

        candidate = phase.merge_separator.join(texts)
        decision = await self.request_gavel(None, phase.gavel.prompt, candidate, phase.gavel.can_skip)
        if decision.skipped:
            self.phase_skipped = True
        return decision.text

    async def synthesize(self, phase: Phase, outputs: Sequence[Tuple[Action, str]]) -> Any:
        if not outputs:
            return NOT_SET
        participant = self.resolver.resolve_ref(phase.consolidation_agent, self._render_plain)[0]
        contributions = "\n\n".join(f"[{action.name}]\n{text}" for action, text in outputs)
        prompt = SYNTHESIS_PROMPT.format(contributions=contributions)
        thread_id = phase_thread_id(phase.id)
        self.run.threads.add(thread_id, "user", prompt, phase_id=phase.id)
        reply = await self._invoke_agent(
            participant,
            [ChatMessage(role="user", content=prompt)],
            self.controller.action_timeout,
            f"{phase.id}:synthesis",
        )
        self.run.threads.add(thread_id, "assistant", reply, name=participant.name, phase_id=phase.id)
        return reply

    # ------------------------------------------------------------------ #
    # Token rendering
    # ------------------------------------------------------------------ #
    def action_input(self, action: Action) -> str:
        source = action.input.source
        if source == InputSource.PREVIOUS_ACTION:
            return self.phase_input if self.last_action_output is None else self.last_action_output
        if source == InputSource.RUN_INPUT:
            return self.run.initial_input
        if source == InputSource.VARIABLE:
            return as_text(self.run.variables.get(action.input.variable))
        return self.phase_input

    def builtin(self, name: str, action: Optional[Action]) -> Optional[str]:
        if name not in BUILTIN_TOKENS:
            return None
        if name == "input":
            return self.action_input(action) if action is not None else self.phase_input
        if name == "previousResponse":
            return as_text(self.last_action_output)
        if name == "phase.input":
            return self.phase_input
        if name == "phase.output":
            return as_text(self.phase_output)
        if name == "run.input":
            return self.run.initial_input
        # participant.name and ragContext only have values when supplied per call.
        return ""

    def render(self, text: str, action: Optional[Action] = None, extras: Optional[Mapping[str, str]] = None) -> str:
        variables = self.run.variables

        def resolve(name: str) -> Optional[str]:
            if extras and name in extras:
                return extras[name]
            value = self.builtin(name, action)
            if value is not None:
                return value
            if variables.is_declared(name):
                return as_text(variables.get(name))
            return None

        return substitute(text, resolve)

    def _render_plain(self, text: str) -> str:
        return self.render(text, None)

    def _action_timeout(self, action: Action) -> Optional[float]:
        return action.timeout if action.timeout is not None else self.controller.action_timeout

    def _phase_id(self) -> Optional[str]:
        return self.phase.id if self.phase else None

    def _on_conflict(self, action_id: str, name: str, scope: VariableScope) -> None:
        self.events.emit(
            EventType.VARIABLE_CONFLICT,
            self.run.run_id,
            phase_id=self._phase_id(),
            action_id=action_id,
            variable=name,
            scope=scope.value,
            kept="sequential",
        )

    def partial_output(self) -> str:
        if self.phase_output is not NOT_SET:
            return as_text(self.phase_output)
        return as_text(self.last_phase_output)


class RunController:
    """Public face of the execution engine.

    Owns the active run(s), the delivery adapter, and the bounded history of
    finished runs. All external interaction with a run goes through here.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        hierarchy: Hierarchy,
        pipelines: PipelineStore,
        invoker: AgentInvoker,
        host: Optional[HostCollaborator] = None,
        retriever: Optional[ContentRetriever] = None,
        config: Optional[Config] = None,
        events: Optional[EventChannel] = None,
        store: Optional[PersistenceStore] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or Config()
        self.registry = registry
        self.hierarchy = hierarchy
        self.pipelines = pipelines
        self.invoker = invoker
        self.retriever = retriever
        self.store = store
        self.rng = rng
        self.clock = clock
        self.sleep = sleep
        self.events = events or EventChannel()
        self.validator = PipelineValidator(registry, hierarchy)

        self.allow_concurrent = self.config.get_bool("orchestration.allow_concurrent_runs", False)
        self.action_timeout = self.config.get_float("orchestration.action_timeout_seconds", 60.0)
        self.phase_timeout = self.config.get_float("orchestration.phase_timeout_seconds", 0.0)
        self.pipeline_timeout = self.config.get_float("orchestration.pipeline_timeout_seconds", 0.0)
        self.retry_delay_ms = self.config.get_int("orchestration.retry_delay_ms", 1000)
        self.max_messages = self.config.get_int("threads.max_messages", 100)
        self.context_format = str(self.config.get("threads.context_format", "dialogue"))

        self.delivery = DeliveryAdapter(
            host=host,
            retriever=retriever,
            events=self.events,
            mode=DeliveryMode(self.config.get("orchestration.default_mode", "synthesis")),
            cache_ttl_seconds=self.config.get_float("injection.cache_ttl_seconds", 30.0),
            cache_max_entries=self.config.get_int("injection.cache_max_entries", 128),
            clock=clock,
        )
        self.delivery.lock_check = self.has_active_run

        self._active: Dict[str, _Execution] = {}
        self._history: Deque[Run] = deque(maxlen=max(1, self.config.get_int("orchestration.max_run_history", 10)))

    # ------------------------------------------------------------------ #
    # Run lifecycle
    # ------------------------------------------------------------------ #
    async def start_run(self, pipeline_id: str, initial_input: str = "") -> RunHandle:
        """Validate and launch a run; request errors leave no trace."""
        pipeline = self.pipelines.require(pipeline_id)
        if not self.allow_concurrent and self.has_active_run():
            raise AlreadyRunning("A run is already active; abort it or wait for it to finish")
        result = self.validator.validate(pipeline)
        if not result.valid:
            raise ValidationError(result.errors, result.warnings)
        for warning in result.warnings:
            logger.warning("Pipeline %s: %s", pipeline_id, warning)

        snapshot = copy.deepcopy(pipeline)
        threads = ThreadManager(
            max_messages=snapshot.threads_config.max_messages or self.max_messages,
            context_format=snapshot.threads_config.context_format or self.context_format,
        )
        run = Run.create(uuid.uuid4().hex[:12], snapshot, self.delivery.mode.value, initial_input, threads)
        execution = _Execution(self, run, snapshot)
        self._active[run.run_id] = execution

        run.status = RunStatus.RUNNING
        run.started_at = _now()
        self.events.emit(
            EventType.RUN_STARTED,
            run.run_id,
            pipeline_id=pipeline_id,
            mode=run.mode,
            warnings=list(result.warnings),
        )
        execution.task = asyncio.create_task(execution.run_pipeline())
        return RunHandle(self, run, execution.task)

    def pause(self, run_id: str) -> RunStatus:
        execution = self._require_active(run_id)
        run = execution.run
        if run.status == RunStatus.PAUSED:
            return run.status
        if run.status != RunStatus.RUNNING:
            raise InvalidRunState(f"Cannot pause run {run_id} from {run.status.value}")
        execution.mark_paused()
        self.events.emit(EventType.RUN_PAUSED, run_id, reason="user")
        return run.status

    def resume(self, run_id: str, resolution: Optional[str] = None, text: Optional[str] = None) -> RunStatus:
        """Continue a paused run; a pending gavel needs a resolution."""
        execution = self._require_active(run_id)
        run = execution.run
        if run.status != RunStatus.PAUSED:
            raise InvalidRunState(f"Cannot resume run {run_id} from {run.status.value}")

        gate = execution.gate
        if gate.pending is not None:
            if resolution is None:
                raise InvalidGavelResolution(f"Gavel {gate.pending.id} needs a resolution")
            decision = gate.decide(resolution, text)
            execution.mark_resumed()
            self.events.emit(EventType.RUN_RESUMED, run_id, resolution=decision.resolution.value)
            gate.resolve(decision)
        elif resolution is not None:
            raise InvalidGavelResolution("No gavel is pending")
        else:
            execution.mark_resumed()
            self.events.emit(EventType.RUN_RESUMED, run_id)
        return run.status

    def resolve_gavel(self, run_id: str, resolution: str, text: Optional[str] = None) -> RunStatus:
        return self.resume(run_id, resolution, text)

    def abort(self, run_id: str) -> RunStatus:
        execution = self._active.get(run_id)
        if execution is None:
            run = self.get_run(run_id)
            raise InvalidRunState(f"Run {run_id} is already {run.status.value}")
        run = execution.run
        if run.is_terminal:
            raise InvalidRunState(f"Run {run_id} is already {run.status.value}")
        execution.abort_requested = True
        if execution.pause_started is not None:
            execution.paused_total += self.clock() - execution.pause_started
            execution.pause_started = None
        run.status = RunStatus.ABORTED
        run.completed_at = _now()
        run.output = execution.partial_output()
        execution.resume_event.set()
        execution.gate.cancel()
        for task in execution.inflight.values():
            task.cancel()
        if execution.task is not None and execution.task is not asyncio.current_task():
            execution.task.cancel()
        self.events.emit(
            EventType.RUN_ABORTED,
            run_id,
            output=run.output,
            variables=run.variables.to_plain(),
        )
        self._archive(execution)
        return run.status

    def fire_event(self, run_id: str, name: str) -> None:
        """Fire a named run event; activates matching ``on`` actions."""
        execution = self._require_active(run_id)
        execution.fire(name)

    async def _complete(self, execution: _Execution) -> None:
        run = execution.run
        run.output = as_text(execution.last_phase_output)
        run.status = RunStatus.COMPLETED
        run.completed_at = _now()
        try:
            await self.delivery.deliver(run.run_id, run.output, {"pipeline_id": run.pipeline_id})
        except Exception as exc:
            logger.error("Delivery for run %s failed: %s", run.run_id, exc)
            run.record_error(f"Delivery failed: {exc}", kind="delivery")
            self.events.emit(EventType.DELIVERY_FAILED, run.run_id, error=str(exc), mode=self.delivery.mode.value)
        self.events.emit(EventType.RUN_COMPLETED, run.run_id, output=run.output)
        self._archive(execution)

    def _fail(self, execution: _Execution, message: str) -> None:
        run = execution.run
        if run.is_terminal:
            return
        run.status = RunStatus.FAILED
        run.completed_at = _now()
        run.output = execution.partial_output()
        logger.error("Run %s failed: %s", run.run_id, message)
        self.events.emit(EventType.RUN_FAILED, run.run_id, error=message, errors=list(run.errors))
        self._archive(execution)

    def _archive(self, execution: _Execution) -> None:
        run = execution.run
        if self._active.pop(run.run_id, None) is not None:
            self._history.append(run)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    def has_active_run(self) -> bool:
        return any(not e.run.is_terminal for e in self._active.values())

    def active_runs(self) -> List[Run]:
        return [e.run for e in self._active.values()]

    def get_run(self, run_id: str) -> Run:
        execution = self._active.get(run_id)
        if execution is not None:
            return execution.run
        for run in self._history:
            if run.run_id == run_id:
                return run
        raise NotFound(f"Run '{run_id}' not found")

    def get_progress(self, run_id: str) -> Dict[str, Any]:
        return self.get_run(run_id).progress()

    def pending_gavel(self, run_id: str) -> Optional[Dict[str, Any]]:
        execution = self._active.get(run_id)
        if execution is None or execution.gate.pending is None:
            return None
        return execution.gate.pending.to_dict()

    def history(self) -> List[Run]:
        return list(self._history)

    def validate(self, pipeline_id: str) -> ValidationResult:
        return self.validator.validate(self.pipelines.require(pipeline_id))

    def export_thread_log(self, run_id: str) -> Dict[str, Any]:
        run = self.get_run(run_id)
        return {
            "run_id": run.run_id,
            "pipeline_id": run.pipeline_id,
            "status": run.status.value,
            "exported_at": _now(),
            "output": run.output,
            "variables": run.variables.to_plain(),
            **run.threads.export(),
        }

    def save_thread_log(self, run_id: str, key: Optional[str] = None) -> Dict[str, Any]:
        """Export a run's threads and persist them through the store collaborator."""
        if self.store is None:
            raise RuntimeError("No persistence store configured")
        export = self.export_thread_log(run_id)
        self.store.save(key or run_id, export, THREAD_SCOPE)
        return export

    # ------------------------------------------------------------------ #
    # Configuration surface
    # ------------------------------------------------------------------ #
    def set_mode(self, mode: DeliveryMode | str) -> DeliveryMode:
        return self.delivery.set_mode(mode)

    def map_token(self, mapping: TokenMapping | Mapping[str, Any]) -> TokenMapping:
        return self.delivery.map_token(mapping)

    def unmap_token(self, token: str) -> bool:
        return self.delivery.unmap_token(token)

    def _require_active(self, run_id: str) -> _Execution:
        execution = self._active.get(run_id)
        if execution is not None:
            return execution
        run = self.get_run(run_id)
        raise InvalidRunState(f"Run {run_id} is {run.status.value}")
