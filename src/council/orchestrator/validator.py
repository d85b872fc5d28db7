"""Structural checks run before a pipeline may start."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Set

from ..state.agents import AgentRegistry
from ..state.hierarchy import Hierarchy
from ..state.pipelines import (
    AGENT_ACTION_TYPES,
    RETRIEVAL_ACTION_TYPES,
    Action,
    Consolidation,
    ParticipantKind,
    ParticipantSpec,
    Phase,
    Pipeline,
    TriggerType,
)
from .threads import phase_thread_id, team_task_thread_id, team_thread_id
from .tokens import BUILTIN_TOKENS, find_tokens
from .variables import DEFAULT_GLOBALS


@dataclass
class ValidationResult:
    valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def error(self, message: str) -> None:
        self.errors.append(message)
        self.valid = False

    def warn(self, message: str) -> None:
        self.warnings.append(message)


def action_event_target(event_name: str) -> str:
    """Action id named by an ``action:<id>:<suffix>`` event, or ''."""
    if not event_name.startswith("action:"):
        return ""
    parts = event_name.split(":")
    return parts[1] if len(parts) >= 3 else ""


class PipelineValidator:
    """Errors block a run; warnings are reported and the run proceeds."""

    def __init__(self, registry: AgentRegistry, hierarchy: Hierarchy) -> None:
        self.registry = registry
        self.hierarchy = hierarchy

    def validate(self, pipeline: Pipeline) -> ValidationResult:
        result = ValidationResult()
        if not pipeline.phases:
            result.error(f"Pipeline '{pipeline.id}' has no phases")
            return result

        self._check_ids(pipeline, result)
        action_ids = {a.id for a in pipeline.all_actions()}
        emitted = self._emitted_events(pipeline)
        known_names = self._known_names(pipeline)
        thread_ids = action_ids | self._thread_ids(pipeline)

        for phase in pipeline.phases:
            if not phase.actions:
                result.error(f"Phase '{phase.id}' has no actions")
            self._check_consolidation(phase, result)
            for team_id in phase.team_threads:
                if self.hierarchy.get_team(team_id) is None:
                    result.error(f"Phase '{phase.id}' configures a thread for unknown team '{team_id}'")
            self._check_awaits(phase, result)
            for action in phase.actions:
                for team_id in action.team_task_threads:
                    if self.hierarchy.get_team(team_id) is None:
                        result.error(f"Action '{action.id}' configures a task thread for unknown team '{team_id}'")
                self._check_action(phase, action, action_ids, thread_ids, emitted, result)
                self._check_tokens(action, known_names, result)
        return result

    # ------------------------------------------------------------------ #
    # Checks
    # ------------------------------------------------------------------ #
    def _check_ids(self, pipeline: Pipeline, result: ValidationResult) -> None:
        seen_phases: Set[str] = set()
        seen_actions: Set[str] = set()
        for phase in pipeline.phases:
            if phase.id in seen_phases:
                result.error(f"Duplicate phase id '{phase.id}'")
            seen_phases.add(phase.id)
            for action in phase.actions:
                if action.id in seen_actions:
                    result.error(f"Duplicate action id '{action.id}'")
                seen_actions.add(action.id)

    @staticmethod
    def _thread_ids(pipeline: Pipeline) -> Set[str]:
        ids: Set[str] = set()
        for phase in pipeline.phases:
            ids.add(phase_thread_id(phase.id))
            ids.update(team_thread_id(phase.id, team_id) for team_id in phase.team_threads)
            for action in phase.actions:
                ids.update(team_task_thread_id(action.id, team_id) for team_id in action.team_task_threads)
        return ids

    def _check_consolidation(self, phase: Phase, result: ValidationResult) -> None:
        if phase.consolidation == Consolidation.DESIGNATED and phase.action(phase.designated_action_id) is None:
            result.error(
                f"Phase '{phase.id}' designates unknown action '{phase.designated_action_id}'"
            )
        if phase.consolidation == Consolidation.SYNTHESIZE:
            if not phase.consolidation_agent:
                result.error(f"Phase '{phase.id}' synthesizes without a consolidation agent")
            else:
                self._check_ref(phase.consolidation_agent, f"Phase '{phase.id}' consolidation agent", result)

    def _check_awaits(self, phase: Phase, result: ValidationResult) -> None:
        graph: Dict[str, List[str]] = {}
        for action in phase.actions:
            if action.trigger_type != TriggerType.AWAIT:
                continue
            for target in action.awaits:
                if phase.action(target) is None:
                    result.error(f"Action '{action.id}' awaits unknown action '{target}'")
            graph[action.id] = [t for t in action.awaits if phase.action(t) is not None]

        visiting: Set[str] = set()
        done: Set[str] = set()
        reported: Set[str] = set()

        def visit(node: str, path: List[str]) -> None:
            if node in done:
                return
            if node in visiting:
                cycle = path[path.index(node):] + [node]
                key = "->".join(sorted(set(cycle)))
                if key not in reported:
                    reported.add(key)
                    result.error(f"Circular await dependency in phase '{phase.id}': {' -> '.join(cycle)}")
                return
            visiting.add(node)
            for target in graph.get(node, []):
                visit(target, path + [node])
            visiting.discard(node)
            done.add(node)

        for node in graph:
            visit(node, [])

    def _check_action(
        self,
        phase: Phase,
        action: Action,
        action_ids: Set[str],
        thread_ids: Set[str],
        emitted: Set[str],
        result: ValidationResult,
    ) -> None:
        label = f"Action '{action.id}'"
        if action.type in AGENT_ACTION_TYPES and action.participants.is_empty:
            result.error(f"{label} has no participants")
        if not action.participants.is_empty:
            self._check_participants(label, action.participants, result)
        if action.type in RETRIEVAL_ACTION_TYPES and not action.retrieval.pipeline_id:
            result.error(f"{label} needs a retrieval pipeline id")
        if action.context_thread and action.context_thread not in thread_ids:
            result.error(f"{label} uses unknown context thread '{action.context_thread}'")

        if action.trigger_type == TriggerType.ON:
            if not action.on_event:
                result.error(f"{label} is triggered 'on' but names no event")
            else:
                target = action_event_target(action.on_event)
                if action.on_event.startswith("action:") and target not in action_ids:
                    result.error(f"{label} listens for an event of unknown action '{target or action.on_event}'")
                elif action.on_event not in emitted and not target:
                    result.warn(f"{label} listens for '{action.on_event}' which nothing in the pipeline emits")

    def _check_participants(self, label: str, spec: ParticipantSpec, result: ValidationResult) -> None:
        if spec.kind == ParticipantKind.EXPLICIT:
            for ref in spec.ids:
                self._check_ref(ref, label, result)
        elif spec.kind == ParticipantKind.TEAM:
            for team_id in spec.team_ids:
                team = self.hierarchy.get_team(team_id)
                if team is None:
                    result.error(f"{label} references unknown team '{team_id}'")
                    continue
                if not team.position_ids():
                    result.error(f"{label} references empty team '{team_id}'")
                for pid in team.position_ids():
                    self._check_ref(pid, label, result)
        elif spec.kind == ParticipantKind.POOL:
            if spec.pool_id and self.hierarchy.get_pool(spec.pool_id) is None:
                result.error(f"{label} references unknown pool '{spec.pool_id}'")
        elif spec.kind == ParticipantKind.DYNAMIC:
            if spec.director:
                self._check_ref(spec.director, f"{label} director", result)
            for ref in spec.candidates:
                self._check_ref(ref, f"{label} candidate", result)
        elif spec.kind == ParticipantKind.ALL_EXECUTIVES:
            for position in self.hierarchy.executive_positions():
                if not position.is_filled:
                    result.warn(f"{label}: executive position '{position.id}' is unfilled")

    def _check_ref(self, ref: str, label: str, result: ValidationResult) -> None:
        position = self.hierarchy.get_position(ref)
        if position is not None:
            if not position.is_filled:
                result.warn(f"{label}: position '{ref}' is unfilled")
            elif position.assigned_agent_id and position.assigned_agent_id not in self.registry:
                result.error(f"{label}: position '{ref}' references missing agent '{position.assigned_agent_id}'")
            elif position.assigned_pool_id and self.hierarchy.get_pool(position.assigned_pool_id) is None:
                result.error(f"{label}: position '{ref}' references missing pool '{position.assigned_pool_id}'")
            return
        if ref not in self.registry:
            result.error(f"{label} references unknown agent or position '{ref}'")

    def _check_tokens(self, action: Action, known: Set[str], result: ValidationResult) -> None:
        texts = [action.prompt_template, action.retrieval.query_template, action.gavel.prompt]
        for token in find_tokens("\n".join(texts)):
            if token not in known:
                result.warn(f"Action '{action.id}' references unresolved token '{{{{{token}}}}}'")

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    @staticmethod
    def _emitted_events(pipeline: Pipeline) -> Set[str]:
        events: Set[str] = set()
        for phase in pipeline.phases:
            for names in phase.lifecycle_hooks.values():
                events.update(names)
            for action in phase.actions:
                events.update(action.emits)
                events.add(f"action:{action.id}:complete")
        return events

    @staticmethod
    def _known_names(pipeline: Pipeline) -> Set[str]:
        names: Set[str] = set(BUILTIN_TOKENS) | set(DEFAULT_GLOBALS) | set(pipeline.globals)
        for phase in pipeline.phases:
            names.update(phase.variables)
            if phase.output_variable:
                names.add(phase.output_variable)
            for action in phase.actions:
                if action.output.variable:
                    names.add(action.output.variable)
                if action.input.variable:
                    names.add(action.input.variable)
        return names
