"""Resolve participant specs into concrete agent snapshots for one action."""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from ..errors import UnresolvedParticipant
from ..models.base import ChatMessage
from ..state.agents import Agent, AgentRegistry, PromptSource, PromptStackItem, StackItemType
from ..state.hierarchy import AgentPool, Hierarchy, Position, SelectionMode
from ..state.pipelines import ParticipantKind, ParticipantSpec
from .collaborators import AgentInvoker
from .tokens import build_prompt

logger = logging.getLogger("council.participants")

Renderer = Callable[[str], str]
DirectorCall = Callable[["ResolvedParticipant", List[ChatMessage]], Awaitable[str]]

DIRECTOR_PROMPT = """Select the participants best suited to the task below.

Task:
{context}

Candidates:
{candidates}

Choose between {min_select} and {max_select} candidates. Respond with a JSON list of
candidate ids, or one id per line, and nothing else."""


@dataclass
class ResolvedParticipant:
    agent: Agent
    system_prompt: str
    position_id: Optional[str] = None
    team_id: Optional[str] = None

    @property
    def name(self) -> str:
        return self.agent.name


class ParticipantResolver:
    """Turns abstract participant specs into ordered, deduplicated agents.

    One resolver lives for one run, so round-robin rotation is remembered
    across the run's actions and starts fresh on the next run.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        hierarchy: Hierarchy,
        invoker: Optional[AgentInvoker] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.registry = registry
        self.hierarchy = hierarchy
        self.invoker = invoker
        self.rng = rng or random.Random()
        self._rotation: Dict[str, int] = {}

    async def resolve(
        self,
        spec: ParticipantSpec,
        context: str,
        render: Renderer,
        director_call: Optional[DirectorCall] = None,
    ) -> List[ResolvedParticipant]:
        """Resolve ``spec`` for one action.

        ``director_call`` replaces the plain invoker for dynamic selection so
        the caller can apply its own time budgets and logging.
        """
        if spec.kind == ParticipantKind.EXPLICIT:
            resolved = [p for ref in spec.ids for p in self.resolve_ref(ref, render)]
        elif spec.kind == ParticipantKind.TEAM:
            resolved = []
            for team_id in spec.team_ids:
                for position in self.hierarchy.team_positions(team_id):
                    resolved.extend(self._resolve_position(position, render))
        elif spec.kind == ParticipantKind.POOL:
            if not spec.pool_id:
                raise UnresolvedParticipant("Pool participant spec has no pool id")
            resolved = [self._from_agent(self._select_from_pool(self.hierarchy.require_pool(spec.pool_id)), render)]
        elif spec.kind == ParticipantKind.DYNAMIC:
            resolved = await self._resolve_dynamic(spec, context, render, director_call)
        elif spec.kind == ParticipantKind.ALL_EXECUTIVES:
            resolved = []
            for position in self.hierarchy.executive_positions():
                resolved.extend(self._resolve_position(position, render))
        else:
            raise UnresolvedParticipant(f"Unknown participant kind: {spec.kind}")

        unique = self._dedupe(resolved)
        if not unique:
            raise UnresolvedParticipant(f"Participant spec '{spec.kind.value}' resolved to no agents")
        return unique

    def system_prompt_for(self, agent: Agent, render: Renderer, position: Optional[Position] = None) -> str:
        spec = agent.system_prompt
        if spec.source == PromptSource.PRESET:
            text = render(self.registry.get_prompt_preset(spec.preset_name) or "")
        elif spec.source == PromptSource.TOKENS and spec.stack:
            text = build_prompt(spec.stack, render, spec.separator)
        elif spec.source == PromptSource.TOKENS:
            tokens = [PromptStackItem(type=StackItemType.TOKEN, token=name) for name in spec.builder_tokens]
            text = build_prompt(tokens, render, "\n")
        else:
            text = render(spec.custom_text)
        if position is not None and position.role_description:
            return f"{position.role_description}\n\n{text}".strip()
        return text

    # ------------------------------------------------------------------ #
    # Reference resolution
    # ------------------------------------------------------------------ #
    def resolve_ref(self, ref: str, render: Renderer) -> List[ResolvedParticipant]:
        position = self.hierarchy.get_position(ref)
        if position is not None:
            return self._resolve_position(position, render)
        agent = self.registry.get(ref)
        if agent is not None:
            return [self._from_agent(agent, render)]
        raise UnresolvedParticipant(f"'{ref}' is neither a position nor an agent")

    def _resolve_position(self, position: Position, render: Renderer) -> List[ResolvedParticipant]:
        if position.assigned_agent_id:
            agent = self.registry.get(position.assigned_agent_id)
            if agent is None:
                raise UnresolvedParticipant(
                    f"Position '{position.id}' references missing agent '{position.assigned_agent_id}'"
                )
        elif position.assigned_pool_id:
            agent = self._select_from_pool(self.hierarchy.require_pool(position.assigned_pool_id))
        else:
            raise UnresolvedParticipant(f"Position '{position.id}' has no agent or pool assigned")
        return [self._from_agent(agent, render, position)]

    def _from_agent(self, agent: Agent, render: Renderer, position: Optional[Position] = None) -> ResolvedParticipant:
        snapshot = agent.snapshot()
        return ResolvedParticipant(
            agent=snapshot,
            system_prompt=self.system_prompt_for(snapshot, render, position),
            position_id=position.id if position else None,
            team_id=position.team_id if position else None,
        )

    def _select_from_pool(self, pool: AgentPool) -> Agent:
        agent_ids = [aid for aid in pool.agent_ids if aid in self.registry]
        if not agent_ids:
            raise UnresolvedParticipant(f"Pool '{pool.id}' has no registered agents")

        if pool.selection_mode == SelectionMode.ROUND_ROBIN:
            index = self._rotation.get(pool.id, 0)
            self._rotation[pool.id] = index + 1
            chosen = agent_ids[index % len(agent_ids)]
        elif pool.selection_mode == SelectionMode.WEIGHTED:
            weights = [max(0.0, float(pool.weights.get(aid, 1.0))) for aid in agent_ids]
            total = sum(weights)
            if total <= 0:
                chosen = self.rng.choice(agent_ids)
            else:
                chosen = self.rng.choices(agent_ids, weights=[w / total for w in weights], k=1)[0]
        else:
            chosen = self.rng.choice(agent_ids)
        logger.debug("Pool %s selected %s", pool.id, chosen)
        return self.registry.require(chosen)

    # ------------------------------------------------------------------ #
    # Dynamic selection
    # ------------------------------------------------------------------ #
    async def _resolve_dynamic(
        self,
        spec: ParticipantSpec,
        context: str,
        render: Renderer,
        director_call: Optional[DirectorCall],
    ) -> List[ResolvedParticipant]:
        if not spec.director:
            raise UnresolvedParticipant("Dynamic participant spec has no director")
        if director_call is None:
            if self.invoker is None:
                raise UnresolvedParticipant("Dynamic selection needs an agent invoker")
            invoker = self.invoker

            async def _plain_call(participant: ResolvedParticipant, messages: List[ChatMessage]) -> str:
                return await invoker.invoke(participant.agent, participant.system_prompt, messages)

            director_call = _plain_call

        director = self.resolve_ref(spec.director, render)[0]

        candidates: List[ResolvedParticipant] = []
        for ref in spec.candidates:
            candidates.extend(self.resolve_ref(ref, render))
        candidates = self._dedupe(candidates)
        if not candidates:
            raise UnresolvedParticipant("Dynamic participant spec has no candidates")

        min_select = max(1, spec.min_select)
        max_select = spec.max_select or len(candidates)
        listing = "\n".join(
            f"- {c.agent.id}: {c.agent.name}" + (f" ({c.agent.description})" if c.agent.description else "")
            for c in candidates
        )
        prompt = DIRECTOR_PROMPT.format(
            context=context, candidates=listing, min_select=min_select, max_select=max_select
        )
        reply = await director_call(director, [ChatMessage(role="user", content=prompt)])

        chosen = self._match_candidates(parse_selection(reply), candidates)
        for candidate in candidates:
            if len(chosen) >= min_select:
                break
            if candidate not in chosen:
                chosen.append(candidate)
        return chosen[:max_select]

    @staticmethod
    def _match_candidates(picks: Sequence[str], candidates: Sequence[ResolvedParticipant]) -> List[ResolvedParticipant]:
        chosen: List[ResolvedParticipant] = []
        for pick in picks:
            key = pick.strip().lower()
            for candidate in candidates:
                if key in (candidate.agent.id.lower(), candidate.agent.name.lower()) and candidate not in chosen:
                    chosen.append(candidate)
                    break
        return chosen

    @staticmethod
    def _dedupe(participants: Sequence[ResolvedParticipant]) -> List[ResolvedParticipant]:
        seen = set()
        unique = []
        for participant in participants:
            if participant.agent.id in seen:
                continue
            seen.add(participant.agent.id)
            unique.append(participant)
        return unique


def parse_selection(reply: str) -> List[str]:
    """Parse a director reply as a JSON list, falling back to one entry per line."""
    text = (reply or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
        text = text.strip()
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, list):
        return [str(item) for item in parsed if str(item).strip()]

    picks = []
    for line in text.splitlines():
        line = line.strip().lstrip("-*0123456789.) ").strip()
        if line:
            picks.append(line.split(":", 1)[0].strip())
    return picks
