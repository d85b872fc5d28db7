import asyncio
import random

import pytest

from council.errors import UnresolvedParticipant
from council.orchestrator.participants import ParticipantResolver, parse_selection
from council.orchestrator.tokens import substitute
from council.state.pipelines import ParticipantSpec


def identity(text):
    return text


def resolve(resolver, spec, context="task"):
    return asyncio.run(resolver.resolve(ParticipantSpec.from_dict(spec), context, identity))


def ids(participants):
    return [p.agent.id for p in participants]


@pytest.fixture
def resolver(registry, hierarchy, invoker):
    return ParticipantResolver(registry, hierarchy, invoker, random.Random(7))


def test_team_resolves_leader_first_with_role_description(hierarchy, resolver):
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_position({"id": "m1", "name": "Member", "team_id": "story", "assigned_agent_id": "agent_a"})
    hierarchy.create_position(
        {"id": "lead", "name": "Lead", "assigned_agent_id": "writer", "role_description": "Lead the team."}
    )
    hierarchy.set_team_leader("story", "lead")

    participants = resolve(resolver, {"kind": "team", "team_ids": ["story"]})

    assert ids(participants) == ["writer", "agent_a"]
    assert participants[0].system_prompt == "Lead the team.\n\nYou are Writer."
    assert participants[0].position_id == "lead"


def test_explicit_refs_are_deduplicated(hierarchy, resolver):
    hierarchy.create_position({"id": "author", "name": "Author", "assigned_agent_id": "writer"})

    participants = resolve(resolver, {"ids": ["writer", "author", "editor"]})

    assert ids(participants) == ["writer", "editor"]


def test_unknown_ref_and_unfilled_position_are_unresolved(hierarchy, resolver):
    with pytest.raises(UnresolvedParticipant):
        resolve(resolver, {"ids": ["ghost"]})
    with pytest.raises(UnresolvedParticipant):
        resolve(resolver, {"kind": "all_executives"})

    hierarchy.assign_agent("publisher", "editor")
    assert ids(resolve(resolver, {"kind": "all_executives"})) == ["editor"]


def test_weighted_pool_never_picks_zero_weight(hierarchy, resolver):
    hierarchy.create_pool(
        {
            "id": "w",
            "agent_ids": ["agent_a", "agent_b"],
            "selection_mode": "weighted",
            "weights": {"agent_a": 0, "agent_b": 3},
        }
    )

    picks = {ids(resolve(resolver, {"kind": "pool", "pool_id": "w"}))[0] for _ in range(20)}

    assert picks == {"agent_b"}


def test_position_backed_by_pool_rotates(hierarchy, resolver):
    hierarchy.create_pool({"id": "rr", "agent_ids": ["agent_a", "agent_b"], "selection_mode": "round_robin"})
    hierarchy.create_position({"id": "critic", "name": "Critic"})
    hierarchy.assign_pool("critic", "rr")

    picks = [ids(resolve(resolver, {"ids": ["critic"]}))[0] for _ in range(3)]

    assert picks == ["agent_a", "agent_b", "agent_a"]


def test_dynamic_selection_respects_bounds(resolver, invoker):
    invoker.replies["director"] = ['["agent_b"]', "agent_a\nagent_b"]
    spec = {"kind": "dynamic", "director": "director", "candidates": ["agent_a", "agent_b", "writer"], "min_select": 2}

    padded = resolve(resolver, spec, context="Write a ballad")
    capped = resolve(resolver, {**spec, "min_select": 1, "max_select": 1})

    assert ids(padded) == ["agent_b", "agent_a"]
    assert ids(capped) == ["agent_a"]
    director_prompt = invoker.calls[0]["messages"][-1]
    assert "Write a ballad" in director_prompt
    assert "- writer: Writer" in director_prompt


def test_dynamic_selection_needs_an_invoker(registry, hierarchy):
    resolver = ParticipantResolver(registry, hierarchy)

    with pytest.raises(UnresolvedParticipant):
        resolve(resolver, {"kind": "dynamic", "director": "director", "candidates": ["writer"]})


def test_system_prompt_sources(registry, resolver):
    registry.set_prompt_preset("noir", "Write hard-boiled prose.")
    registry.create({"id": "noir", "name": "Noir", "system_prompt": {"source": "preset", "preset_name": "noir"}})
    registry.create(
        {"id": "built", "name": "Built", "system_prompt": {"source": "tokens", "builder_tokens": ["style", "tone"]}}
    )

    noir, built = resolve(resolver, {"ids": ["noir", "built"]})

    assert noir.system_prompt == "Write hard-boiled prose."
    assert built.system_prompt == "{{style}}\n{{tone}}"


def test_resolved_agents_are_snapshots(registry, resolver):
    participant = resolve(resolver, {"ids": ["writer"]})[0]
    registry.update("writer", {"name": "Renamed"})

    assert participant.name == "Writer"


def test_parse_selection_formats():
    assert parse_selection('```json\n["writer", "editor"]\n```') == ["writer", "editor"]
    assert parse_selection("1. writer: strongest voice\n- editor") == ["writer", "editor"]
    assert parse_selection("") == []


def test_token_system_prompt_uses_its_stack(registry, resolver):
    registry.create(
        {
            "id": "stacked",
            "name": "Stacked",
            "system_prompt": {
                "source": "tokens",
                "separator": " | ",
                "stack": [
                    "Base rules.",
                    {"type": "token", "token": "style", "transforms": ["capitalize"]},
                    {"type": "conditional", "condition": "deadline", "content": "Due {{deadline}}."},
                ],
            },
        }
    )
    values = {"style": "sparse prose"}
    spec = ParticipantSpec.from_dict({"ids": ["stacked"]})

    participant = asyncio.run(resolver.resolve(spec, "task", lambda text: substitute(text, values.get)))[0]

    assert participant.system_prompt == "Base rules. | Sparse prose"
