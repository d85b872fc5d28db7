import pytest

from council.errors import HierarchyError, NotFound
from council.state.agents import AgentRegistry, ReasoningConfig
from council.state.hierarchy import Hierarchy, Tier


def test_publisher_is_mandatory(hierarchy):
    publisher = hierarchy.require_position("publisher")

    assert publisher.tier == Tier.EXECUTIVE
    assert publisher.is_mandatory
    with pytest.raises(HierarchyError):
        hierarchy.delete_position("publisher")
    with pytest.raises(HierarchyError):
        hierarchy.update_position("publisher", {"tier": "member"})


def test_agent_and_pool_assignment_are_exclusive(hierarchy):
    hierarchy.create_pool({"id": "rr", "agent_ids": ["agent_a", "agent_b"]})
    hierarchy.create_position({"id": "critic", "name": "Critic", "assigned_agent_id": "editor"})

    position = hierarchy.assign_pool("critic", "rr")
    assert (position.assigned_agent_id, position.assigned_pool_id) == (None, "rr")
    assert position.is_filled

    position = hierarchy.assign_agent("critic", "writer")
    assert (position.assigned_agent_id, position.assigned_pool_id) == ("writer", None)

    with pytest.raises(HierarchyError):
        hierarchy.create_position(
            {"id": "both", "name": "Both", "assigned_agent_id": "writer", "assigned_pool_id": "rr"}
        )
    with pytest.raises(NotFound):
        hierarchy.assign_agent("critic", "ghost")


def test_pool_validation(hierarchy):
    with pytest.raises(HierarchyError):
        hierarchy.create_pool({"id": "empty", "agent_ids": []})
    with pytest.raises(HierarchyError):
        hierarchy.create_pool({"id": "neg", "agent_ids": ["writer"], "weights": {"writer": -1}})
    with pytest.raises(NotFound):
        hierarchy.create_pool({"id": "ghosts", "agent_ids": ["ghost"]})

    hierarchy.create_pool({"id": "rr", "agent_ids": ["writer"]})
    hierarchy.create_position({"id": "critic", "name": "Critic", "assigned_pool_id": "rr"})
    with pytest.raises(HierarchyError):
        hierarchy.delete_pool("rr")
    hierarchy.unassign("critic")
    assert hierarchy.delete_pool("rr")


def test_team_membership_and_leader(hierarchy):
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_team({"id": "art", "name": "Art"})
    hierarchy.create_position({"id": "m1", "name": "Member", "team_id": "story"})
    hierarchy.create_position({"id": "m2", "name": "Member 2"})

    hierarchy.set_team_leader("story", "m2")
    team = hierarchy.require_team("story")
    assert team.position_ids() == ["m2", "m1"]
    assert hierarchy.require_position("m2").tier == Tier.LEADER

    with pytest.raises(HierarchyError):
        hierarchy.set_team_leader("art", "m1")

    hierarchy.add_member("art", "m1")
    assert hierarchy.require_team("story").member_position_ids == ["m2"]
    assert hierarchy.require_position("m1").team_id == "art"

    hierarchy.remove_member("story", "m2")
    assert hierarchy.require_team("story").leader_position_id is None


def test_delete_team_optionally_deletes_positions(hierarchy):
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_position({"id": "m1", "name": "Member", "team_id": "story"})
    hierarchy.create_team({"id": "art", "name": "Art"})
    hierarchy.create_position({"id": "m2", "name": "Member", "team_id": "art"})

    hierarchy.delete_team("story")
    hierarchy.delete_team("art", delete_positions=True)

    assert hierarchy.require_position("m1").team_id is None
    assert hierarchy.get_position("m2") is None
    assert hierarchy.teams == {}


def test_referenced_agent_cannot_be_deleted(registry, hierarchy):
    hierarchy.assign_agent("publisher", "writer")
    hierarchy.create_pool({"id": "rr", "agent_ids": ["agent_a"]})

    with pytest.raises(HierarchyError) as exc_info:
        registry.delete("writer")
    assert "position:publisher" in str(exc_info.value)
    with pytest.raises(HierarchyError):
        registry.delete("agent_a")

    assert registry.delete("agent_b")
    assert not registry.delete("agent_b")


def test_unfilled_positions_and_summary(hierarchy):
    hierarchy.create_position({"id": "critic", "name": "Critic", "assigned_agent_id": "editor"})

    assert [p.id for p in hierarchy.unfilled_positions()] == ["publisher"]
    assert hierarchy.get_summary()["filled"] == 1


def test_hierarchy_preset_round_trip(registry, hierarchy):
    hierarchy.create_pool({"id": "rr", "agent_ids": ["agent_a", "agent_b"], "selection_mode": "round_robin"})
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_position({"id": "m1", "name": "Member", "team_id": "story", "assigned_pool_id": "rr"})
    hierarchy.create_position({"id": "lead", "name": "Lead", "assigned_agent_id": "writer"})
    hierarchy.set_team_leader("story", "lead")
    exported = hierarchy.export_preset()

    restored = Hierarchy(registry, company_name="Other")
    restored.apply_preset(exported)

    assert restored.company_name == "The Council"
    assert restored.require_team("story").position_ids() == ["lead", "m1"]
    assert restored.require_position("m1").assigned_pool_id == "rr"
    assert restored.require_position("publisher").is_mandatory


def test_registry_crud_and_presets():
    registry = AgentRegistry()
    registry.create({"id": "w", "name": "Writer", "api_config": {"model": "m1"}})

    with pytest.raises(HierarchyError):
        registry.create({"id": "w", "name": "Again"})
    with pytest.raises(HierarchyError):
        registry.create({"id": "x"})

    updated = registry.update("w", {"id": "ignored", "api_config": {"temperature": 0.1}})
    assert updated.id == "w"
    assert updated.api_config.model == "m1"
    assert updated.api_config.temperature == 0.1

    copy = registry.duplicate("w")
    assert copy.id == "w_copy"
    assert copy.name == "Writer (Copy)"

    registry.set_prompt_preset("noir", "Hard-boiled.")
    exported = registry.export_preset()
    other = AgentRegistry()
    other.apply_preset(exported)
    assert [a.id for a in other] == ["w", "w_copy"]
    assert other.get_prompt_preset("noir") == "Hard-boiled."


def test_reasoning_blocks_are_stripped():
    reasoning = ReasoningConfig(enabled=True)

    assert reasoning.strip("<thinking>plan</thinking>Answer") == "Answer"
    assert reasoning.strip("Answer<thinking>unfinished") == "Answer"
    assert ReasoningConfig().strip("<thinking>kept</thinking>x") == "<thinking>kept</thinking>x"


def test_failed_team_creation_changes_nothing(hierarchy):
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_position({"id": "m1", "name": "Member"})
    hierarchy.create_position({"id": "m2", "name": "Member 2", "team_id": "story"})

    with pytest.raises(NotFound):
        hierarchy.create_team({"id": "art", "name": "Art", "member_position_ids": ["m1", "ghost"]})
    with pytest.raises(HierarchyError):
        hierarchy.create_team({"id": "art", "name": "Art", "member_position_ids": ["m1"], "leader_position_id": "m2"})

    assert hierarchy.require_position("m1").team_id is None
    assert hierarchy.require_position("m2").team_id == "story"
    assert "art" not in hierarchy.teams


def test_failed_preset_apply_keeps_previous_hierarchy(hierarchy):
    hierarchy.create_pool({"id": "rr", "agent_ids": ["agent_a"]})
    hierarchy.create_team({"id": "story", "name": "Story"})
    hierarchy.create_position({"id": "m1", "name": "Member", "team_id": "story", "assigned_pool_id": "rr"})
    before = hierarchy.export_preset()

    broken = {
        "company_name": "Elsewhere",
        "pools": [{"id": "other", "agent_ids": ["writer"]}],
        "positions": [{"id": "p1", "name": "P1", "assigned_pool_id": "missing"}],
    }
    with pytest.raises((HierarchyError, NotFound)):
        hierarchy.apply_preset(broken)
    with pytest.raises((HierarchyError, NotFound)):
        hierarchy.apply_preset({"pools": [{"id": "ghosts", "agent_ids": ["ghost"]}]}, merge=True)

    assert hierarchy.export_preset() == before
