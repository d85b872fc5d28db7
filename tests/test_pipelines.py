import json

import pytest

from council.errors import NotFound
from council.state.persistence import JsonFileStore
from council.state.pipelines import (
    ActionType,
    Consolidation,
    LifecycleStage,
    Pipeline,
    PipelineStore,
    TriggerType,
    VariableScope,
)

DEFINITION = {
    "id": "novel",
    "name": "Novel",
    "globals": {"style": "terse"},
    "timeout": 120,
    "phases": [
        {
            "id": "outline",
            "consolidation": "designated",
            "designated_action_id": "plan",
            "output_variable": "finalOutline",
            "lifecycle_hooks": {"after_actions": ["outlined"]},
            "actions": [
                {
                    "id": "plan",
                    "participants": {"kind": "team", "team_ids": ["story"], "orchestration": "parallel"},
                    "output": {"variable": "notes", "scope": "global", "append": True},
                    "retry_policy": {"count": 2, "delay_ms": 10},
                },
                {"id": "review", "type": "user_gavel", "trigger_type": "on", "on_event": "outlined"},
            ],
        }
    ],
}


def test_pipeline_from_dict_applies_defaults():
    pipeline = Pipeline.from_dict(DEFINITION)
    phase = pipeline.phase("outline")
    plan, review = phase.actions

    assert pipeline.version == "1.0.0"
    assert phase.consolidation == Consolidation.DESIGNATED
    assert phase.hooks(LifecycleStage.AFTER_ACTIONS) == ["outlined"]
    assert plan.name == "plan"
    assert plan.prompt_template == "{{input}}"
    assert plan.output.scope == VariableScope.GLOBAL
    assert plan.retry_policy.count == 2
    assert review.type == ActionType.USER_GAVEL
    assert review.trigger_type == TriggerType.ON
    assert [a.id for a in pipeline.all_actions()] == ["plan", "review"]

    with pytest.raises(ValueError):
        Pipeline.from_dict({"phases": []})


def test_export_import_round_trip():
    store = PipelineStore()
    store.create(DEFINITION)

    text = store.export_json("novel")
    other = PipelineStore()
    imported = other.import_json(text)

    assert imported.to_dict() == store.require("novel").to_dict()
    assert json.loads(text)["phases"][0]["lifecycle_hooks"] == {"AFTER_ACTIONS": ["outlined"]}
    with pytest.raises(ValueError):
        other.import_json(text)
    other.import_json(text, overwrite=True)


def test_crud_and_clone():
    store = PipelineStore()
    store.create(DEFINITION)

    with pytest.raises(ValueError):
        store.create(DEFINITION)
    with pytest.raises(NotFound):
        store.require("missing")

    clone = store.clone("novel")
    assert clone.id == "novel_copy"
    assert clone.name == "Novel (Copy)"
    clone.phases[0].actions[0].prompt_template = "changed"
    assert store.require("novel").phases[0].actions[0].prompt_template == "{{input}}"

    updated = store.update("novel", {"id": "ignored", "description": "A book"})
    assert updated.id == "novel"
    assert updated.description == "A book"

    assert store.delete("novel_copy")
    assert not store.delete("novel_copy")
    assert [p.id for p in store.list_all()] == ["novel"]


def test_save_and_load_through_store(tmp_path):
    store = PipelineStore(JsonFileStore(tmp_path))
    store.create(DEFINITION)
    store.save("novel")

    fresh = PipelineStore(JsonFileStore(tmp_path))
    loaded = fresh.load("novel")

    assert loaded.to_dict() == store.require("novel").to_dict()
    assert (tmp_path / "pipelines" / "novel.json").exists()
    with pytest.raises(NotFound):
        fresh.load("missing")
    with pytest.raises(RuntimeError):
        PipelineStore().save("novel")


def test_preset_merge_keeps_existing():
    store = PipelineStore()
    store.create({"id": "novel", "name": "Mine"})

    store.apply_preset({"pipelines": [DEFINITION, {"id": "poem"}]}, merge=True)

    assert store.require("novel").name == "Mine"
    assert store.get("poem") is not None

    store.apply_preset({"pipelines": [{"id": "poem"}]})
    assert [p.id for p in store.list_all()] == ["poem"]
