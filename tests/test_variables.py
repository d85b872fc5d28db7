import copy

from council.orchestrator.tokens import apply_transforms, build_prompt, find_tokens, strip_braces, substitute
from council.state.agents import PromptStackItem
from council.orchestrator.variables import DEFAULT_GLOBALS, NOT_SET, OutputRouter, VariableStore, as_text
from council.state.pipelines import Action, VariableScope


def test_not_set_is_a_falsy_singleton():
    assert not NOT_SET
    assert copy.deepcopy(NOT_SET) is NOT_SET
    assert as_text(NOT_SET) == ""
    assert as_text(None) == ""
    assert as_text(3) == "3"


def test_store_seeds_default_globals_and_scopes():
    store = VariableStore({"style": "terse"})

    assert all(store.get(name) is NOT_SET for name in DEFAULT_GLOBALS)
    assert store.get("style") == "terse"
    assert not store.is_declared("nothing")

    store.begin_phase({"style": "lush"})
    assert store.get("style") == "lush"
    assert store.get_scoped("style", VariableScope.GLOBAL) == "terse"

    store.set("draft", "v1", VariableScope.PHASE)
    store.append("draft", "v2", VariableScope.PHASE)
    assert store.get("draft") == "v1\n\nv2"

    assert store.end_phase(["draft", "absent"]) == ["draft"]
    assert store.phase_local == {}
    assert store.get("draft") == "v1\n\nv2"
    assert store.to_plain()["global"]["finalDraft"] is None


def test_router_stages_until_reconcile():
    store = VariableStore()
    conflicts = []
    router = OutputRouter(store, on_conflict=lambda *args: conflicts.append(args))
    seq = Action.from_dict({"id": "seq", "output": {"variable": "notes"}})
    bg = Action.from_dict({"id": "bg", "output": {"variable": "notes"}})
    other = Action.from_dict({"id": "other", "output": {"variable": "commentary", "scope": "global", "append": True}})

    router.route(bg, "staged", staged=True)
    router.route(other, "first", staged=True)
    assert store.get("notes") is NOT_SET
    assert router.has_staged("bg")

    router.route(seq, "direct")
    assert store.get("notes") == "direct"

    assert router.reconcile(["bg", "seq", "other"], only=["other"]) == []
    assert store.get("commentary") == "first"
    assert router.reconcile(["bg", "seq", "other"]) == ["notes"]
    assert store.get("notes") == "direct"
    assert conflicts == [("bg", "notes", VariableScope.PHASE)]


def test_token_helpers():
    text = "{{ input }} and {{phase.output}} and {{input}} and {{action:a1:done}}"

    assert find_tokens(text) == ["input", "phase.output", "action:a1:done"]
    assert substitute(text, {"input": "X"}.get) == "X and {{phase.output}} and X and {{action:a1:done}}"
    assert strip_braces(" {{ lore }} ") == "lore"
    assert substitute("", lambda name: "x") == ""


def stack_renderer(values):
    return lambda text: substitute(text, values.get)


def test_transforms_apply_in_order():
    assert apply_transforms("  hello world ", ["trim", "capitalize"]) == "Hello world"
    assert apply_transforms("Shout", ["uppercase"]) == "SHOUT"
    assert apply_transforms("QUIET", ["lowercase"]) == "quiet"
    assert apply_transforms("abcdef", ["truncate:3"]) == "abc..."
    assert apply_transforms("abc", ["truncate:3"]) == "abc"
    assert apply_transforms("x" * 120, ["truncate"]) == "x" * 100 + "..."
    assert apply_transforms("same", ["sparkle"]) == "same"


def test_prompt_stack_assembles_enabled_blocks():
    render = stack_renderer({"genre": "noir", "audience": "", "tone": "grim"})
    stack = [
        PromptStackItem.from_dict("You are a storyteller."),
        {"type": "static", "content": "Keep {{genre}} literal."},
        {"type": "token", "token": "{{genre}}", "transforms": ["uppercase"]},
        {"type": "template", "content": "Write {{genre}} in a {{tone}} voice."},
        {"type": "conditional", "condition": "tone", "content": "Tone: {{tone}}"},
        {"type": "conditional", "condition": "audience", "content": "Audience: {{audience}}"},
        {"type": "conditional", "condition": "missing", "content": "never shown"},
        {"type": "text", "content": "disabled block", "enabled": False},
        {"type": "token", "token": "audience"},
    ]
    items = [item if isinstance(item, PromptStackItem) else PromptStackItem.from_dict(item) for item in stack]

    prompt = build_prompt(items, render, separator="\n")

    assert prompt.splitlines() == [
        "You are a storyteller.",
        "Keep {{genre}} literal.",
        "NOIR",
        "Write noir in a grim voice.",
        "Tone: grim",
    ]
