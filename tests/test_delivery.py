import asyncio

import pytest

from council.errors import ModeLocked
from council.orchestrator.delivery import DeliveryAdapter, DeliveryMode, TokenMapping, format_results
from council.orchestrator.events import EventChannel, EventType


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter(host, retriever, clock):
    return DeliveryAdapter(host=host, retriever=retriever, cache_ttl_seconds=30, clock=clock)


def test_set_mode_is_locked_during_runs(adapter):
    changes = []
    adapter.events.subscribe(changes.append, [EventType.MODE_CHANGED])
    adapter.slot.write("stale")

    assert adapter.set_mode("compilation") == DeliveryMode.COMPILATION
    assert adapter.slot.is_empty
    assert [e.payload["mode"] for e in changes] == ["compilation"]

    adapter.lock_check = lambda: True
    with pytest.raises(ModeLocked):
        adapter.set_mode("injection")
    assert adapter.mode == DeliveryMode.COMPILATION
    with pytest.raises(ValueError):
        adapter.set_mode("telepathy")


def test_injection_mode_delivers_nothing(adapter, host):
    adapter.set_mode("injection")

    delivered = asyncio.run(adapter.deliver("r1", "text"))

    assert delivered is False
    assert host.messages == []
    assert adapter.slot.is_empty


def test_slot_take_clears():
    adapter = DeliveryAdapter(mode=DeliveryMode.COMPILATION)

    assert asyncio.run(adapter.deliver("r1", "compiled"))
    assert adapter.slot.read() == "compiled"
    assert adapter.slot.take() == "compiled"
    assert adapter.slot.take() is None


def test_synthesis_without_host_raises():
    with pytest.raises(RuntimeError):
        asyncio.run(DeliveryAdapter().deliver("r1", "text"))


def test_injection_caches_retrieval_until_ttl(adapter, retriever, clock):
    adapter.map_token({"source_token": "lore", "rag_pipeline_id": "lore", "max_results": 1})

    first = asyncio.run(adapter.before_generation(["{{lore}}", "{{unmapped}}"], "dragons"))
    clock.now = 10
    second = asyncio.run(adapter.before_generation(["lore"], "dragons"))
    clock.now = 45
    asyncio.run(adapter.before_generation(["lore"], "dragons"))

    assert first == {"lore": "Dragons hoard gold."}
    assert second == first
    assert len(retriever.calls) == 2


def test_mapping_changes_invalidate_cache(adapter, retriever):
    adapter.map_token({"source_token": "lore", "rag_pipeline_id": "lore"})
    asyncio.run(adapter.before_generation(["lore"]))
    adapter.map_token({"source_token": "other", "static_value": "x"})
    asyncio.run(adapter.before_generation(["lore"]))

    assert len(retriever.calls) == 2
    assert adapter.unmap_token("{{other}}")
    assert not adapter.unmap_token("other")


def test_apply_injection_leaves_unresolved_placeholders(adapter):
    adapter.map_token({"source_token": "style", "static_value": "terse"})
    adapter.map_token({"source_token": "lore", "rag_pipeline_id": "missing"})
    adapter.map_token({"source_token": "facts", "rag_pipeline_id": "missing", "static_value": "none known"})
    adapter.map_token({"source_token": "off", "static_value": "x", "enabled": False})

    prompt = asyncio.run(adapter.apply_injection("{{style}} | {{lore}} | {{facts}} | {{off}} | {{other}}"))

    assert prompt == "terse | {{lore}} | none known | {{off}} | {{other}}"


def test_format_results():
    text = "one\n\ntwo\n\nthree"

    assert format_results("t", text, TokenMapping("t", "p", max_results=2)) == "one\n\ntwo"
    listing = TokenMapping.from_dict({"source_token": "t", "rag_pipeline_id": "p", "output_format": "list"})
    assert listing.to_dict()["output_format"] == "list"
    assert format_results("t", text, listing) == "- one\n- two\n- three"
    xml = TokenMapping.from_dict({"source_token": "lore", "rag_pipeline_id": "p", "output_format": "xml"})
    assert format_results("lore", "one", xml) == "<lore>\n  <item>one</item>\n</lore>"


def test_token_mapping_requires_a_source():
    with pytest.raises(ValueError):
        TokenMapping.from_dict({"source_token": "lore"})
    with pytest.raises(ValueError):
        TokenMapping.from_dict({"rag_pipeline_id": "p"})


def test_delivery_events(host):
    events = EventChannel()
    seen = []
    events.subscribe(seen.append)
    adapter = DeliveryAdapter(host=host, events=events)

    asyncio.run(adapter.deliver("r1", "   "))
    asyncio.run(adapter.deliver("r1", "hello", {"pipeline_id": "p"}))

    assert [e.type for e in seen] == [EventType.DELIVERY_EMPTY, EventType.DELIVERY_COMPLETED]
    assert host.messages == [("hello", {"run_id": "r1", "mode": "synthesis", "pipeline_id": "p"})]
