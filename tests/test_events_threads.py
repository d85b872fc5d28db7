import json
from pathlib import Path

from council.orchestrator.events import EventChannel, EventType
from council.orchestrator.threads import ThreadManager, ThreadType
from council.utils.logger import RunLogger


def test_subscribers_get_independent_copies():
    channel = EventChannel()
    first, second = [], []

    def mutate(event):
        event.payload["data"]["x"] = "changed"
        first.append(event)

    channel.subscribe(mutate)
    channel.subscribe(second.append)
    payload = {"x": "original"}
    channel.emit(EventType.RUN_STARTED, "r1", data=payload)

    assert payload == {"x": "original"}
    assert second[0].payload["data"] == {"x": "original"}


def test_failing_subscriber_does_not_break_others():
    channel = EventChannel()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    channel.subscribe(broken)
    channel.subscribe(seen.append)
    channel.emit(EventType.RUN_PAUSED, "r1")

    assert len(seen) == 1


def test_type_filter_and_unsubscribe():
    channel = EventChannel()
    seen = []
    unsubscribe = channel.subscribe(seen.append, [EventType.RUN_COMPLETED])

    channel.emit(EventType.RUN_STARTED, "r1")
    channel.emit(EventType.RUN_COMPLETED, "r1", output="done")
    unsubscribe()
    channel.emit(EventType.RUN_COMPLETED, "r2")

    assert [e.run_id for e in seen] == ["r1"]
    assert seen[0].to_dict()["event"] == "run.completed"
    assert seen[0].to_dict()["output"] == "done"


def test_thread_context_formats():
    threads = ThreadManager(max_messages=2)
    threads.add("a1", "user", "hello")
    threads.add("a1", "assistant", "hi", name="Writer")
    threads.add("a1", "user", "again")

    dialogue = threads.context_messages("a1")
    assert [(m.role, m.content) for m in dialogue] == [("assistant", "hi"), ("user", "again")]

    threads.context_format = "transcript"
    transcript = threads.context_messages("a1")
    assert len(transcript) == 1
    assert transcript[0].content == "Conversation so far:\nWriter: hi\nuser: again"

    assert threads.context_messages("missing") == []
    assert len(threads.export()["messages"]) == 3


def test_run_logger_writes_json_lines(tmp_path: Path):
    channel = EventChannel()
    logger = RunLogger(tmp_path / "logs").attach(channel)

    channel.emit(EventType.RUN_STARTED, "r1", pipeline_id="p")
    logger.detach()
    channel.emit(EventType.RUN_COMPLETED, "r1")

    lines = (tmp_path / "logs" / "runs.log").read_text().splitlines()
    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "run.started"
    assert entry["pipeline_id"] == "p"


def test_first_message_survives_trimming_and_clear():
    threads = ThreadManager(max_messages=3)
    threads.create("review", ThreadType.PHASE, phase_id="ph", first_message="Critique the draft.")
    for text in ["one", "two", "three", "four"]:
        threads.add("review", "user", text)

    assert [m.content for m in threads.get_messages("review")] == ["Critique the draft.", "three", "four"]

    threads.clear("review")
    assert [m.content for m in threads.get_messages("review")] == ["Critique the draft."]
    threads.clear("review", keep_first=False)
    assert threads.get_messages("review") == []
    assert threads.clear("missing") is False


def test_get_messages_filters():
    threads = ThreadManager()
    threads.create("t", first_message="Team brief")
    threads.add("t", "user", "go")
    threads.add("t", "assistant", "a1", agent_id="agent_a")
    threads.add("t", "assistant", "b1", agent_id="agent_b")
    threads.add("t", "assistant", "a2", agent_id="agent_a")

    assert [m.content for m in threads.get_messages("t", role="assistant")] == ["a1", "b1", "a2"]
    assert [m.content for m in threads.get_messages("t", agent_id="agent_a")] == ["a1", "a2"]
    assert [m.content for m in threads.get_messages("t", limit=2)] == ["b1", "a2"]
    assert [m.content for m in threads.get_messages("t", skip_first=True)][0] == "go"
    assert threads.get_messages("nowhere") == []


def test_shared_message_is_logged_once():
    threads = ThreadManager()
    threads.create("phase:ph", ThreadType.PHASE, phase_id="ph")
    threads.disabled.add("team:ph:story")

    threads.add("a1", "assistant", "reply", also=["phase:ph", "team:ph:story"])

    assert [m.content for m in threads.get_messages("a1")] == ["reply"]
    assert [m.content for m in threads.get_messages("phase:ph")] == ["reply"]
    assert not threads.has("team:ph:story")
    assert len(threads.log) == 1
    assert [t.id for t in threads.of_type(ThreadType.PHASE)] == ["phase:ph"]
