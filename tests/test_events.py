"""Tests for the Event Bus."""

import threading

import pytest

from catalyst.lib.errors import CorruptState
from catalyst.workflow.events import Event, EventBus, EventKind


class TestPublish:
    """Publishing and history."""

    def test_sequence_numbers_increase(self):
        bus = EventBus()
        first = bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        second = bus.publish(EventKind.AGENT_STARTED, "parser", "f-1")
        assert (first.seq, second.seq) == (1, 2)
        assert first.id != second.id

    def test_history_filters_by_feature(self):
        bus = EventBus()
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-2")
        assert [e.feature_id for e in bus.history("f-2")] == ["f-2"]
        assert len(bus.history()) == 2

    def test_events_are_immutable(self):
        event = EventBus().publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        with pytest.raises(AttributeError):
            event.agent = "someone"

    def test_accepts_kind_value(self):
        event = EventBus().publish("critic_rejected", "critic", "f-1")
        assert event.kind == EventKind.CRITIC_REJECTED


class TestSubscribe:
    """Broadcast delivery."""

    def test_every_subscriber_sees_every_event_in_order(self):
        bus = EventBus()
        a = bus.subscribe()
        b = bus.subscribe()
        for kind in (EventKind.PIPELINE_STARTED, EventKind.AGENT_STARTED, EventKind.AGENT_COMPLETED):
            bus.publish(kind, "parser", "f-1")
        assert [e.seq for e in a.drain()] == [1, 2, 3]
        assert [e.seq for e in b.drain()] == [1, 2, 3]

    def test_late_subscriber_misses_earlier_events(self):
        bus = EventBus()
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        sub = bus.subscribe()
        bus.publish(EventKind.AGENT_STARTED, "parser", "f-1")
        assert [e.kind for e in sub.drain()] == [EventKind.AGENT_STARTED]

    def test_replay_delivers_history_first(self):
        bus = EventBus()
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        sub = bus.subscribe(replay=True)
        bus.publish(EventKind.AGENT_STARTED, "parser", "f-1")
        assert [e.seq for e in sub.drain()] == [1, 2]

    def test_feature_filter(self):
        bus = EventBus()
        sub = bus.subscribe(feature_id="f-2")
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-2")
        assert [e.feature_id for e in sub.drain()] == ["f-2"]

    def test_close_stops_iteration(self):
        bus = EventBus()
        sub = bus.subscribe()
        received = []

        def consume():
            for event in sub:
                received.append(event.kind)

        thread = threading.Thread(target=consume)
        thread.start()
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1")
        sub.close()
        thread.join(5)
        assert not thread.is_alive()
        assert received == [EventKind.PIPELINE_STARTED]
        bus.publish(EventKind.AGENT_STARTED, "parser", "f-1")
        assert sub.get(timeout=0.01) is None

    def test_get_times_out(self):
        assert EventBus().subscribe().get(timeout=0.01) is None

    def test_concurrent_publishers_keep_one_order(self):
        bus = EventBus()
        a = bus.subscribe()
        b = bus.subscribe()

        def publish():
            for _ in range(50):
                bus.publish(EventKind.RESEARCH_PROGRESS, "researcher", "f-1")

        threads = [threading.Thread(target=publish) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        seqs = [e.seq for e in a.drain()]
        assert seqs == list(range(1, 201))
        assert [e.seq for e in b.drain()] == seqs


class TestPersistence:
    """JSONL log per feature."""

    def test_log_survives_new_bus(self, tmp_path):
        bus = EventBus(tmp_path)
        bus.publish(EventKind.PIPELINE_STARTED, "coordinator", "f-1", {"title": "Login"})
        bus.publish(EventKind.RESEARCH_STARTED, "researcher", "f-1", unknown_id="U-1")
        bus.publish(EventKind.STATE_RESTORED, "coordinator", None)

        events = EventBus(tmp_path).load_log("f-1")
        assert [e.kind for e in events] == [EventKind.PIPELINE_STARTED, EventKind.RESEARCH_STARTED]
        assert events[0].payload == {"title": "Login"}
        assert events[1].unknown_id == "U-1"

    def test_memory_history_is_capped_but_log_is_complete(self, tmp_path):
        bus = EventBus(tmp_path, history_limit=3)
        for n in range(5):
            bus.publish(EventKind.RESEARCH_PROGRESS, "researcher", "f-1", {"n": n})

        assert [e.payload["n"] for e in bus.history()] == [2, 3, 4]
        replayed = bus.subscribe(replay=True).drain()
        assert [e.seq for e in replayed] == [3, 4, 5]
        assert len(bus.load_log("f-1")) == 5

    def test_missing_log(self, tmp_path):
        assert EventBus(tmp_path).load_log("f-1") == []
        assert EventBus().load_log("f-1") == []

    def test_corrupt_log(self, tmp_path):
        (tmp_path / "f-1.jsonl").write_text('{"id": "x"}\n')
        with pytest.raises(CorruptState):
            EventBus(tmp_path).load_log("f-1")

    def test_round_trip(self):
        event = EventBus().publish(EventKind.MERGE_CONFLICTS, "coordinator", "f-1", {"paths": ["a.txt"]})
        assert Event.from_dict(event.to_dict()) == event
