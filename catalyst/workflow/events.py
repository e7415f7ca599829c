"""
Event Bus: append-only, broadcast log of lifecycle events.

The Coordinator is the single producer. Every subscriber gets its own queue
and receives every event published after it subscribed (or the in-memory history
when it asks for replay). Publication and fan-out happen under one lock, so
all subscribers observe events in emission order.

Events with a feature id are also appended to <state_dir>/events/<feature>.jsonl.
"""

import json
import logging
import queue
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Iterator

from catalyst.lib.errors import CorruptState
from catalyst.lib.validate import ValidationError, validate
from catalyst.state.io import append_line, now_iso

logger = logging.getLogger(__name__)

# In-memory replay window; the per-feature JSONL logs keep everything
DEFAULT_HISTORY_LIMIT = 10_000


class EventKind(str, Enum):
    PIPELINE_STARTED = "pipeline_started"
    AGENT_STARTED = "agent_started"
    AGENT_COMPLETED = "agent_completed"
    AGENT_FAILED = "agent_failed"
    DATA_PASSED = "data_passed"
    CRITIC_REJECTED = "critic_rejected"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    RESEARCH_STARTED = "research_started"
    RESEARCH_PROGRESS = "research_progress"
    RESEARCH_COMPLETED = "research_completed"
    INTERACTION_REQUIRED = "interaction_required"
    INTERACTION_RESOLVED = "interaction_resolved"
    MERGE_CONFLICTS = "merge_conflicts"
    STATE_RESTORED = "state_restored"
    WORKSPACE_OPENED = "workspace_opened"
    WORKSPACE_DISCARDED = "workspace_discarded"


@dataclass(frozen=True)
class Event:
    """Immutable lifecycle event."""
    id: str
    seq: int
    timestamp: str
    kind: EventKind
    agent: str
    feature_id: str | None = None
    unknown_id: str | None = None
    payload: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "kind": self.kind.value,
            "agent": self.agent,
            "feature_id": self.feature_id,
            "unknown_id": self.unknown_id,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            id=data["id"],
            seq=data["seq"],
            timestamp=data["timestamp"],
            kind=EventKind(data["kind"]),
            agent=data["agent"],
            feature_id=data.get("feature_id"),
            unknown_id=data.get("unknown_id"),
            payload=data.get("payload"),
        )


_CLOSED = object()


class Subscription:
    """One consumer's view of the bus."""

    def __init__(self, bus: "EventBus", feature_id: str | None = None):
        self._bus = bus
        self._queue: queue.Queue = queue.Queue()
        self.feature_id = feature_id
        self.closed = False

    def _deliver(self, event: Event) -> None:
        if self.feature_id is None or event.feature_id == self.feature_id:
            self._queue.put(event)

    def get(self, timeout: float | None = None) -> Event | None:
        """Next event, or None on timeout or once closed."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def drain(self) -> list[Event]:
        """Every event currently queued, without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)

    def __iter__(self) -> Iterator[Event]:
        """Block for events until the subscription is closed."""
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._bus.unsubscribe(self)
            self._queue.put(_CLOSED)


class EventBus:
    """Append-only event log with broadcast to subscribers."""

    def __init__(self, log_dir: Path | None = None, history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.log_dir = log_dir
        self._lock = threading.Lock()
        self._history: deque[Event] = deque(maxlen=history_limit)
        self._subscribers: list[Subscription] = []
        self._seq = 0

    def publish(
        self,
        kind: EventKind,
        agent: str,
        feature_id: str | None = None,
        payload: dict[str, Any] | None = None,
        unknown_id: str | None = None,
    ) -> Event:
        """Append an event and deliver it to every current subscriber."""
        with self._lock:
            self._seq += 1
            event = Event(
                id=str(uuid.uuid4()),
                seq=self._seq,
                timestamp=now_iso(),
                kind=EventKind(kind),
                agent=agent,
                feature_id=feature_id,
                unknown_id=unknown_id,
                payload=payload,
            )
            self._history.append(event)
            if self.log_dir is not None and feature_id:
                append_line(self.log_dir / f"{feature_id}.jsonl", json.dumps(event.to_dict()))
            for subscriber in self._subscribers:
                subscriber._deliver(event)

        logger.debug(f"[events] #{event.seq} {event.kind.value} {agent} {feature_id or ''}")
        return event

    def subscribe(self, replay: bool = False, feature_id: str | None = None) -> Subscription:
        """
        Subscribe from now on; replay=True first delivers the in-memory history.

        Replay covers at most the last history_limit events. Older ones are
        only in the feature logs (load_log).
        """
        subscription = Subscription(self, feature_id)
        with self._lock:
            if replay:
                for event in self._history:
                    subscription._deliver(event)
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def history(self, feature_id: str | None = None) -> list[Event]:
        with self._lock:
            return [e for e in self._history if feature_id is None or e.feature_id == feature_id]

    def load_log(self, feature_id: str) -> list[Event]:
        """Events persisted for a feature, including those from earlier processes."""
        if self.log_dir is None:
            return []
        path = self.log_dir / f"{feature_id}.jsonl"
        if not path.exists():
            return []
        events = []
        for lineno, line in enumerate(path.read_text().splitlines(), 1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                validate(data, "event")
            except (json.JSONDecodeError, ValidationError) as e:
                raise CorruptState(path, f"line {lineno}: {e}") from None
            events.append(Event.from_dict(data))
        return events
