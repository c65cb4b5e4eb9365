from __future__ import annotations

import pytest

from rig.engine.events import EventStream
from rig.engine.fanout import EventFanout, QueueSubscriber
from rig.engine.models import ExitInfo


class _ListSubscriber:
    def __init__(self) -> None:
        self.messages: list[dict] = []
        self.is_open = True

    def send(self, message: dict) -> None:
        self.messages.append(message)


def _events(subscriber: _ListSubscriber) -> list[int]:
    return [m["event"]["n"] for m in subscriber.messages if m["type"] == "event"]


def test_backlog_replayed_once_to_first_subscriber() -> None:
    fanout = EventFanout("bridge_1")
    for n in range(1, 4):
        fanout.publish({"type": "message_update", "n": n})
    assert fanout.buffering and fanout.backlog_size == 3

    first = _ListSubscriber()
    assert fanout.subscribe(first) == 3
    assert _events(first) == [1, 2, 3]
    assert not fanout.buffering

    second = _ListSubscriber()
    assert fanout.subscribe(second) == 0
    fanout.publish({"type": "message_update", "n": 4})

    assert _events(first) == [1, 2, 3, 4]
    assert _events(second) == [4]


def test_backlog_is_not_rebuilt_after_last_subscriber_leaves() -> None:
    fanout = EventFanout("bridge_1")
    sub = _ListSubscriber()
    fanout.subscribe(sub)
    fanout.unsubscribe(sub)

    fanout.publish({"type": "agent_end", "n": 1})
    late = _ListSubscriber()
    assert fanout.subscribe(late) == 0
    assert late.messages == []


def test_exit_is_broadcast_once_and_buffered_before_attach() -> None:
    fanout = EventFanout("bridge_1")
    fanout.publish({"type": "agent_end", "n": 1})
    fanout.publish_exit(ExitInfo(code=0))
    fanout.publish_exit(ExitInfo(code=1))

    sub = _ListSubscriber()
    fanout.subscribe(sub)
    assert sub.messages[-1] == {"type": "exit", "code": 0, "signal": None}
    assert len(sub.messages) == 2


def test_closed_subscribers_are_skipped() -> None:
    fanout = EventFanout("bridge_1")
    sub = _ListSubscriber()
    fanout.subscribe(sub)
    sub.is_open = False
    fanout.publish({"type": "agent_end", "n": 1})
    assert sub.messages == []


@pytest.mark.asyncio
async def test_queue_subscriber_drains_then_stops() -> None:
    fanout = EventFanout("bridge_1")
    fanout.publish({"type": "message_update", "n": 1})
    sub = QueueSubscriber()
    fanout.subscribe(sub)
    fanout.publish({"type": "message_update", "n": 2})
    sub.close()
    fanout.publish({"type": "message_update", "n": 3})

    received = []
    while (message := await sub.queue.get()) is not None:
        received.append(message["event"]["n"])
    assert received == [1, 2]


def test_event_stream_late_subscriber_sees_exit() -> None:
    stream = EventStream("bridge_1")
    seen: list = []
    unsubscribe = stream.subscribe(on_event=seen.append)
    stream.emit_event({"type": "a"})
    unsubscribe()
    unsubscribe()
    stream.emit_event({"type": "b"})
    assert seen == [{"type": "a"}]

    stream.emit_exit(ExitInfo(code=None, signal="SIGTERM"))
    exits: list = []
    stream.subscribe(on_exit=exits.append)
    assert exits == [ExitInfo(code=None, signal="SIGTERM")]
    assert stream.listener_count == 0


def test_event_stream_isolates_failing_listener() -> None:
    stream = EventStream("bridge_1")
    seen: list = []

    def boom(_event: dict) -> None:
        raise RuntimeError("listener bug")

    stream.subscribe(on_event=boom)
    stream.subscribe(on_event=seen.append)
    stream.emit_event({"type": "a"})
    assert seen == [{"type": "a"}]
