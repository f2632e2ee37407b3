from __future__ import annotations

from repo_scout.services.events import SCOUT_COMPLETE, SCOUT_START, EventChannel


def test_subscribers_receive_events_in_order() -> None:
    channel = EventChannel()
    seen: list = []
    channel.subscribe(lambda event: seen.append((event.type, event.data)))

    channel.emit(SCOUT_START, strategies=3)
    channel.emit(SCOUT_COMPLETE, candidates=12)

    assert seen == [(SCOUT_START, {"strategies": 3}), (SCOUT_COMPLETE, {"candidates": 12})]


def test_failing_subscriber_does_not_stop_others() -> None:
    channel = EventChannel()
    seen: list = []

    def broken(event) -> None:
        raise RuntimeError("observer bug")

    channel.subscribe(broken)
    channel.subscribe(lambda event: seen.append(event.type))

    channel.emit(SCOUT_START)

    assert seen == [SCOUT_START]


def test_unsubscribe() -> None:
    channel = EventChannel()
    seen: list = []
    unsubscribe = channel.subscribe(lambda event: seen.append(event.type))

    channel.emit(SCOUT_START)
    unsubscribe()
    channel.emit(SCOUT_COMPLETE)

    assert seen == [SCOUT_START]
