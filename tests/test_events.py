"""Tests for story_orchestrator.events: EventBus and subscriptions."""

from story_orchestrator.events import EventBus, Subscription, close_all


def test_emit_calls_handlers_in_order():
    bus = EventBus()
    seen = []
    bus.on("x", lambda v: seen.append(("a", v)))
    bus.on("x", lambda v: seen.append(("b", v)))
    bus.emit("x", 1)
    assert seen == [("a", 1), ("b", 1)]


def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    seen = []

    def boom(*_):
        raise RuntimeError("handler bug")

    bus.on("x", boom)
    bus.on("x", lambda: seen.append("ok"))
    bus.emit("x")
    assert seen == ["ok"]


def test_emit_without_listeners():
    EventBus().emit("nothing", 1, 2)


def test_close_is_idempotent():
    bus = EventBus()
    sub = bus.on("x", lambda: None)
    sub.close()
    sub.close()
    assert not sub.active
    assert bus.listener_count("x") == 0


def test_close_removes_only_its_handler():
    bus = EventBus()
    seen = []
    first = bus.on("x", lambda: seen.append(1))
    bus.on("x", lambda: seen.append(2))
    first.close()
    bus.emit("x")
    assert seen == [2]


def test_close_all_continues_past_failures():
    bus = EventBus()
    good = bus.on("x", lambda: None)
    stale = Subscription(bus, "x", lambda: None)
    other = bus.on("y", lambda: None)
    assert close_all([good, stale, other]) == 1
    assert bus.listener_count("x") == 0
    assert bus.listener_count("y") == 0
