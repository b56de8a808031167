# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Tests for plugin event bus system."""

import asyncio

import pytest

from pluginhost.plugins.errors import (
    ListenerError,
    PermissionDeniedError,
    ValidationError,
)
from pluginhost.plugins.events import EventBus, PlatformEvent


class TestPlatformEvent:
    """Tests for PlatformEvent enum."""

    def test_system_events(self):
        """Test system event values."""
        assert PlatformEvent.SYSTEM_STARTUP.value == "system.startup"
        assert PlatformEvent.SYSTEM_SHUTDOWN.value == "system.shutdown"

    def test_plugin_lifecycle_events(self):
        """Test plugin lifecycle event values."""
        assert PlatformEvent.PLUGIN_INSTALLED.value == "plugin.installed"
        assert PlatformEvent.PLUGIN_INITIALIZED.value == "plugin.initialized"
        assert PlatformEvent.PLUGIN_ENABLED.value == "plugin.enabled"
        assert PlatformEvent.PLUGIN_DISABLED.value == "plugin.disabled"
        assert PlatformEvent.PLUGIN_UPDATED.value == "plugin.updated"
        assert PlatformEvent.PLUGIN_UNINSTALLED.value == "plugin.uninstalled"


class TestEventBus:
    """Tests for EventBus class."""

    def test_subscribe_emit_unsubscribe(self, event_bus):
        """Test a handler is called once, then not after unsubscribing."""
        received = []
        unsubscribe = event_bus.on("a.b", received.append)

        event_bus.emit("a.b", {"x": 1})
        assert received == [{"x": 1}]

        unsubscribe()
        event_bus.emit("a.b", {"x": 2})
        assert received == [{"x": 1}]

    def test_unsubscribe_twice_is_noop(self, event_bus):
        """Test calling the unsubscribe handle again does nothing."""
        unsubscribe = event_bus.on("a.b", lambda data: None)
        unsubscribe()
        unsubscribe()
        assert unsubscribe.active is False
        assert event_bus.listener_count("a.b") == 0

    def test_emit_returns_none(self, event_bus):
        """Test that emit has no return value."""
        event_bus.on("a.b", lambda data: "ignored")
        assert event_bus.emit("a.b") is None

    def test_registration_order(self, event_bus):
        """Test listeners fire in registration order."""
        calls = []
        for i in range(5):
            event_bus.on("a.b", lambda data, i=i: calls.append(i))

        event_bus.emit("a.b")

        assert calls == [0, 1, 2, 3, 4]

    def test_duplicate_handler_called_twice(self, event_bus):
        """Test that registering a handler twice delivers twice."""
        calls = []

        def handler(data):
            calls.append(data)

        event_bus.on("a.b", handler)
        event_bus.on("a.b", handler)
        event_bus.emit("a.b", 1)

        assert calls == [1, 1]
        assert event_bus.listener_count("a.b") == 2

    def test_off_removes_first_matching_entry(self, event_bus):
        """Test off removes only one of two duplicate entries."""
        calls = []

        def handler(data):
            calls.append(data)

        event_bus.on("a.b", handler)
        event_bus.on("a.b", handler)
        event_bus.off("a.b", handler)
        event_bus.emit("a.b", 1)

        assert calls == [1]

    def test_off_absent_is_noop(self, event_bus):
        """Test off for an unknown handler does nothing."""
        event_bus.off("a.b", lambda data: None)
        assert event_bus.listener_count("a.b") == 0

    def test_listener_error_is_isolated(self, event_bus):
        """Test a failing listener does not stop its siblings or the emitter."""
        errors = []
        bus = EventBus(error_handler=errors.append)
        calls = []

        def failing(data):
            raise RuntimeError("boom")

        bus.on("a.b", failing)
        bus.on("a.b", calls.append)

        bus.emit("a.b", "payload")

        assert calls == ["payload"]
        assert len(errors) == 1
        assert isinstance(errors[0], ListenerError)
        assert errors[0].topic == "a.b"
        assert isinstance(errors[0].cause, RuntimeError)

    def test_failing_error_handler_is_isolated(self):
        """Test an error handler that raises does not reach the emitter."""

        def bad_error_handler(error):
            raise RuntimeError("worse")

        bus = EventBus(error_handler=bad_error_handler)
        bus.on("a.b", lambda data: 1 / 0)
        bus.emit("a.b")

    def test_snapshot_excludes_listener_added_during_emit(self, event_bus):
        """Test that listeners added while emitting wait for the next emit."""
        calls = []

        def late(data):
            calls.append("late")

        def adder(data):
            calls.append("adder")
            event_bus.on("a.b", late)

        event_bus.on("a.b", adder)
        event_bus.emit("a.b")
        assert calls == ["adder"]

    def test_snapshot_keeps_listener_removed_during_emit(self, event_bus):
        """Test that a listener removed mid-emit still gets the current event."""
        calls = []
        handles = {}

        def remover(data):
            calls.append("remover")
            handles["second"]()

        event_bus.on("a.b", remover)
        handles["second"] = event_bus.on("a.b", lambda data: calls.append("second"))

        event_bus.emit("a.b")
        event_bus.emit("a.b")

        assert calls == ["remover", "second", "remover"]

    def test_once_fires_once(self, event_bus):
        """Test once delivers a single event."""
        calls = []
        event_bus.once("a.b", calls.append)

        event_bus.emit("a.b", 1)
        event_bus.emit("a.b", 2)

        assert calls == [1]
        assert event_bus.listener_count("a.b") == 0

    def test_once_under_reentrant_emit(self, event_bus):
        """Test once fires at most once when its handler re-emits the topic."""
        calls = []

        def handler(data):
            calls.append(data)
            if data < 3:
                event_bus.emit("a.b", data + 1)

        event_bus.once("a.b", handler)
        event_bus.emit("a.b", 1)

        assert calls == [1]

    def test_once_entry_skipped_when_consumed_by_sibling(self, event_bus):
        """Test a once entry consumed by a nested emit is not called again."""
        calls = []

        def first(data):
            if data == "outer":
                event_bus.emit("a.b", "inner")

        event_bus.on("a.b", first)
        event_bus.once("a.b", calls.append)

        event_bus.emit("a.b", "outer")

        assert calls == ["inner"]

    def test_once_unsubscribe_before_emit(self, event_bus):
        """Test a once subscription can be cancelled before it fires."""
        calls = []
        unsubscribe = event_bus.once("a.b", calls.append)
        unsubscribe()
        event_bus.emit("a.b", 1)
        assert calls == []

    @pytest.mark.parametrize(
        "operations",
        [
            ["on", "on", "off", "on"],
            ["on", "off", "off"],
            ["once", "on", "once", "off"],
            [],
        ],
    )
    def test_remove_all_listeners_topic_leaves_zero(self, event_bus, operations):
        """Test remove_all_listeners(topic) zeroes the count after any on/off mix."""

        def handler(data):
            pass

        for op in operations:
            if op == "off":
                event_bus.off("a.b", handler)
            else:
                getattr(event_bus, op)("a.b", handler)
        event_bus.on("c.d", handler)

        event_bus.remove_all_listeners("a.b")

        assert event_bus.listener_count("a.b") == 0
        assert event_bus.listener_count("c.d") == 1

    def test_remove_all_listeners_everything(self, event_bus):
        """Test remove_all_listeners without a topic clears every topic."""
        event_bus.on("a.b", lambda data: None)
        event_bus.on("c.*", lambda data: None)

        event_bus.remove_all_listeners()

        assert event_bus.topics() == []

    def test_wildcard_subscription(self, event_bus):
        """Test a wildcard pattern receives matching topics only."""
        calls = []
        event_bus.on("plugin.*", calls.append)

        event_bus.emit("plugin.enabled", "enabled")
        event_bus.emit("plugin.x.y", "nested")
        event_bus.emit("system.startup", "other")

        assert calls == ["enabled"]

    def test_enum_topics(self, event_bus):
        """Test PlatformEvent members can be used as topics."""
        calls = []
        event_bus.on(PlatformEvent.SYSTEM_STARTUP, calls.append)
        event_bus.emit("system.startup", "up")
        assert calls == ["up"]

    def test_invalid_arguments_raise(self, event_bus):
        """Test malformed topics and handlers fail synchronously."""
        with pytest.raises(ValidationError):
            event_bus.on("", lambda data: None)
        with pytest.raises(ValidationError):
            event_bus.on("a.b", None)
        with pytest.raises(ValidationError):
            event_bus.emit("a.*")
        with pytest.raises(ValidationError):
            event_bus.off("a..b", lambda data: None)

    @pytest.mark.asyncio
    async def test_emit_schedules_async_handler(self, event_bus):
        """Test emit runs coroutine handlers on the loop."""
        calls = []

        async def handler(data):
            calls.append(data)

        event_bus.on("a.b", handler)
        event_bus.emit("a.b", 1)
        await event_bus.drain()

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_async_handler_error_is_isolated(self):
        """Test a failing coroutine handler is reported, not raised."""
        errors = []
        bus = EventBus(error_handler=errors.append)

        async def handler(data):
            raise ValueError("async boom")

        bus.on("a.b", handler)
        bus.emit("a.b")
        await bus.drain()

        assert len(errors) == 1
        assert isinstance(errors[0].cause, ValueError)

    @pytest.mark.asyncio
    async def test_publish_awaits_in_order(self, event_bus):
        """Test publish awaits coroutine handlers in registration order."""
        calls = []

        async def slow(data):
            calls.append("slow")

        def fast(data):
            calls.append("fast")

        event_bus.on("a.b", slow)
        event_bus.on("a.b", fast)
        await event_bus.publish("a.b")

        assert calls == ["slow", "fast"]

    @pytest.mark.asyncio
    async def test_drain_timeout_cancels_hanging_handlers(self, event_bus):
        """Test drain gives up on handlers that never finish."""
        calls = []

        async def never(data):
            await asyncio.Event().wait()

        async def quick(data):
            calls.append(data)

        event_bus.on("a.b", never)
        event_bus.on("a.b", quick)
        event_bus.emit("a.b", 1)

        assert await event_bus.drain(timeout=0.05) == 1
        assert calls == [1]
        assert await event_bus.drain() == 0

    @pytest.mark.asyncio
    async def test_cancel_owned(self, event_bus):
        """Test only the owner's running handlers are cancelled."""
        owner = object()
        running = []

        async def never(data):
            running.append(asyncio.current_task())
            await asyncio.Event().wait()

        event_bus.on("a.b", never, owner=owner)
        event_bus.on("a.b", never)
        event_bus.emit("a.b")
        await asyncio.sleep(0)

        assert event_bus.cancel_owned(owner) == 1
        assert event_bus.cancel_owned(owner) == 0
        await asyncio.sleep(0)
        assert running[0].cancelled()
        assert not running[1].done()
        assert await event_bus.drain(timeout=0.01) == 1

    def test_async_handler_without_loop_is_skipped(self, event_bus):
        """Test emit outside a running loop does not raise for async handlers."""

        async def handler(data):
            pass

        event_bus.on("a.b", handler)
        event_bus.emit("a.b")


class TestScopedEventBus:
    """Tests for namespaced event bus facades."""

    def test_prefixes_topics(self, event_bus):
        """Test the facade prefixes topics with the namespace."""
        calls = []
        scoped = event_bus.namespace("weather")
        scoped.on("updated", calls.append)

        event_bus.emit("weather.updated", 1)
        scoped.emit("updated", 2)

        assert calls == [1, 2]
        assert event_bus.listener_count("weather.updated") == 1

    def test_shares_entries_with_root_bus(self, event_bus):
        """Test removing through the root bus removes the facade's entry."""
        calls = []
        scoped = event_bus.namespace("weather")
        scoped.on("updated", calls.append)

        event_bus.off("weather.updated", calls.append)
        scoped.emit("updated", 1)

        assert calls == []
        assert scoped.listener_count("updated") == 0

    def test_absolute_topics(self, event_bus):
        """Test absolute=True subscribes outside the namespace."""
        calls = []
        scoped = event_bus.namespace("weather", owner="plugin")
        scoped.on(PlatformEvent.SYSTEM_STARTUP, calls.append, absolute=True)

        event_bus.emit("system.startup", "up")

        assert calls == ["up"]

    def test_owned_facade_records_owner(self, event_bus):
        """Test subscriptions made through an owned facade carry the owner."""
        owner = object()
        scoped = event_bus.namespace("weather", owner=owner)
        handle = scoped.on("updated", lambda data: None)

        assert handle.subscription.owner is owner
        assert event_bus.registry.owned_by(owner) == (handle.subscription,)

    def test_owned_facade_cannot_emit_reserved(self, event_bus):
        """Test plugins may not emit on host-reserved topics."""
        scoped = event_bus.namespace("weather", owner=object())
        with pytest.raises(PermissionDeniedError):
            scoped.emit("plugin.enabled", {}, absolute=True)
        with pytest.raises(PermissionDeniedError):
            scoped.emit(PlatformEvent.SYSTEM_STARTUP, absolute=True)

    def test_owned_facade_can_emit_to_other_namespace(self, event_bus):
        """Test absolute emits outside reserved namespaces are allowed."""
        calls = []
        event_bus.on("calendar.sync", calls.append)
        scoped = event_bus.namespace("weather", owner=object())

        scoped.emit("calendar.sync", "go", absolute=True)

        assert calls == ["go"]

    def test_remove_all_listeners_owned(self, event_bus):
        """Test an owned facade only removes its owner's subscriptions."""
        mine = event_bus.namespace("weather", owner="mine")
        theirs = event_bus.namespace("weather", owner="theirs")
        mine.on("updated", lambda data: None)
        mine.on("system.startup", lambda data: None, absolute=True)
        theirs.on("updated", lambda data: None)

        mine.remove_all_listeners()

        assert event_bus.listener_count("weather.updated") == 1
        assert event_bus.listener_count("system.startup") == 0

    def test_remove_all_listeners_unowned(self, event_bus):
        """Test an unowned facade clears everything under its namespace."""
        scoped = event_bus.namespace("weather")
        scoped.on("updated", lambda data: None)
        scoped.on("deleted", lambda data: None)
        event_bus.on("other.topic", lambda data: None)

        scoped.remove_all_listeners()

        assert event_bus.topics() == ["other.topic"]

    def test_close_removes_owned_and_refuses_new_work(self, event_bus):
        """Test closing a facade drops its subscriptions and blocks use."""
        scoped = event_bus.namespace("weather", owner="owner")
        scoped.on("updated", lambda data: None)

        assert scoped.close() == 1
        assert event_bus.listener_count("weather.updated") == 0
        with pytest.raises(ValidationError):
            scoped.on("updated", lambda data: None)
        with pytest.raises(ValidationError):
            scoped.emit("updated")

    def test_nested_namespace(self, event_bus):
        """Test nested facades build dotted prefixes."""
        calls = []
        child = event_bus.namespace("weather", owner="o").namespace_of("alerts")
        child.on("storm", calls.append)

        event_bus.emit("weather.alerts.storm", "!")

        assert calls == ["!"]
        assert child.owner == "o"
