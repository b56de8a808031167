# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Event bus for plugin system communication."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from enum import Enum
from typing import Any

from pluginhost.plugins.errors import (
    ListenerError,
    PermissionDeniedError,
    ValidationError,
)
from pluginhost.plugins.subscriptions import (
    Subscription,
    SubscriptionRegistry,
    validate_handler,
    validate_topic,
)

logger = logging.getLogger(__name__)


class PlatformEvent(str, Enum):
    """Events the host broadcasts on the root bus."""

    # System events
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_SHUTDOWN = "system.shutdown"

    # Plugin lifecycle events
    PLUGIN_INSTALLED = "plugin.installed"
    PLUGIN_INITIALIZED = "plugin.initialized"
    PLUGIN_ENABLED = "plugin.enabled"
    PLUGIN_DISABLED = "plugin.disabled"
    PLUGIN_UPDATED = "plugin.updated"
    PLUGIN_CONFIG_CHANGED = "plugin.config_changed"
    PLUGIN_ERROR = "plugin.error"
    PLUGIN_UNINSTALLED = "plugin.uninstalled"


# Top-level namespaces only the host may emit on
RESERVED_NAMESPACES: frozenset[str] = frozenset({"system", "plugin"})

# Type alias for event handlers
EventHandler = Callable[[Any], Any]
ListenerErrorHandler = Callable[[ListenerError], None]


def _topic_name(topic: str | Enum) -> str:
    if isinstance(topic, Enum):
        return str(topic.value)
    return topic


def _cancel(tasks: Iterable[asyncio.Task[Any]]) -> list[asyncio.Task[Any]]:
    running = [task for task in list(tasks) if not task.done()]
    if not running:
        return []
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    # A handler that triggers its own teardown keeps running
    cancelled = [task for task in running if task is not current]
    for task in cancelled:
        task.cancel()
    return cancelled


class Unsubscribe:
    """Callable handle that removes one subscription.

    Calling it more than once is a no-op.
    """

    def __init__(self, registry: SubscriptionRegistry, subscription: Subscription) -> None:
        self._registry = registry
        self.subscription = subscription

    def __call__(self) -> None:
        self._registry.remove(self.subscription)

    @property
    def active(self) -> bool:
        """Whether the subscription is still registered."""
        return self.subscription.active


class EventBus:
    """Central publish/subscribe bus.

    ``emit`` is synchronous and dispatches to a snapshot of the listeners
    registered when it is called. A failing listener is logged and skipped;
    it never reaches the emitter or its siblings. Coroutine handlers are
    scheduled on the running loop by ``emit`` and awaited in order by
    ``publish``.
    """

    def __init__(
        self,
        registry: SubscriptionRegistry | None = None,
        *,
        error_handler: ListenerErrorHandler | None = None,
    ) -> None:
        """Initialize the event bus.

        Args:
            registry: Subscription registry to use (a fresh one by default)
            error_handler: Called with every ListenerError after logging
        """
        self._registry = registry or SubscriptionRegistry()
        self._error_handler = error_handler
        self._tasks: set[asyncio.Task[Any]] = set()
        self._owned_tasks: dict[Any, set[asyncio.Task[Any]]] = {}

    @property
    def registry(self) -> SubscriptionRegistry:
        """The registry holding this bus's subscriptions."""
        return self._registry

    def on(
        self,
        topic: str | Enum,
        handler: EventHandler,
        *,
        owner: Any = None,
    ) -> Unsubscribe:
        """Subscribe to a topic.

        Registering the same handler twice creates two independent entries,
        each needing its own unsubscribe.

        Args:
            topic: Topic or pattern (``*`` matches one segment)
            handler: Called with the emitted data (sync or async)
            owner: Plugin instance the subscription belongs to

        Returns:
            Callable that removes this subscription
        """
        subscription = self._registry.add(_topic_name(topic), handler, owner=owner)
        logger.debug(f"Subscribed {owner!r} to {subscription.topic_pattern}")
        return Unsubscribe(self._registry, subscription)

    def once(
        self,
        topic: str | Enum,
        handler: EventHandler,
        *,
        owner: Any = None,
    ) -> Unsubscribe:
        """Subscribe for a single delivery."""
        subscription = self._registry.add(
            _topic_name(topic), handler, once=True, owner=owner
        )
        return Unsubscribe(self._registry, subscription)

    def off(self, topic: str | Enum, handler: EventHandler) -> None:
        """Remove the first entry for ``handler`` on ``topic``, if any."""
        topic = _topic_name(topic)
        validate_topic(topic, allow_wildcards=True)
        validate_handler(handler)
        self._registry.remove_first(topic, handler)

    def remove_all_listeners(self, topic: str | Enum | None = None) -> None:
        """Clear one topic, or every topic when omitted."""
        if topic is None:
            removed = self._registry.clear()
        else:
            topic = _topic_name(topic)
            validate_topic(topic, allow_wildcards=True)
            removed = self._registry.remove_topic(topic)
        logger.debug(f"Removed {removed} listeners ({topic or 'all topics'})")

    def emit(self, topic: str | Enum, data: Any = None) -> None:
        """Dispatch ``data`` to every listener live at call time."""
        topic = _topic_name(topic)
        validate_topic(topic)
        for subscription in self._registry.snapshot(topic):
            if subscription.once and not self._registry.remove(subscription):
                # Consumed by a re-entrant emit
                continue
            result = self._invoke(subscription, topic, data)
            if inspect.isawaitable(result):
                self._schedule(subscription, topic, result)

    async def publish(self, topic: str | Enum, data: Any = None) -> None:
        """Dispatch like ``emit`` but await coroutine handlers in order."""
        topic = _topic_name(topic)
        validate_topic(topic)
        for subscription in self._registry.snapshot(topic):
            if subscription.once and not self._registry.remove(subscription):
                continue
            result = self._invoke(subscription, topic, data)
            if inspect.isawaitable(result):
                await self._guard(result, subscription, topic)

    def listener_count(self, topic: str | Enum) -> int:
        """Number of entries registered on exactly ``topic``."""
        return self._registry.count(_topic_name(topic))

    def topics(self) -> list[str]:
        """Topic patterns that currently have listeners."""
        return self._registry.patterns()

    def namespace(self, namespace: str, *, owner: Any = None) -> ScopedEventBus:
        """Return a facade that prefixes every topic with ``namespace``."""
        return ScopedEventBus(self, namespace, owner=owner)

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for coroutine handlers scheduled by ``emit``.

        Args:
            timeout: Seconds to wait before cancelling handlers still running

        Returns:
            Number of handlers cancelled
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else deadline - loop.time()
            if remaining is not None and remaining <= 0:
                break
            await asyncio.wait(list(self._tasks), timeout=remaining)
        leftover = _cancel(self._tasks)
        if leftover:
            logger.warning(f"Cancelled {len(leftover)} event handlers still running")
            await asyncio.gather(*leftover, return_exceptions=True)
        return len(leftover)

    def cancel_owned(self, owner: Any) -> int:
        """Cancel coroutine handlers still running for ``owner``'s subscriptions."""
        cancelled = _cancel(self._owned_tasks.pop(owner, ()))
        if cancelled:
            logger.debug(f"Cancelled {len(cancelled)} event handlers owned by {owner!r}")
        return len(cancelled)

    def _invoke(self, subscription: Subscription, topic: str, data: Any) -> Any:
        try:
            return subscription.handler(data)
        except Exception as e:
            self._report(ListenerError(topic, subscription.handler, e), subscription)
            return None

    def _schedule(
        self, subscription: Subscription, topic: str, awaitable: Awaitable[Any]
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                f"Async handler on {topic} not run: emit called outside an event loop"
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._guard(awaitable, subscription, topic))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        owner = subscription.owner
        if owner is not None:
            owned = self._owned_tasks.setdefault(owner, set())
            owned.add(task)
            task.add_done_callback(lambda done: self._forget_task(owner, done))

    def _forget_task(self, owner: Any, task: asyncio.Task[Any]) -> None:
        owned = self._owned_tasks.get(owner)
        if owned is None:
            return
        owned.discard(task)
        if not owned:
            del self._owned_tasks[owner]

    async def _guard(
        self, awaitable: Awaitable[Any], subscription: Subscription, topic: str
    ) -> None:
        try:
            await awaitable
        except Exception as e:
            self._report(ListenerError(topic, subscription.handler, e), subscription)

    def _report(self, error: ListenerError, subscription: Subscription) -> None:
        owner = subscription.owner
        logger.error(
            f"Error in event handler for {error.topic} "
            f"(owner: {owner!r}): {error.cause}"
        )
        if self._error_handler is not None:
            try:
                self._error_handler(error)
            except Exception as e:
                logger.error(f"Listener error handler failed: {e}")


class ScopedEventBus:
    """Namespaced view of an EventBus.

    Topics are prefixed with the namespace but entries live in the shared
    registry, so unsubscribing here removes the real entry. When an owner
    is set, every subscription made through the facade is recorded against
    it and the facade refuses to emit on reserved host namespaces.
    """

    def __init__(self, bus: EventBus, namespace: str, *, owner: Any = None) -> None:
        validate_topic(namespace)
        self._bus = bus
        self.namespace = namespace
        self.owner = owner
        self.closed = False

    def qualify(self, topic: str | Enum, *, absolute: bool = False) -> str:
        """Return the topic as it appears on the shared bus."""
        topic = _topic_name(topic)
        if absolute:
            return topic
        return f"{self.namespace}.{topic}"

    def on(
        self, topic: str | Enum, handler: EventHandler, *, absolute: bool = False
    ) -> Unsubscribe:
        """Subscribe within the namespace, or to a host topic if ``absolute``."""
        self._check_open()
        return self._bus.on(self.qualify(topic, absolute=absolute), handler, owner=self.owner)

    def once(
        self, topic: str | Enum, handler: EventHandler, *, absolute: bool = False
    ) -> Unsubscribe:
        """Subscribe for a single delivery."""
        self._check_open()
        return self._bus.once(
            self.qualify(topic, absolute=absolute), handler, owner=self.owner
        )

    def off(
        self, topic: str | Enum, handler: EventHandler, *, absolute: bool = False
    ) -> None:
        """Remove the first matching entry."""
        self._bus.off(self.qualify(topic, absolute=absolute), handler)

    def emit(self, topic: str | Enum, data: Any = None, *, absolute: bool = False) -> None:
        """Emit within the namespace."""
        self._bus.emit(self._emit_topic(topic, absolute), data)

    async def publish(
        self, topic: str | Enum, data: Any = None, *, absolute: bool = False
    ) -> None:
        """Publish within the namespace, awaiting coroutine handlers."""
        await self._bus.publish(self._emit_topic(topic, absolute), data)

    def remove_all_listeners(
        self, topic: str | Enum | None = None, *, absolute: bool = False
    ) -> None:
        """Clear one topic, or everything this facade is responsible for.

        Without a topic, an owned facade removes its owner's subscriptions;
        an unowned one removes every topic under its namespace.
        """
        if topic is not None:
            self._bus.remove_all_listeners(self.qualify(topic, absolute=absolute))
            return
        registry = self._bus.registry
        if self.owner is not None:
            registry.remove_owned(self.owner)
            return
        prefix = f"{self.namespace}."
        for pattern in registry.patterns():
            if pattern.startswith(prefix):
                registry.remove_topic(pattern)

    def listener_count(self, topic: str | Enum, *, absolute: bool = False) -> int:
        """Number of entries on the qualified topic."""
        return self._bus.listener_count(self.qualify(topic, absolute=absolute))

    def namespace_of(self, child: str) -> ScopedEventBus:
        """Nested facade sharing this facade's owner."""
        return ScopedEventBus(self._bus, f"{self.namespace}.{child}", owner=self.owner)

    def close(self) -> int:
        """Stop accepting new work and drop the owner's subscriptions.

        Coroutine handlers still running for the owner are cancelled.
        """
        self.closed = True
        if self.owner is None:
            return 0
        self._bus.cancel_owned(self.owner)
        return self._bus.registry.remove_owned(self.owner)

    def _emit_topic(self, topic: str | Enum, absolute: bool) -> str:
        self._check_open()
        qualified = self.qualify(topic, absolute=absolute)
        if absolute and self.owner is not None:
            root = qualified.split(".", 1)[0]
            if root in RESERVED_NAMESPACES:
                raise PermissionDeniedError(
                    f"Plugins may not emit on reserved topic {qualified}"
                )
        return qualified

    def _check_open(self) -> None:
        if self.closed:
            raise ValidationError(f"Event bus facade {self.namespace} is closed")
