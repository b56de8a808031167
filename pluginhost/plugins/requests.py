# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Correlated request/response on top of the event bus.

A request is emitted on the request topic as ``{id, topic, payload}``.
Responders answer on the response topic with ``{id, result}`` or
``{id, error}``. Each pending request settles exactly once: whichever of
the matching response or its timer comes first wins, and anything arriving
later for that id is dropped.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pluginhost.plugins.errors import (
    RequestError,
    RequestTimeoutError,
    ValidationError,
)
from pluginhost.plugins.events import EventBus, ScopedEventBus, Unsubscribe
from pluginhost.plugins.subscriptions import validate_handler, validate_topic

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 5000.0

RequestHandler = Callable[[str, Any], Any]


@dataclass(eq=False)
class PendingRequest:
    """A request waiting for its response or its deadline."""

    id: str
    topic: str
    issued_at: float
    timeout_handle: asyncio.TimerHandle
    future: asyncio.Future[Any]


class RequestResponseCoordinator:
    """Request/response with timeouts over an EventBus or a scoped facade."""

    def __init__(
        self,
        bus: EventBus | ScopedEventBus,
        *,
        request_topic: str = "request",
        response_topic: str = "response",
        default_timeout_ms: float = DEFAULT_TIMEOUT_MS,
    ) -> None:
        self._bus = bus
        self._request_topic = validate_topic(request_topic)
        self._response_topic = validate_topic(response_topic)
        self._default_timeout_ms = default_timeout_ms
        self._pending: dict[str, PendingRequest] = {}
        self._id_prefix = uuid.uuid4().hex[:12]
        self._id_counter = itertools.count(1)
        self._response_subscriptions: dict[str | None, Unsubscribe] = {}
        self._handler_subscriptions: list[Unsubscribe] = []
        self.closed = False

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting."""
        return len(self._pending)

    def request(
        self,
        topic: str,
        payload: Any = None,
        timeout_ms: float | None = None,
        *,
        target: str | None = None,
    ) -> asyncio.Future[Any]:
        """Issue a request and return a future for its result.

        Args:
            topic: What is being asked for; passed to responders as ``type``
            payload: Request data
            timeout_ms: Deadline in milliseconds (coordinator default if None)
            target: Namespace of another responder, e.g. a plugin ID. The
                request goes to ``{target}.request`` and the answer is read
                from ``{target}.response``. Defaults to this coordinator's
                own topics.

        Returns:
            Future resolving to the responder's result. It fails with
            RequestTimeoutError when the deadline passes first, or with
            RequestError when the responder reports an error.
        """
        if self.closed:
            raise ValidationError("Request coordinator is closed")
        validate_topic(topic)
        if target is not None:
            validate_topic(target)
        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms
        if timeout_ms <= 0:
            raise ValidationError(f"timeout_ms must be positive, got {timeout_ms}")

        loop = asyncio.get_running_loop()
        self._ensure_response_listener(target)

        request_id = f"{self._id_prefix}-{next(self._id_counter)}"
        future: asyncio.Future[Any] = loop.create_future()
        handle = loop.call_later(timeout_ms / 1000, self._expire, request_id, timeout_ms)
        self._pending[request_id] = PendingRequest(
            id=request_id,
            topic=topic,
            issued_at=loop.time(),
            timeout_handle=handle,
            future=future,
        )
        future.add_done_callback(lambda _f: self._discard(request_id))

        try:
            self._emit(
                self._request_topic,
                {"id": request_id, "topic": topic, "payload": payload},
                target,
            )
        except Exception:
            future.cancel()
            raise

        return future

    def handle_request(self, handler: RequestHandler) -> Unsubscribe:
        """Answer requests with ``handler(type, payload)``.

        Errors raised by the handler, synchronously or from an awaitable, are
        sent back as a response carrying an ``error`` field.

        Returns:
            Callable that stops answering
        """
        validate_handler(handler)

        def on_request(message: Any) -> Awaitable[None] | None:
            if not isinstance(message, dict) or "id" not in message:
                logger.warning(f"Ignoring malformed request: {message!r}")
                return None
            request_id = message["id"]
            try:
                result = handler(message.get("topic"), message.get("payload"))
            except Exception as e:
                self._respond_error(request_id, e)
                return None
            if inspect.isawaitable(result):
                return self._respond_when_done(request_id, result)
            self._respond(request_id, result)
            return None

        subscription = self._bus.on(self._request_topic, on_request)
        self._handler_subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        """Cancel every pending request and stop listening."""
        self.closed = True
        for pending in list(self._pending.values()):
            pending.timeout_handle.cancel()
            pending.future.cancel()
        self._pending.clear()
        for subscription in self._response_subscriptions.values():
            subscription()
        self._response_subscriptions.clear()
        for subscription in self._handler_subscriptions:
            subscription()
        self._handler_subscriptions.clear()

    def _ensure_response_listener(self, target: str | None) -> None:
        subscription = self._response_subscriptions.get(target)
        if subscription is None or not subscription.active:
            self._response_subscriptions[target] = self._on(
                self._response_topic, self._on_response, target
            )

    def _on(self, topic: str, handler: Callable[[Any], Any], target: str | None) -> Unsubscribe:
        if target is None:
            return self._bus.on(topic, handler)
        topic = f"{target}.{topic}"
        if isinstance(self._bus, ScopedEventBus):
            return self._bus.on(topic, handler, absolute=True)
        return self._bus.on(topic, handler)

    def _emit(self, topic: str, data: Any, target: str | None) -> None:
        if target is None:
            self._bus.emit(topic, data)
        elif isinstance(self._bus, ScopedEventBus):
            self._bus.emit(f"{target}.{topic}", data, absolute=True)
        else:
            self._bus.emit(f"{target}.{topic}", data)

    def _on_response(self, message: Any) -> None:
        if not isinstance(message, dict) or "id" not in message:
            return
        pending = self._pending.pop(message["id"], None)
        if pending is None:
            logger.debug(f"Dropping response for unknown or settled request {message['id']}")
            return
        pending.timeout_handle.cancel()
        if pending.future.done():
            return
        error = message.get("error")
        if error is not None:
            pending.future.set_exception(RequestError(pending.id, str(error)))
        else:
            pending.future.set_result(message.get("result"))

    def _expire(self, request_id: str, timeout_ms: float) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is None or pending.future.done():
            return
        logger.warning(f"Request {request_id} on {pending.topic} timed out")
        pending.future.set_exception(
            RequestTimeoutError(request_id, pending.topic, timeout_ms)
        )

    def _discard(self, request_id: str) -> None:
        pending = self._pending.pop(request_id, None)
        if pending is not None:
            pending.timeout_handle.cancel()

    async def _respond_when_done(self, request_id: str, awaitable: Awaitable[Any]) -> None:
        try:
            result = await awaitable
        except Exception as e:
            self._respond_error(request_id, e)
            return
        self._respond(request_id, result)

    def _respond(self, request_id: str, result: Any) -> None:
        self._bus.emit(self._response_topic, {"id": request_id, "result": result})

    def _respond_error(self, request_id: str, error: Exception) -> None:
        logger.error(f"Request handler failed for {request_id}: {error}")
        self._bus.emit(
            self._response_topic,
            {"id": request_id, "error": str(error) or type(error).__name__},
        )
