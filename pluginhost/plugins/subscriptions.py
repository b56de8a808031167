# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Subscription registry backing the event bus.

The registry is the only place where topic -> listener entries live. It
also indexes entries by owner so a plugin's subscriptions can be torn down
in one call. Both indexes are updated under the same lock, and per-topic
entry lists are immutable tuples replaced on write, so an emit working
from a snapshot never sees a half-applied change.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pluginhost.plugins.errors import ValidationError

logger = logging.getLogger(__name__)

WILDCARD = "*"
TOPIC_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_topic(topic: Any, *, allow_wildcards: bool = False) -> str:
    """Validate a dot-segmented topic string.

    Args:
        topic: Topic to check
        allow_wildcards: Whether ``*`` segments are accepted (subscribe side)

    Returns:
        The topic, unchanged

    Raises:
        ValidationError: If the topic is not a well-formed string
    """
    if not isinstance(topic, str) or not topic:
        raise ValidationError(f"Topic must be a non-empty string, got {topic!r}")
    for segment in topic.split("."):
        if segment == WILDCARD:
            if not allow_wildcards:
                raise ValidationError(
                    f"Wildcards are only allowed when subscribing: {topic}"
                )
            continue
        if not TOPIC_SEGMENT_PATTERN.match(segment):
            raise ValidationError(f"Invalid topic segment {segment!r} in {topic!r}")
    return topic


def validate_handler(handler: Any) -> Callable[..., Any]:
    """Reject handlers that cannot be called."""
    if not callable(handler):
        raise ValidationError(f"Handler must be callable, got {handler!r}")
    return handler


def topic_matches(pattern: str, topic: str) -> bool:
    """Check a concrete topic against a pattern with ``*`` segments."""
    if WILDCARD not in pattern:
        return pattern == topic
    pattern_parts = pattern.split(".")
    topic_parts = topic.split(".")
    if len(pattern_parts) != len(topic_parts):
        return False
    return all(
        p == WILDCARD or p == t
        for p, t in zip(pattern_parts, topic_parts, strict=True)
    )


@dataclass(eq=False)
class Subscription:
    """One registered listener.

    Identity-compared: registering the same handler twice yields two
    distinct subscriptions.
    """

    topic_pattern: str
    handler: Callable[..., Any]
    once: bool = False
    owner: Any = None
    created_at: datetime = field(default_factory=_utc_now)
    sequence: int = 0
    active: bool = True

    def matches(self, topic: str) -> bool:
        """Whether this subscription receives ``topic``."""
        return topic_matches(self.topic_pattern, topic)


class SubscriptionRegistry:
    """Owns the topic -> listener mapping and the owner index."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_pattern: dict[str, tuple[Subscription, ...]] = {}
        self._wildcard_patterns: frozenset[str] = frozenset()
        self._by_owner: dict[Any, tuple[Subscription, ...]] = {}
        self._sequence = itertools.count(1)

    def add(
        self,
        topic_pattern: str,
        handler: Callable[..., Any],
        *,
        once: bool = False,
        owner: Any = None,
    ) -> Subscription:
        """Register a listener and return its subscription handle."""
        validate_topic(topic_pattern, allow_wildcards=True)
        validate_handler(handler)

        with self._lock:
            subscription = Subscription(
                topic_pattern=topic_pattern,
                handler=handler,
                once=once,
                owner=owner,
                sequence=next(self._sequence),
            )
            self._by_pattern[topic_pattern] = (
                *self._by_pattern.get(topic_pattern, ()),
                subscription,
            )
            if WILDCARD in topic_pattern:
                self._wildcard_patterns = self._wildcard_patterns | {topic_pattern}
            if owner is not None:
                self._by_owner[owner] = (
                    *self._by_owner.get(owner, ()),
                    subscription,
                )

        return subscription

    def remove(self, subscription: Subscription) -> bool:
        """Remove one subscription from every index.

        Returns:
            True if it was live, False if it had already been removed
        """
        with self._lock:
            if not subscription.active:
                return False
            subscription.active = False
            self._drop_from_pattern(subscription)
            self._drop_from_owner(subscription)
            return True

    def remove_first(
        self, topic_pattern: str, handler: Callable[..., Any]
    ) -> Subscription | None:
        """Remove the earliest live entry for ``handler`` on ``topic_pattern``."""
        with self._lock:
            for subscription in self._by_pattern.get(topic_pattern, ()):
                if subscription.handler == handler:
                    self.remove(subscription)
                    return subscription
        return None

    def remove_topic(self, topic_pattern: str) -> int:
        """Remove every entry registered on exactly ``topic_pattern``."""
        with self._lock:
            entries = self._by_pattern.get(topic_pattern, ())
            for subscription in entries:
                self.remove(subscription)
            return len(entries)

    def remove_owned(self, owner: Any) -> int:
        """Remove every entry created by ``owner``."""
        with self._lock:
            entries = self._by_owner.get(owner, ())
            for subscription in entries:
                self.remove(subscription)
        if entries:
            logger.debug(f"Removed {len(entries)} subscriptions for {owner!r}")
        return len(entries)

    def clear(self) -> int:
        """Remove every entry on every topic."""
        with self._lock:
            total = 0
            for topic_pattern in list(self._by_pattern):
                total += self.remove_topic(topic_pattern)
            return total

    def snapshot(self, topic: str) -> tuple[Subscription, ...]:
        """Return the listeners for ``topic`` in registration order."""
        with self._lock:
            exact = self._by_pattern.get(topic, ())
            wildcard_patterns = self._wildcard_patterns
            if not wildcard_patterns:
                return exact
            matched = list(exact)
            for pattern in wildcard_patterns:
                if topic_matches(pattern, topic):
                    matched.extend(self._by_pattern.get(pattern, ()))
        if len(matched) == len(exact):
            return exact
        return tuple(sorted(matched, key=lambda s: s.sequence))

    def owned_by(self, owner: Any) -> tuple[Subscription, ...]:
        """Live subscriptions created by ``owner``."""
        with self._lock:
            return self._by_owner.get(owner, ())

    def count(self, topic_pattern: str | None = None) -> int:
        """Number of entries on one pattern, or in total."""
        with self._lock:
            if topic_pattern is not None:
                return len(self._by_pattern.get(topic_pattern, ()))
            return sum(len(entries) for entries in self._by_pattern.values())

    def patterns(self) -> list[str]:
        """Topic patterns that currently have listeners."""
        with self._lock:
            return list(self._by_pattern)

    def _drop_from_pattern(self, subscription: Subscription) -> None:
        pattern = subscription.topic_pattern
        remaining = tuple(
            s for s in self._by_pattern.get(pattern, ()) if s is not subscription
        )
        if remaining:
            self._by_pattern[pattern] = remaining
            return
        self._by_pattern.pop(pattern, None)
        if pattern in self._wildcard_patterns:
            self._wildcard_patterns = self._wildcard_patterns - {pattern}

    def _drop_from_owner(self, subscription: Subscription) -> None:
        owner = subscription.owner
        if owner is None:
            return
        remaining = tuple(
            s for s in self._by_owner.get(owner, ()) if s is not subscription
        )
        if remaining:
            self._by_owner[owner] = remaining
        else:
            self._by_owner.pop(owner, None)
