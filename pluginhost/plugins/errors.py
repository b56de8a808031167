# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Exception taxonomy for the plugin host runtime.

Every error carries a ``user_action`` hint that outer surfaces (the admin
API, a UI) use to decide which follow-up to offer: ``"retry"`` for
transient conditions, ``"reconfigure"`` for plugin faults that need an
operator, or ``None`` when nothing can be done automatically.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pluginhost.plugins.base import LifecycleState


class PluginHostError(Exception):
    """Base class for all plugin host errors."""

    user_action: str | None = None


class ValidationError(PluginHostError):
    """Malformed arguments, rejected synchronously."""


class PluginValidationError(ValidationError):
    """Error validating a plugin manifest or structure."""


class InvalidTransitionError(ValidationError):
    """Lifecycle transition not allowed from the current state."""


class PluginNotFoundError(PluginHostError, LookupError):
    """No plugin instance with the given ID."""


class PluginLoadError(PluginHostError):
    """Error loading a plugin module."""


class PermissionDeniedError(PluginHostError):
    """Plugin used a facade it did not declare a permission for."""


class ListenerError(PluginHostError):
    """Raised inside a subscriber. Caught and logged, never rethrown."""

    def __init__(self, topic: str, handler: Any, cause: BaseException) -> None:
        self.topic = topic
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__qualname__", repr(handler))
        super().__init__(f"Listener {name} failed on {topic}: {cause}")


class RequestTimeoutError(PluginHostError, TimeoutError):
    """Request/response deadline exceeded."""

    user_action = "retry"

    def __init__(self, request_id: str, topic: str, timeout_ms: float) -> None:
        self.request_id = request_id
        self.topic = topic
        self.timeout_ms = timeout_ms
        super().__init__(
            f"Request {request_id} on {topic} timed out after {timeout_ms}ms"
        )


class RequestError(PluginHostError):
    """The responder answered with an error field."""

    def __init__(self, request_id: str, message: str) -> None:
        self.request_id = request_id
        super().__init__(message)


class LicenseError(PluginHostError):
    """Feature not covered by the user's current license."""

    def __init__(
        self,
        message: str,
        plugin_id: str | None = None,
        feature: str | None = None,
    ) -> None:
        self.plugin_id = plugin_id
        self.feature = feature
        super().__init__(message)


class RetryableLicenseError(LicenseError):
    """License service unreachable and no usable cached record."""

    user_action = "retry"


class BusyError(PluginHostError):
    """A transition is already in flight for this instance."""

    user_action = "retry"

    def __init__(self, plugin_id: str, transition: str) -> None:
        self.plugin_id = plugin_id
        self.transition = transition
        super().__init__(
            f"Plugin {plugin_id} is busy; cannot start {transition} "
            "while another transition is in flight"
        )


class LifecycleHookError(PluginHostError):
    """A plugin hook raised during a lifecycle transition.

    The original exception is chained as ``__cause__``.
    """

    user_action = "reconfigure"

    def __init__(
        self,
        plugin_id: str,
        transition: str,
        prior_state: LifecycleState,
        *,
        rolled_back: bool = False,
    ) -> None:
        self.plugin_id = plugin_id
        self.transition = transition
        self.prior_state = prior_state
        self.rolled_back = rolled_back
        super().__init__(
            f"Plugin {plugin_id} failed during {transition} "
            f"(prior state: {prior_state.value})"
        )
