# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Plugin host runtime.

This module provides the infrastructure for loading plugins, driving them
through their lifecycle, letting them talk over a shared event bus, and
gating paid features behind a license.
"""

from pluginhost.plugins.base import (
    BasePlugin,
    LifecycleState,
    Permission,
    PluginManifest,
    PluginPricing,
    UserIdentity,
)
from pluginhost.plugins.context import PluginContext
from pluginhost.plugins.errors import (
    BusyError,
    InvalidTransitionError,
    LicenseError,
    LifecycleHookError,
    ListenerError,
    PermissionDeniedError,
    PluginHostError,
    PluginLoadError,
    PluginNotFoundError,
    PluginValidationError,
    RequestError,
    RequestTimeoutError,
    RetryableLicenseError,
    ValidationError,
)
from pluginhost.plugins.events import EventBus, PlatformEvent, ScopedEventBus
from pluginhost.plugins.host import PluginHost
from pluginhost.plugins.licensing import LicenseValidator
from pluginhost.plugins.lifecycle import LifecycleManager, PluginInstance
from pluginhost.plugins.loader import PluginLoader, validate_manifest
from pluginhost.plugins.permissions import PermissionChecker
from pluginhost.plugins.requests import RequestResponseCoordinator
from pluginhost.plugins.subscriptions import SubscriptionRegistry

__all__ = [  # noqa: RUF022
    # Base classes
    "BasePlugin",
    "LifecycleState",
    "Permission",
    "PluginManifest",
    "PluginPricing",
    "UserIdentity",
    "PluginContext",
    # Events
    "EventBus",
    "ScopedEventBus",
    "PlatformEvent",
    "SubscriptionRegistry",
    "RequestResponseCoordinator",
    # Lifecycle
    "LifecycleManager",
    "PluginInstance",
    "PluginHost",
    # Licensing
    "LicenseValidator",
    # Loader
    "PluginLoader",
    "validate_manifest",
    # Permissions
    "PermissionChecker",
    # Errors
    "PluginHostError",
    "ValidationError",
    "PluginValidationError",
    "InvalidTransitionError",
    "PluginNotFoundError",
    "PluginLoadError",
    "PermissionDeniedError",
    "ListenerError",
    "RequestTimeoutError",
    "RequestError",
    "LicenseError",
    "RetryableLicenseError",
    "BusyError",
    "LifecycleHookError",
]
