# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Base classes and interfaces for the plugin system."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx

    from pluginhost.plugins.context import PluginContext


class Permission(str, Enum):
    """Available plugin permissions."""

    STORAGE = "storage"
    NETWORK = "network"
    NOTIFICATIONS = "notifications"
    FILESYSTEM = "filesystem"
    SYSTEM = "system"
    CALENDAR = "calendar"
    CONTACTS = "contacts"
    LOCATION = "location"
    CAMERA = "camera"
    MICROPHONE = "microphone"


class LifecycleState(str, Enum):
    """States a plugin instance moves through."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    ENABLED = "enabled"
    DISABLED = "disabled"
    UPDATING = "updating"
    ERROR = "error"


# Optional hook methods a plugin may implement, in lifecycle order.
HOOK_NAMES: tuple[str, ...] = (
    "on_install",
    "on_enable",
    "on_disable",
    "on_uninstall",
    "on_update",
    "on_config_change",
)


@dataclass(frozen=True)
class PluginPricing:
    """Pricing declared by a paid plugin.

    ``price`` is in cents. ``gated_features`` lists the declared features
    that require a valid license before the plugin can be enabled.
    """

    price: int = 0
    currency: str = "USD"
    gated_features: frozenset[str] = frozenset()

    @property
    def is_free(self) -> bool:
        """True when nothing about the plugin requires a license."""
        return self.price == 0 and not self.gated_features


@dataclass(frozen=True)
class PluginManifest:
    """Plugin manifest containing metadata and requirements.

    Immutable once loaded; an update replaces the whole manifest.
    """

    id: str
    name: str
    version: str
    entry_point: str
    description: str = ""
    author: str = ""
    homepage: str = ""
    license: str = ""
    category: str = "other"
    min_host_version: str = "0.1.0"
    max_host_version: str | None = None
    permissions: frozenset[Permission] = frozenset()
    features: frozenset[str] = frozenset()
    pricing: PluginPricing | None = None
    default_config: dict[str, Any] = field(
        default_factory=dict, compare=False, hash=False
    )

    @property
    def is_paid(self) -> bool:
        """Whether the plugin declares pricing that needs a license."""
        return self.pricing is not None and not self.pricing.is_free

    @property
    def gated_features(self) -> frozenset[str]:
        """Features that must be licensed before enabling."""
        if self.pricing is None:
            return frozenset()
        return self.pricing.gated_features

    def has_permission(self, permission: Permission) -> bool:
        """Check if the manifest declares a permission."""
        return permission in self.permissions


@dataclass(frozen=True)
class UserIdentity:
    """The user the host is running plugins for."""

    id: str
    email: str | None = None


class BasePlugin:
    """Convenience base class for plugins.

    Subclassing is optional: the lifecycle manager accepts any object and
    only calls the hooks (``on_install``, ``on_enable``, ``on_disable``,
    ``on_uninstall``, ``on_update``, ``on_config_change``) it finds on it.
    This class deliberately defines none of them.
    """

    def __init__(self) -> None:
        self.context: PluginContext | None = None

    def initialize(self, context: PluginContext) -> None:
        """Attach the runtime context. Called by the host before each hook."""
        self.context = context

    @classmethod
    def get_config_schema(cls) -> dict[str, Any]:
        """Return JSON Schema for plugin configuration.

        Return an empty dict if the plugin has no configurable settings.
        """
        return {}

    def _require_context(self) -> PluginContext:
        if self.context is None:
            raise RuntimeError(f"{type(self).__name__} has no runtime context yet")
        return self.context

    def get_config(self, key: str | None = None, default: Any = None) -> Any:
        """Get one configuration value, or the whole mapping."""
        config = self._require_context().config
        if key is None:
            return dict(config)
        return config.get(key, default)

    async def get_storage(self, key: str) -> Any:
        """Read a storage key, returning None if the store fails."""
        context = self._require_context()
        try:
            return await context.storage.get(key)
        except Exception as e:
            context.logger.error(f"Failed to get storage key {key}: {e}")
            return None

    async def set_storage(self, key: str, value: Any) -> bool:
        """Write a storage key. Returns False if the store fails."""
        context = self._require_context()
        try:
            await context.storage.set(key, value)
            return True
        except Exception as e:
            context.logger.error(f"Failed to set storage key {key}: {e}")
            return False

    async def http_get(self, url: str, **kwargs: Any) -> httpx.Response:
        """GET through the permission-gated HTTP facade."""
        return await self._require_context().http.get(url, **kwargs)

    async def http_post(self, url: str, data: Any = None, **kwargs: Any) -> httpx.Response:
        """POST JSON through the permission-gated HTTP facade."""
        return await self._require_context().http.post(url, json=data, **kwargs)
