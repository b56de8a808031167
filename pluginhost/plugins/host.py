# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Plugin host wiring the bus, license validator, loader and lifecycle."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar

from pluginhost.config import settings
from pluginhost.plugins.base import PluginManifest, UserIdentity
from pluginhost.plugins.context import HttpTransport
from pluginhost.plugins.errors import PluginHostError, PluginNotFoundError
from pluginhost.plugins.events import EventBus, PlatformEvent
from pluginhost.plugins.licensing import LicenseValidator
from pluginhost.plugins.lifecycle import LifecycleManager, PluginInstance
from pluginhost.plugins.loader import PLUGIN_MANIFEST_FILE, PluginLoader, parse_manifest
from pluginhost.plugins.storage import SqlAlchemyStorageBackend, StorageBackend

logger = logging.getLogger(__name__)


class PluginHost:
    """Process-wide plugin host.

    This is a singleton that owns the root event bus and drives every
    plugin through the lifecycle manager.
    """

    _instance: ClassVar[PluginHost | None] = None

    def __init__(
        self,
        *,
        plugins_dir: Path | None = None,
        storage: StorageBackend | None = None,
        license_validator: LicenseValidator | None = None,
        user: UserIdentity | None = None,
        autoload: bool | None = None,
        shutdown_timeout: float | None = None,
    ) -> None:
        """Initialize the plugin host.

        Args:
            plugins_dir: Directory with bundled plugins (settings value if None)
            storage: Storage backend; the SQL backend when None
            license_validator: Validator for paid plugins
            user: Signed-in user, if any
            autoload: Whether ``start`` installs discovered plugins
            shutdown_timeout: Seconds ``shutdown`` waits for running event
                handlers before cancelling them
        """
        self.bus = EventBus()
        self.loader = PluginLoader(plugins_dir)
        self.license_validator = license_validator or LicenseValidator()
        self.http = HttpTransport()
        self._uses_database = storage is None
        if storage is None:
            from pluginhost.database import SessionLocal

            storage = SqlAlchemyStorageBackend(SessionLocal)
        self.storage = storage
        self.lifecycle = LifecycleManager(
            self.bus,
            self.license_validator,
            self.storage,
            http=self.http,
            user=user,
        )
        self.autoload = settings.autoload_plugins if autoload is None else autoload
        self.shutdown_timeout = (
            settings.shutdown_timeout if shutdown_timeout is None else shutdown_timeout
        )
        self._started = False

    @classmethod
    def get_instance(cls) -> PluginHost:
        """Get the singleton instance of the host."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        cls._instance = None

    @property
    def started(self) -> bool:
        return self._started

    def set_user(self, user: UserIdentity | None) -> None:
        """Set the user plugins run for. Applies to contexts built afterwards."""
        self.lifecycle.user = user

    def get_plugin(self, plugin_id: str) -> PluginInstance | None:
        """Get an instance by ID, or None if not installed."""
        try:
            return self.lifecycle.get_plugin(plugin_id)
        except PluginNotFoundError:
            return None

    def get_all_plugins(self) -> list[PluginInstance]:
        return self.lifecycle.get_all_plugins()

    async def start(self) -> None:
        """Load bundled plugins and announce startup."""
        if self._started:
            logger.warning("Plugin host already started")
            return
        if self._uses_database:
            from pluginhost.database import init_db

            init_db()
        if self.autoload:
            await self.load_all_plugins()
        self._started = True
        self.bus.emit(
            PlatformEvent.SYSTEM_STARTUP, {"host_version": self.lifecycle.host_version}
        )
        logger.info(f"Plugin host started with {len(self.get_all_plugins())} plugins")

    async def shutdown(self) -> None:
        """Announce shutdown, disable plugins and release resources."""
        if not self._started:
            return
        self.bus.emit(PlatformEvent.SYSTEM_SHUTDOWN, {})
        await self.lifecycle.shutdown()
        await self.bus.drain(self.shutdown_timeout)
        await self.license_validator.close()
        await self.http.close()
        await self.storage.close()
        self._started = False
        logger.info("Plugin host stopped")

    async def load_all_plugins(self) -> None:
        """Install and enable every plugin found in the plugins directory."""
        discovered = self.loader.discover_plugins()
        logger.info(f"Discovered {len(discovered)} plugins")

        for plugin_path, manifest in discovered:
            if self.get_plugin(manifest.id) is not None:
                logger.info(f"Skipping already installed plugin: {manifest.id}")
                continue
            try:
                await self.install_plugin(manifest, plugin_path=plugin_path)
            except PluginHostError as e:
                logger.error(f"Failed to load plugin {manifest.id}: {e}")

    async def install_plugin(
        self,
        manifest: PluginManifest,
        plugin: Any = None,
        *,
        plugin_path: Path | None = None,
        config: dict[str, Any] | None = None,
        enable: bool = True,
    ) -> PluginInstance:
        """Install a plugin and, by default, enable it."""
        instance = await self.lifecycle.install(
            manifest, plugin, plugin_path=plugin_path, config=config
        )
        if enable:
            await self.lifecycle.enable(manifest.id)
        return instance

    async def enable_plugin(self, plugin_id: str) -> PluginInstance:
        return await self.lifecycle.enable(plugin_id)

    async def disable_plugin(self, plugin_id: str) -> PluginInstance:
        return await self.lifecycle.disable(plugin_id)

    async def uninstall_plugin(self, plugin_id: str) -> None:
        await self.lifecycle.uninstall(plugin_id)

    async def retry_plugin(self, plugin_id: str) -> PluginInstance:
        return await self.lifecycle.retry(plugin_id)

    async def update_plugin_settings(
        self, plugin_id: str, new_settings: dict[str, Any]
    ) -> PluginInstance:
        return await self.lifecycle.config_change(plugin_id, new_settings)

    async def update_plugin(
        self,
        plugin_id: str,
        manifest: PluginManifest | None = None,
        plugin: Any = None,
        *,
        plugin_path: Path | None = None,
    ) -> PluginInstance:
        """Update a plugin, re-reading its manifest from disk if none is given.

        Raises:
            PluginNotFoundError: If the plugin or its directory is missing
        """
        if manifest is None:
            plugin_path = plugin_path or self.loader.get_plugin_path(plugin_id)
            if plugin_path is None:
                raise PluginNotFoundError(f"Plugin directory not found: {plugin_id}")
            manifest = parse_manifest(plugin_path / PLUGIN_MANIFEST_FILE)
        return await self.lifecycle.update(
            plugin_id, manifest, plugin, plugin_path=plugin_path
        )
