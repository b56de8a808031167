# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Plugin lifecycle state machine.

Transitions::

    install    UNINSTALLED -> INSTALLED
    enable     INSTALLED | DISABLED -> ENABLED
    disable    ENABLED -> DISABLED
    uninstall  INSTALLED | DISABLED | ENABLED | ERROR -> UNINSTALLED
    update     ENABLED -> UPDATING -> ENABLED | ERROR
    retry      ERROR -> whatever the failed transition leads to

Transitions on one instance are serialized by a per-instance lock. A second
transition requested while one is in flight fails with BusyError instead of
queueing. Platform events are emitted on the root bus after the lock is
released; coroutine listeners run as tasks and are not awaited.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

from pluginhost.config import settings
from pluginhost.plugins.base import (
    BasePlugin,
    LifecycleState,
    PluginManifest,
    UserIdentity,
)
from pluginhost.plugins.context import (
    HttpTransport,
    PluginContext,
    PluginHttpClient,
    PluginStorage,
    get_plugin_logger,
)
from pluginhost.plugins.errors import (
    BusyError,
    InvalidTransitionError,
    LifecycleHookError,
    LicenseError,
    PluginNotFoundError,
    PluginValidationError,
    ValidationError,
)
from pluginhost.plugins.events import EventBus, PlatformEvent
from pluginhost.plugins.licensing import LicenseValidator
from pluginhost.plugins.loader import (
    compare_versions,
    is_entry_point_resolvable,
    is_host_compatible,
    load_plugin,
)
from pluginhost.plugins.requests import RequestResponseCoordinator
from pluginhost.plugins.storage import InMemoryStorageBackend, StorageBackend

logger = logging.getLogger(__name__)

PluginFactory = Callable[[PluginManifest, Path | None], Any]
EntryPointResolver = Callable[[PluginManifest, Path | None], bool]
PendingEvents = list[tuple[PlatformEvent, dict[str, Any]]]


@dataclass(eq=False)
class ErrorRecord:
    """Why an instance is in ERROR and how to re-attempt it."""

    transition: str
    prior_state: LifecycleState
    args: tuple[Any, ...]
    error: BaseException
    occurred_at: datetime = field(default_factory=datetime.now)


@dataclass(eq=False)
class PluginInstance:
    """A loaded plugin and its lifecycle state.

    Instances are compared by identity; the bus uses them as subscription
    owners.
    """

    manifest: PluginManifest
    plugin: Any
    config: dict[str, Any]
    plugin_path: Path | None = None
    state: LifecycleState = LifecycleState.UNINSTALLED
    context: PluginContext | None = None
    last_error: ErrorRecord | None = None
    initialized: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    installed_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def busy(self) -> bool:
        return self.lock.locked()

    def has_hook(self, name: str) -> bool:
        return callable(getattr(self.plugin, name, None))

    def __repr__(self) -> str:
        return f"PluginInstance({self.id!r}, {self.state.value})"


class LifecycleManager:
    """Drives plugin instances through their lifecycle."""

    def __init__(
        self,
        bus: EventBus,
        license_validator: LicenseValidator,
        storage: StorageBackend | None = None,
        *,
        http: HttpTransport | None = None,
        user: UserIdentity | None = None,
        host_version: str | None = None,
        request_timeout_ms: float | None = None,
        plugin_factory: PluginFactory = load_plugin,
        entry_point_resolver: EntryPointResolver = is_entry_point_resolvable,
    ) -> None:
        """Initialize the lifecycle manager.

        Args:
            bus: Root event bus
            license_validator: Validator consulted for gated features
            storage: Backend for the plugin Storage facade
            http: Shared transport for the plugin HTTP facade
            user: Signed-in user, if any
            host_version: Version checked against manifest bounds
            request_timeout_ms: Default timeout of each plugin's coordinator
            plugin_factory: Builds the plugin object when none is given
            entry_point_resolver: Decides whether a failed update can roll back
        """
        self.bus = bus
        self.license_validator = license_validator
        self.storage = storage or InMemoryStorageBackend()
        self.http = http or HttpTransport()
        self.user = user
        self.host_version = host_version or settings.host_version
        self.request_timeout_ms = request_timeout_ms or settings.request_timeout_ms
        self._plugin_factory = plugin_factory
        self._entry_point_resolver = entry_point_resolver
        self._instances: dict[str, PluginInstance] = {}
        self._steps: dict[str, Callable[..., Awaitable[None]]] = {
            "install": self._install_step,
            "enable": self._enable_step,
            "disable": self._disable_step,
            "uninstall": self._uninstall_step,
            "update": self._update_step,
        }

    # Queries

    def get_plugin(self, plugin_id: str) -> PluginInstance:
        """Get an instance by plugin ID.

        Raises:
            PluginNotFoundError: If no such instance exists
        """
        instance = self._instances.get(plugin_id)
        if instance is None:
            raise PluginNotFoundError(f"Plugin not found: {plugin_id}")
        return instance

    def get_all_plugins(self) -> list[PluginInstance]:
        """All instances, ordered by plugin ID."""
        return [self._instances[key] for key in sorted(self._instances)]

    def state_of(self, plugin_id: str) -> LifecycleState:
        instance = self._instances.get(plugin_id)
        return instance.state if instance else LifecycleState.UNINSTALLED

    def is_enabled(self, plugin_id: str) -> bool:
        return self.state_of(plugin_id) == LifecycleState.ENABLED

    # Transitions

    async def install(
        self,
        manifest: PluginManifest,
        plugin: Any = None,
        *,
        plugin_path: Path | None = None,
        config: dict[str, Any] | None = None,
    ) -> PluginInstance:
        """Install a plugin and call its ``on_install`` hook.

        Args:
            manifest: Validated plugin manifest
            plugin: Plugin object; loaded from the entry point when None
            plugin_path: Plugin directory for file entry points
            config: Configuration overriding the manifest defaults

        Returns:
            The INSTALLED instance

        Raises:
            InvalidTransitionError: If the plugin is already installed
            PluginValidationError: If the host version is not supported
            PluginLoadError: If the entry point cannot be loaded
            LifecycleHookError: If ``on_install`` raises
        """
        if manifest.id in self._instances:
            raise InvalidTransitionError(f"Plugin {manifest.id} is already installed")
        if not is_host_compatible(manifest, self.host_version):
            raise PluginValidationError(
                f"Plugin {manifest.id} v{manifest.version} does not support "
                f"host version {self.host_version}"
            )
        if plugin is None:
            plugin = self._plugin_factory(manifest, plugin_path)

        instance = PluginInstance(
            manifest=manifest,
            plugin=plugin,
            config={**manifest.default_config, **(config or {})},
            plugin_path=plugin_path,
        )
        self._instances[manifest.id] = instance
        self.license_validator.register_plugin(manifest)
        logger.info(f"Installing plugin {manifest.id} v{manifest.version}")

        await self._run(instance, "install", {LifecycleState.UNINSTALLED})
        return instance

    async def enable(self, plugin_id: str) -> PluginInstance:
        """Enable an installed or disabled plugin.

        Raises:
            BusyError: If another transition is in flight
            LicenseError: If a gated feature is not licensed (state unchanged)
            LifecycleHookError: If ``on_enable`` raises
        """
        instance = self.get_plugin(plugin_id)
        await self._run(
            instance, "enable", {LifecycleState.INSTALLED, LifecycleState.DISABLED}
        )
        return instance

    async def disable(self, plugin_id: str) -> PluginInstance:
        """Disable an enabled plugin, purging everything it owns.

        Raises:
            BusyError: If another transition is in flight
            LifecycleHookError: If ``on_disable`` raises; resources are
                purged regardless
        """
        instance = self.get_plugin(plugin_id)
        await self._run(instance, "disable", {LifecycleState.ENABLED})
        return instance

    async def uninstall(self, plugin_id: str) -> None:
        """Uninstall a plugin, disabling it first if it is enabled."""
        instance = self.get_plugin(plugin_id)
        await self._run(
            instance,
            "uninstall",
            {
                LifecycleState.INSTALLED,
                LifecycleState.DISABLED,
                LifecycleState.ENABLED,
                LifecycleState.ERROR,
            },
        )

    async def update(
        self,
        plugin_id: str,
        manifest: PluginManifest,
        plugin: Any = None,
        *,
        plugin_path: Path | None = None,
    ) -> PluginInstance:
        """Replace an enabled plugin with a new version.

        The new plugin's ``on_update(context, old_version)`` runs with a
        fresh context. If it raises, the instance rolls back to the previous
        version when that version's entry point is still resolvable, and
        goes to ERROR otherwise.

        Raises:
            BusyError: If another transition is in flight
            LicenseError: If the new version's gated features are not licensed
            LifecycleHookError: If ``on_update`` raises (``rolled_back`` tells
                which way it went)
        """
        instance = self.get_plugin(plugin_id)
        if manifest.id != plugin_id:
            raise ValidationError(
                f"Update manifest is for {manifest.id}, not {plugin_id}"
            )
        if instance.busy:
            raise BusyError(plugin_id, "update")
        if instance.state != LifecycleState.ENABLED:
            raise InvalidTransitionError(
                f"Cannot update plugin {plugin_id} in state {instance.state.value}"
            )
        if not is_host_compatible(manifest, self.host_version):
            raise PluginValidationError(
                f"Plugin {manifest.id} v{manifest.version} does not support "
                f"host version {self.host_version}"
            )
        if compare_versions(manifest.version, instance.manifest.version) <= 0:
            logger.warning(
                f"Updating plugin {plugin_id} from v{instance.manifest.version} "
                f"to v{manifest.version}, which is not newer"
            )
        path = plugin_path or instance.plugin_path
        if plugin is None:
            plugin = self._plugin_factory(manifest, path)

        await self._run(
            instance,
            "update",
            {LifecycleState.ENABLED},
            manifest,
            plugin,
            path,
            instance.manifest,
            instance.plugin,
            instance.plugin_path,
        )
        return instance

    async def config_change(
        self, plugin_id: str, new_config: dict[str, Any]
    ) -> PluginInstance:
        """Apply a new configuration and call ``on_config_change``.

        The state does not change. If the hook raises, the previous
        configuration stays in effect and the error is raised.

        Raises:
            BusyError: If another transition is in flight
            LifecycleHookError: If ``on_config_change`` raises
        """
        if not isinstance(new_config, dict):
            raise ValidationError("Plugin configuration must be a mapping")
        instance = self.get_plugin(plugin_id)
        if instance.busy:
            raise BusyError(plugin_id, "config_change")

        events: PendingEvents = []
        async with instance.lock:
            allowed = {
                LifecycleState.INSTALLED,
                LifecycleState.ENABLED,
                LifecycleState.DISABLED,
            }
            if instance.state not in allowed:
                raise InvalidTransitionError(
                    f"Cannot change configuration of plugin {plugin_id} "
                    f"in state {instance.state.value}"
                )
            old_config = instance.config
            context = self._hook_context(instance)
            instance.config = dict(new_config)
            context.config = instance.config
            try:
                await self._call_hook(instance, "on_config_change", context, dict(old_config))
            except Exception as e:
                instance.config = old_config
                context.config = old_config
                logger.error(f"Plugin {plugin_id} rejected configuration change: {e}")
                raise LifecycleHookError(plugin_id, "config_change", instance.state) from e
            instance.updated_at = datetime.now()
            events.append((PlatformEvent.PLUGIN_CONFIG_CHANGED, self._payload(instance)))
        self._publish(events)
        return instance

    async def retry(self, plugin_id: str) -> PluginInstance:
        """Re-attempt the transition that put an instance into ERROR.

        The same transition runs again with the same arguments.

        Raises:
            InvalidTransitionError: If the instance is not in ERROR
        """
        instance = self.get_plugin(plugin_id)
        record = instance.last_error
        if instance.state != LifecycleState.ERROR or record is None:
            raise InvalidTransitionError(
                f"Plugin {plugin_id} is not in error state; nothing to retry"
            )
        logger.info(f"Retrying {record.transition} for plugin {plugin_id}")
        await self._run(
            instance,
            record.transition,
            {LifecycleState.ERROR},
            *record.args,
            prior=record.prior_state,
        )
        return instance

    async def shutdown(self) -> None:
        """Disable every enabled plugin."""
        for instance in self.get_all_plugins():
            if instance.state != LifecycleState.ENABLED:
                continue
            try:
                await self.disable(instance.id)
            except (LifecycleHookError, BusyError) as e:
                logger.error(f"Failed to disable plugin {instance.id} on shutdown: {e}")

    # Internals

    async def _run(
        self,
        instance: PluginInstance,
        transition: str,
        allowed: set[LifecycleState],
        *args: Any,
        prior: LifecycleState | None = None,
    ) -> None:
        if instance.busy:
            raise BusyError(instance.id, transition)
        events: PendingEvents = []
        try:
            async with instance.lock:
                if instance.state not in allowed:
                    raise InvalidTransitionError(
                        f"Cannot {transition} plugin {instance.id} "
                        f"in state {instance.state.value}"
                    )
                step = self._steps[transition]
                await step(instance, events, prior or instance.state, *args)
        finally:
            self._publish(events)

    async def _install_step(
        self, instance: PluginInstance, events: PendingEvents, prior: LifecycleState
    ) -> None:
        context = self._new_context(instance)
        try:
            await self._call_hook(instance, "on_install", context)
        except Exception as e:
            self._fail(instance, "install", prior, (), e, events)
        instance.state = LifecycleState.INSTALLED
        events.append((PlatformEvent.PLUGIN_INSTALLED, self._payload(instance)))
        logger.info(f"Installed plugin {instance.id}")

    async def _enable_step(
        self, instance: PluginInstance, events: PendingEvents, prior: LifecycleState
    ) -> None:
        await self._check_license(instance.manifest)
        context = self._new_context(instance)
        try:
            await self._call_hook(instance, "on_enable", context)
        except Exception as e:
            self._fail(instance, "enable", prior, (), e, events)
        instance.state = LifecycleState.ENABLED
        if not instance.initialized:
            instance.initialized = True
            events.append((PlatformEvent.PLUGIN_INITIALIZED, self._payload(instance)))
        events.append((PlatformEvent.PLUGIN_ENABLED, self._payload(instance)))
        logger.info(f"Enabled plugin {instance.id}")

    async def _disable_step(
        self, instance: PluginInstance, events: PendingEvents, prior: LifecycleState
    ) -> None:
        context = self._hook_context(instance)
        try:
            await self._call_hook(instance, "on_disable", context)
        except Exception as e:
            self._fail(instance, "disable", prior, (), e, events)
        finally:
            self._purge(instance)
        instance.state = LifecycleState.DISABLED
        events.append((PlatformEvent.PLUGIN_DISABLED, self._payload(instance)))
        logger.info(f"Disabled plugin {instance.id}")

    async def _uninstall_step(
        self, instance: PluginInstance, events: PendingEvents, prior: LifecycleState
    ) -> None:
        if instance.state == LifecycleState.ENABLED:
            context = self._hook_context(instance)
            try:
                await self._call_hook(instance, "on_disable", context)
            except Exception as e:
                self._fail(instance, "uninstall", prior, (), e, events)
            finally:
                self._purge(instance)
            instance.state = LifecycleState.DISABLED
            events.append((PlatformEvent.PLUGIN_DISABLED, self._payload(instance)))

        context = self._hook_context(instance)
        try:
            await self._call_hook(instance, "on_uninstall", context)
        except Exception as e:
            self._fail(instance, "uninstall", prior, (), e, events)
        finally:
            self._purge(instance)

        instance.state = LifecycleState.UNINSTALLED
        instance.context = None
        del self._instances[instance.id]
        self.license_validator.unregister_plugin(instance.id)
        events.append((PlatformEvent.PLUGIN_UNINSTALLED, self._payload(instance)))
        logger.info(f"Uninstalled plugin {instance.id}")

    async def _update_step(
        self,
        instance: PluginInstance,
        events: PendingEvents,
        prior: LifecycleState,
        new_manifest: PluginManifest,
        new_plugin: Any,
        new_path: Path | None,
        old_manifest: PluginManifest,
        old_plugin: Any,
        old_path: Path | None,
    ) -> None:
        args = (new_manifest, new_plugin, new_path, old_manifest, old_plugin, old_path)
        self.license_validator.register_plugin(new_manifest)
        try:
            await self._check_license(new_manifest)
        except LicenseError:
            self.license_validator.register_plugin(instance.manifest)
            raise

        old_config = instance.config
        self._purge(instance)
        instance.state = LifecycleState.UPDATING
        instance.manifest = new_manifest
        instance.plugin = new_plugin
        instance.plugin_path = new_path
        instance.config = {**new_manifest.default_config, **old_config}
        context = self._new_context(instance)
        try:
            await self._call_hook(instance, "on_update", context, old_manifest.version)
        except Exception as e:
            if not self._entry_point_resolver(old_manifest, old_path):
                self._fail(instance, "update", prior, args, e, events)
            await self._roll_back(
                instance, events, prior, args, old_manifest, old_plugin, old_path, old_config
            )
            logger.error(
                f"Update of plugin {instance.id} to v{new_manifest.version} failed, "
                f"rolled back to v{old_manifest.version}: {e}"
            )
            raise LifecycleHookError(instance.id, "update", prior, rolled_back=True) from e

        instance.state = LifecycleState.ENABLED
        instance.updated_at = datetime.now()
        events.append(
            (
                PlatformEvent.PLUGIN_UPDATED,
                {**self._payload(instance), "previous_version": old_manifest.version},
            )
        )
        logger.info(
            f"Updated plugin {instance.id} from v{old_manifest.version} "
            f"to v{new_manifest.version}"
        )

    async def _roll_back(
        self,
        instance: PluginInstance,
        events: PendingEvents,
        prior: LifecycleState,
        args: tuple[Any, ...],
        old_manifest: PluginManifest,
        old_plugin: Any,
        old_path: Path | None,
        old_config: dict[str, Any],
    ) -> None:
        self._purge(instance)
        instance.manifest = old_manifest
        instance.plugin = old_plugin
        instance.plugin_path = old_path
        instance.config = old_config
        self.license_validator.register_plugin(old_manifest)
        # Re-enable the previous version so its subscriptions are live again
        context = self._new_context(instance)
        try:
            await self._call_hook(instance, "on_enable", context)
        except Exception as e:
            self._fail(instance, "update", prior, args, e, events)
        instance.state = LifecycleState.ENABLED
        events.append(
            (PlatformEvent.PLUGIN_ERROR, {**self._payload(instance), "rolled_back": True})
        )

    async def _check_license(self, manifest: PluginManifest) -> None:
        user_id = self.user.id if self.user else None
        gated = sorted(manifest.gated_features)
        if gated:
            for feature in gated:
                await self.license_validator.require(manifest.id, user_id, feature)
        elif manifest.is_paid:
            await self.license_validator.require(manifest.id, user_id)

    def _fail(
        self,
        instance: PluginInstance,
        transition: str,
        prior: LifecycleState,
        args: tuple[Any, ...],
        error: Exception,
        events: PendingEvents,
    ) -> NoReturn:
        self._purge(instance)
        instance.state = LifecycleState.ERROR
        instance.last_error = ErrorRecord(
            transition=transition,
            prior_state=prior,
            args=args,
            error=error,
        )
        events.append(
            (
                PlatformEvent.PLUGIN_ERROR,
                {**self._payload(instance), "transition": transition, "error": str(error)},
            )
        )
        logger.error(f"Plugin {instance.id} failed during {transition}: {error}")
        raise LifecycleHookError(instance.id, transition, prior) from error

    def _purge(self, instance: PluginInstance) -> None:
        if instance.context is not None:
            instance.context.close()
        self.bus.cancel_owned(instance)
        removed = self.bus.registry.remove_owned(instance)
        if removed:
            logger.debug(f"Removed {removed} subscriptions owned by plugin {instance.id}")

    def _new_context(self, instance: PluginInstance) -> PluginContext:
        if instance.context is not None:
            instance.context.close()
        facade = self.bus.namespace(instance.id, owner=instance)
        context = PluginContext(
            manifest=instance.manifest,
            config=instance.config,
            storage=PluginStorage(self.storage, instance.id),
            http=PluginHttpClient(instance.manifest, self.http),
            bus=facade,
            requests=RequestResponseCoordinator(
                facade, default_timeout_ms=self.request_timeout_ms
            ),
            logger=get_plugin_logger(instance.id),
            user=self.user,
        )
        instance.context = context
        return context

    def _hook_context(self, instance: PluginInstance) -> PluginContext:
        if instance.context is None or instance.context.closed:
            return self._new_context(instance)
        return instance.context

    async def _call_hook(
        self, instance: PluginInstance, name: str, context: PluginContext, *args: Any
    ) -> None:
        if isinstance(instance.plugin, BasePlugin):
            instance.plugin.initialize(context)
        if not instance.has_hook(name):
            return
        result = getattr(instance.plugin, name)(context, *args)
        if inspect.isawaitable(result):
            await result

    def _payload(self, instance: PluginInstance) -> dict[str, Any]:
        return {
            "plugin_id": instance.id,
            "version": instance.manifest.version,
            "state": instance.state.value,
        }

    def _publish(self, events: PendingEvents) -> None:
        # Coroutine listeners run as tasks; transitions never wait on them
        for event, payload in events:
            self.bus.emit(event, payload)
