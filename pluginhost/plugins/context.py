# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Runtime context and scoped facades handed to plugin hooks."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, MutableMapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from pluginhost.config import settings
from pluginhost.plugins.base import Permission, PluginManifest, UserIdentity
from pluginhost.plugins.errors import PermissionDeniedError, ValidationError
from pluginhost.plugins.events import ScopedEventBus
from pluginhost.plugins.requests import RequestResponseCoordinator
from pluginhost.plugins.storage import StorageBackend

logger = logging.getLogger(__name__)


class PluginLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with the plugin ID."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        return f"[{self.extra['plugin_id']}] {msg}", kwargs


def get_plugin_logger(plugin_id: str) -> PluginLoggerAdapter:
    """Logger for one plugin, a child of the host's plugin logger."""
    return PluginLoggerAdapter(
        logging.getLogger(f"pluginhost.plugin.{plugin_id}"),
        {"plugin_id": plugin_id},
    )


class PluginStorage:
    """Key-value storage scoped to one plugin."""

    def __init__(self, backend: StorageBackend, plugin_id: str) -> None:
        self._backend = backend
        self._plugin_id = plugin_id

    @staticmethod
    def _check_key(key: str) -> str:
        if not isinstance(key, str) or not key:
            raise ValidationError(f"Storage key must be a non-empty string, got {key!r}")
        return key

    async def get(self, key: str, default: Any = None) -> Any:
        value = await self._backend.get(self._plugin_id, self._check_key(key))
        return default if value is None else value

    async def set(self, key: str, value: Any) -> None:
        await self._backend.set(self._plugin_id, self._check_key(key), value)

    async def delete(self, key: str) -> bool:
        return await self._backend.delete(self._plugin_id, self._check_key(key))

    async def clear(self) -> int:
        return await self._backend.clear(self._plugin_id)

    async def keys(self, prefix: str | None = None) -> list[str]:
        return await self._backend.keys(self._plugin_id, prefix)

    async def has(self, key: str) -> bool:
        return await self._backend.has(self._plugin_id, self._check_key(key))

    async def size(self) -> int:
        return await self._backend.size(self._plugin_id)


class HttpTransport:
    """Shared, lazily created httpx client used by every plugin facade."""

    def __init__(self, timeout: float | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.http_timeout
        self._http_client: httpx.AsyncClient | None = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


class PluginHttpClient:
    """HTTP facade gated by the ``network`` permission.

    Every call raises PermissionDeniedError when the plugin's manifest does
    not declare the permission. Responses are returned as-is; status checks
    are up to the caller.
    """

    def __init__(self, manifest: PluginManifest, transport: HttpTransport) -> None:
        self._manifest = manifest
        self._transport = transport

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        if not self._manifest.has_permission(Permission.NETWORK):
            raise PermissionDeniedError(
                f"Plugin {self._manifest.id} has no '{Permission.NETWORK.value}' permission"
            )
        client = await self._transport.get_client()
        logger.debug(f"Plugin {self._manifest.id}: {method.upper()} {url}")
        return await client.request(method.upper(), url, **kwargs)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)


@dataclass(eq=False)
class PluginContext:
    """Everything a plugin hook can reach.

    A fresh context is built on install and on every enable. Background work
    must go through ``create_task`` so the host can cancel it on disable.
    """

    manifest: PluginManifest
    config: dict[str, Any]
    storage: PluginStorage
    http: PluginHttpClient
    bus: ScopedEventBus
    requests: RequestResponseCoordinator
    logger: logging.LoggerAdapter
    user: UserIdentity | None = None
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    closed: bool = False

    @property
    def plugin_id(self) -> str:
        return self.manifest.id

    def create_task(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        """Start background work owned by this plugin."""
        if self.closed:
            coro.close()
            raise ValidationError(f"Context for plugin {self.plugin_id} is closed")
        task = asyncio.get_running_loop().create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Background task failed: {error}")

    def close(self) -> None:
        """Cancel owned tasks and pending requests; refuse further use.

        Subscriptions are owned by the plugin instance, not the context, and
        are removed separately.
        """
        self.closed = True
        for task in list(self.tasks):
            task.cancel()
        self.requests.close()
        self.bus.closed = True
