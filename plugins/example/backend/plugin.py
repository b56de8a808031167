# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Example plugin main class."""

from typing import Any

from pluginhost.plugins.base import BasePlugin
from pluginhost.plugins.context import PluginContext
from pluginhost.plugins.events import PlatformEvent

GREETING_COUNT_KEY = "greeting_count"


class ExamplePlugin(BasePlugin):
    """Example plugin demonstrating the plugin runtime.

    This plugin shows how to:
    - Implement lifecycle hooks
    - Subscribe to host and plugin events
    - Answer requests through the request/response coordinator
    - Use configuration settings and storage
    """

    @classmethod
    def get_config_schema(cls) -> dict[str, Any]:
        """Return JSON Schema for plugin configuration."""
        return {
            "type": "object",
            "properties": {
                "greeting_message": {
                    "type": "string",
                    "title": "Greeting Message",
                    "description": "Greeting returned for 'greeting' requests",
                    "default": "Hello from the Example Plugin!",
                },
                "enable_notifications": {
                    "type": "boolean",
                    "title": "Enable Notifications",
                    "description": "Log host events when they occur",
                    "default": True,
                },
            },
        }

    async def on_install(self, context: PluginContext) -> None:
        """Initialize the greeting counter."""
        await self.set_storage(GREETING_COUNT_KEY, 0)
        context.logger.info("Example plugin installed")

    def on_enable(self, context: PluginContext) -> None:
        """Register event handlers and the request handler."""
        if self.get_config("enable_notifications", True):
            context.bus.on(PlatformEvent.SYSTEM_STARTUP, self._on_startup, absolute=True)
            context.bus.on("plugin.*", self._on_plugin_event, absolute=True)
        context.requests.handle_request(self._handle_request)
        context.logger.info("Example plugin enabled")

    def on_disable(self, context: PluginContext) -> None:
        context.logger.info("Example plugin disabled")

    async def on_uninstall(self, context: PluginContext) -> None:
        """Remove everything the plugin stored."""
        await context.storage.clear()

    def on_config_change(self, context: PluginContext, old_config: dict[str, Any]) -> None:
        """Reject an empty greeting."""
        greeting = context.config.get("greeting_message")
        if not isinstance(greeting, str) or not greeting.strip():
            raise ValueError("greeting_message must be a non-empty string")
        context.logger.info(
            f"Greeting changed from {old_config.get('greeting_message')!r} to {greeting!r}"
        )

    async def _handle_request(self, request_type: str, payload: Any) -> Any:
        if request_type != "greeting":
            raise ValueError(f"Unsupported request: {request_type}")
        count = (await self.get_storage(GREETING_COUNT_KEY) or 0) + 1
        await self.set_storage(GREETING_COUNT_KEY, count)
        name = (payload or {}).get("name", "there")
        return {"message": f"{self.get_config('greeting_message')} ({name})", "count": count}

    def _on_startup(self, payload: dict[str, Any]) -> None:
        self._require_context().logger.info(
            f"Host {payload.get('host_version')} started"
        )

    def _on_plugin_event(self, payload: dict[str, Any]) -> None:
        self._require_context().logger.info(
            f"Plugin {payload.get('plugin_id')} is now {payload.get('state')}"
        )
