# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Pydantic schemas for plugin API endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from pluginhost.plugins.base import LifecycleState


class PluginPricingResponse(BaseModel):
    """Pricing declared by a plugin."""

    price: int
    currency: str
    display_price: str
    gated_features: list[str] = []


class PluginManifestResponse(BaseModel):
    """Plugin manifest in API responses."""

    id: str
    name: str
    version: str
    description: str
    author: str = ""
    homepage: str = ""
    license: str = ""
    category: str = "other"
    min_host_version: str
    max_host_version: str | None = None
    permissions: list[str] = []
    dangerous_permissions: list[str] = []
    features: list[str] = []
    pricing: PluginPricingResponse | None = None


class PluginErrorResponse(BaseModel):
    """The failed transition that put a plugin into ERROR."""

    transition: str
    prior_state: LifecycleState
    message: str
    occurred_at: datetime


class PluginSummary(BaseModel):
    """Summary of a plugin for list views."""

    plugin_id: str
    plugin_version: str
    state: LifecycleState
    is_enabled: bool
    manifest: PluginManifestResponse
    installed_at: datetime
    updated_at: datetime


class PluginListResponse(BaseModel):
    """Response for plugin list endpoint."""

    plugins: list[PluginSummary]


class PluginInfoResponse(PluginSummary):
    """Detailed plugin information."""

    config_schema: dict[str, Any]
    settings: dict[str, Any]
    hooks: list[str] = []
    subscription_count: int = 0
    last_error: PluginErrorResponse | None = None


class PluginStateResponse(BaseModel):
    """Response after a lifecycle transition."""

    success: bool
    plugin_id: str
    state: LifecycleState
    version: str
    message: str = ""


class PluginUninstallResponse(BaseModel):
    """Response after plugin uninstallation."""

    success: bool
    plugin_id: str
    message: str = ""


class PluginSettingsUpdate(BaseModel):
    """Request to update plugin settings."""

    settings: dict[str, Any] = Field(
        ...,
        description="Plugin settings dictionary",
    )


class PluginSettingsResponse(BaseModel):
    """Response after updating plugin settings."""

    success: bool
    plugin_id: str
    settings: dict[str, Any]
    message: str = ""
