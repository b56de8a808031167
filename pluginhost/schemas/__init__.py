"""Pydantic schemas package."""
from pluginhost.schemas.common import HealthResponse
from pluginhost.schemas.license import LicenseServiceResponse, LicenseValidationRequest
from pluginhost.schemas.plugin import (
    PluginErrorResponse,
    PluginInfoResponse,
    PluginListResponse,
    PluginManifestResponse,
    PluginPricingResponse,
    PluginSettingsResponse,
    PluginSettingsUpdate,
    PluginStateResponse,
    PluginSummary,
    PluginUninstallResponse,
)

__all__ = [
    "HealthResponse",
    "LicenseServiceResponse",
    "LicenseValidationRequest",
    "PluginErrorResponse",
    "PluginInfoResponse",
    "PluginListResponse",
    "PluginManifestResponse",
    "PluginPricingResponse",
    "PluginSettingsResponse",
    "PluginSettingsUpdate",
    "PluginStateResponse",
    "PluginSummary",
    "PluginUninstallResponse",
]
