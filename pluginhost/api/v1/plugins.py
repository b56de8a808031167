# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Plugin administration API endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from pluginhost.api.deps import get_host
from pluginhost.plugins import (
    BusyError,
    InvalidTransitionError,
    LicenseError,
    LifecycleHookError,
    PermissionChecker,
    PermissionDeniedError,
    PluginHost,
    PluginHostError,
    PluginInstance,
    PluginLoadError,
    PluginNotFoundError,
    RequestTimeoutError,
    RetryableLicenseError,
    ValidationError,
)
from pluginhost.plugins.base import HOOK_NAMES, LifecycleState
from pluginhost.plugins.loader import format_price
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

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/plugins", tags=["plugins"])

# Most specific classes first
ERROR_STATUS_CODES: list[tuple[type[PluginHostError], int]] = [
    (PluginNotFoundError, status.HTTP_404_NOT_FOUND),
    (BusyError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PluginLoadError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (RetryableLicenseError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LicenseError, status.HTTP_402_PAYMENT_REQUIRED),
    (RequestTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (LifecycleHookError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _http_error(error: PluginHostError) -> HTTPException:
    """Translate a plugin host error into an HTTP error carrying its action."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            status_code = code
            break
    detail: dict[str, object] = {
        "message": str(error),
        "error": type(error).__name__,
        "action": error.user_action,
    }
    if isinstance(error, LifecycleHookError):
        detail["rolled_back"] = error.rolled_back
        if error.__cause__ is not None:
            detail["cause"] = str(error.__cause__)
    if status_code >= 500:
        logger.error(f"Plugin operation failed: {error}")
    return HTTPException(status_code=status_code, detail=detail)


def _manifest_response(instance: PluginInstance) -> PluginManifestResponse:
    manifest = instance.manifest
    pricing = None
    if manifest.pricing is not None:
        pricing = PluginPricingResponse(
            price=manifest.pricing.price,
            currency=manifest.pricing.currency,
            display_price=format_price(manifest.pricing),
            gated_features=sorted(manifest.pricing.gated_features),
        )
    dangerous = PermissionChecker().get_dangerous_permissions(manifest.permissions)
    return PluginManifestResponse(
        id=manifest.id,
        name=manifest.name,
        version=manifest.version,
        description=manifest.description,
        author=manifest.author,
        homepage=manifest.homepage,
        license=manifest.license,
        category=manifest.category,
        min_host_version=manifest.min_host_version,
        max_host_version=manifest.max_host_version,
        permissions=sorted(p.value for p in manifest.permissions),
        dangerous_permissions=sorted(p.value for p in dangerous),
        features=sorted(manifest.features),
        pricing=pricing,
    )


def _summary_fields(instance: PluginInstance) -> dict:
    return {
        "plugin_id": instance.id,
        "plugin_version": instance.manifest.version,
        "state": instance.state,
        "is_enabled": instance.state == LifecycleState.ENABLED,
        "manifest": _manifest_response(instance),
        "installed_at": instance.installed_at,
        "updated_at": instance.updated_at,
    }


def _state_response(instance: PluginInstance, message: str) -> PluginStateResponse:
    return PluginStateResponse(
        success=True,
        plugin_id=instance.id,
        state=instance.state,
        version=instance.manifest.version,
        message=message,
    )


def _get_instance(host: PluginHost, plugin_id: str) -> PluginInstance:
    instance = host.get_plugin(plugin_id)
    if instance is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"message": f"Plugin {plugin_id} not found", "action": None},
        )
    return instance


@router.get("", response_model=PluginListResponse)
async def list_plugins(host: PluginHost = Depends(get_host)) -> PluginListResponse:
    """List all installed plugins."""
    return PluginListResponse(
        plugins=[
            PluginSummary(**_summary_fields(instance))
            for instance in host.get_all_plugins()
        ]
    )


@router.get("/{plugin_id}", response_model=PluginInfoResponse)
async def get_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginInfoResponse:
    """Get details for a specific plugin."""
    instance = _get_instance(host, plugin_id)

    config_schema: dict = {}
    get_schema = getattr(instance.plugin, "get_config_schema", None)
    if callable(get_schema):
        config_schema = get_schema()

    last_error = None
    if instance.last_error is not None:
        last_error = PluginErrorResponse(
            transition=instance.last_error.transition,
            prior_state=instance.last_error.prior_state,
            message=str(instance.last_error.error),
            occurred_at=instance.last_error.occurred_at,
        )

    return PluginInfoResponse(
        **_summary_fields(instance),
        config_schema=config_schema,
        settings=dict(instance.config),
        hooks=[name for name in HOOK_NAMES if instance.has_hook(name)],
        subscription_count=len(host.bus.registry.owned_by(instance)),
        last_error=last_error,
    )


@router.post("/{plugin_id}/enable", response_model=PluginStateResponse)
async def enable_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginStateResponse:
    """Enable an installed or disabled plugin."""
    try:
        instance = await host.enable_plugin(plugin_id)
    except PluginHostError as e:
        raise _http_error(e) from e
    return _state_response(instance, f"Plugin {plugin_id} enabled")


@router.post("/{plugin_id}/disable", response_model=PluginStateResponse)
async def disable_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginStateResponse:
    """Disable an enabled plugin."""
    try:
        instance = await host.disable_plugin(plugin_id)
    except PluginHostError as e:
        raise _http_error(e) from e
    return _state_response(instance, f"Plugin {plugin_id} disabled")


@router.post("/{plugin_id}/update", response_model=PluginStateResponse)
async def update_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginStateResponse:
    """Update a plugin to the version currently in its plugin directory."""
    try:
        instance = await host.update_plugin(plugin_id)
    except PluginHostError as e:
        raise _http_error(e) from e
    return _state_response(
        instance, f"Plugin {plugin_id} updated to v{instance.manifest.version}"
    )


@router.post("/{plugin_id}/retry", response_model=PluginStateResponse)
async def retry_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginStateResponse:
    """Re-attempt the transition that left a plugin in error state."""
    try:
        instance = await host.retry_plugin(plugin_id)
    except PluginHostError as e:
        raise _http_error(e) from e
    return _state_response(instance, f"Plugin {plugin_id} recovered")


@router.put("/{plugin_id}/config", response_model=PluginSettingsResponse)
async def update_plugin_settings(
    plugin_id: str,
    settings_update: PluginSettingsUpdate,
    host: PluginHost = Depends(get_host),
) -> PluginSettingsResponse:
    """Replace a plugin's configuration."""
    try:
        instance = await host.update_plugin_settings(plugin_id, settings_update.settings)
    except PluginHostError as e:
        raise _http_error(e) from e
    return PluginSettingsResponse(
        success=True,
        plugin_id=plugin_id,
        settings=dict(instance.config),
        message="Settings updated successfully",
    )


@router.delete("/{plugin_id}", response_model=PluginUninstallResponse)
async def uninstall_plugin(
    plugin_id: str,
    host: PluginHost = Depends(get_host),
) -> PluginUninstallResponse:
    """Uninstall a plugin, disabling it first if needed."""
    try:
        await host.uninstall_plugin(plugin_id)
    except PluginHostError as e:
        raise _http_error(e) from e
    return PluginUninstallResponse(
        success=True,
        plugin_id=plugin_id,
        message=f"Plugin {plugin_id} uninstalled",
    )
