# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Integration tests for plugin API endpoints."""

from functools import partial

import httpx
import pytest
import respx

from pluginhost.api.v1.plugins import _http_error
from pluginhost.plugins.base import BasePlugin, LifecycleState, PluginPricing, UserIdentity
from pluginhost.plugins.errors import (
    BusyError,
    InvalidTransitionError,
    LicenseError,
    PermissionDeniedError,
    PluginNotFoundError,
    RequestTimeoutError,
    RetryableLicenseError,
    ValidationError,
)

VALIDATE_URL = "https://licenses.test/validate-license"


class GreeterPlugin(BasePlugin):
    """Plugin with a config schema and a few hooks."""

    def __init__(self, fail_enable=0):
        super().__init__()
        self.fail_enable = fail_enable

    @classmethod
    def get_config_schema(cls):
        return {"type": "object", "properties": {"greeting": {"type": "string"}}}

    def on_enable(self, context):
        if self.fail_enable:
            self.fail_enable -= 1
            raise RuntimeError("cannot reach greeting service")
        context.bus.on("greet", lambda data: None)

    def on_disable(self, context):
        pass

    def on_config_change(self, context, old_config):
        if not context.config.get("greeting"):
            raise ValueError("greeting is required")


def install(client, host, manifest, plugin, enable=True):
    """Install a plugin on the app's event loop."""
    return client.portal.call(
        partial(host.install_plugin, manifest, plugin, enable=enable)
    )


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, client):
        """Test the started host reports healthy."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "plugins_loaded": 0}


class TestPluginListEndpoint:
    """Tests for GET /api/v1/plugins endpoint."""

    def test_list_empty(self, client):
        """Test listing plugins when none installed."""
        response = client.get("/api/v1/plugins")
        assert response.status_code == 200
        assert response.json()["plugins"] == []

    def test_list_with_plugins(self, client, host, make_manifest):
        """Test listing installed plugins."""
        install(client, host, make_manifest("b-plugin"), GreeterPlugin())
        install(client, host, make_manifest("a-plugin"), GreeterPlugin(), enable=False)

        response = client.get("/api/v1/plugins")

        assert response.status_code == 200
        plugins = response.json()["plugins"]
        assert [p["plugin_id"] for p in plugins] == ["a-plugin", "b-plugin"]
        assert plugins[0]["state"] == "installed"
        assert plugins[0]["is_enabled"] is False
        assert plugins[1]["state"] == "enabled"
        assert plugins[1]["is_enabled"] is True


class TestPluginInfoEndpoint:
    """Tests for GET /api/v1/plugins/{plugin_id} endpoint."""

    def test_get_plugin(self, client, host, make_manifest):
        """Test getting plugin details."""
        manifest = make_manifest(
            features=frozenset({"greeting", "pro"}),
            pricing=PluginPricing(price=499, gated_features=frozenset()),
            default_config={"greeting": "hello"},
        )
        install(client, host, manifest, GreeterPlugin(), enable=False)

        response = client.get("/api/v1/plugins/test-plugin")

        assert response.status_code == 200
        data = response.json()
        assert data["plugin_id"] == "test-plugin"
        assert data["settings"] == {"greeting": "hello"}
        assert data["config_schema"]["properties"]["greeting"]["type"] == "string"
        assert data["hooks"] == ["on_enable", "on_disable", "on_config_change"]
        assert data["subscription_count"] == 0
        assert data["manifest"]["features"] == ["greeting", "pro"]
        assert data["manifest"]["pricing"]["display_price"] == "$4.99"
        assert data["last_error"] is None

    def test_get_unknown_plugin(self, client):
        """Test getting a plugin that is not installed."""
        response = client.get("/api/v1/plugins/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["action"] is None


class TestPluginTransitions:
    """Tests for lifecycle transition endpoints."""

    def test_enable_and_disable(self, client, host, make_manifest):
        """Test enabling and disabling through the API."""
        install(client, host, make_manifest(), GreeterPlugin(), enable=False)

        response = client.post("/api/v1/plugins/test-plugin/enable")
        assert response.status_code == 200
        assert response.json()["state"] == "enabled"
        assert response.json()["success"] is True

        response = client.post("/api/v1/plugins/test-plugin/disable")
        assert response.status_code == 200
        assert response.json()["state"] == "disabled"
        assert host.bus.listener_count("test-plugin.greet") == 0

    def test_invalid_transition(self, client, host, make_manifest):
        """Test disabling an installed plugin is a conflict."""
        install(client, host, make_manifest(), GreeterPlugin(), enable=False)

        response = client.post("/api/v1/plugins/test-plugin/disable")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["error"] == "InvalidTransitionError"
        assert detail["action"] is None

    def test_enable_unknown_plugin(self, client):
        """Test enabling a plugin that is not installed."""
        response = client.post("/api/v1/plugins/missing/enable")
        assert response.status_code == 404

    def test_hook_failure_then_retry(self, client, host, make_manifest):
        """Test a failing hook reports reconfigure and retry recovers."""
        install(client, host, make_manifest(), GreeterPlugin(fail_enable=1), enable=False)

        response = client.post("/api/v1/plugins/test-plugin/enable")

        assert response.status_code == 500
        detail = response.json()["detail"]
        assert detail["error"] == "LifecycleHookError"
        assert detail["action"] == "reconfigure"
        assert detail["rolled_back"] is False
        assert detail["cause"] == "cannot reach greeting service"

        info = client.get("/api/v1/plugins/test-plugin").json()
        assert info["state"] == "error"
        assert info["last_error"]["transition"] == "enable"
        assert info["last_error"]["prior_state"] == "installed"

        response = client.post("/api/v1/plugins/test-plugin/retry")
        assert response.status_code == 200
        assert response.json()["state"] == "enabled"

    def test_retry_healthy_plugin(self, client, host, make_manifest):
        """Test retrying a plugin that is not in error state."""
        install(client, host, make_manifest(), GreeterPlugin())
        response = client.post("/api/v1/plugins/test-plugin/retry")
        assert response.status_code == 409

    def test_update_without_plugin_directory(self, client, host, make_manifest):
        """Test updating a plugin that has no directory on disk."""
        install(client, host, make_manifest(), GreeterPlugin())
        response = client.post("/api/v1/plugins/test-plugin/update")
        assert response.status_code == 404


class TestLicensedPlugins:
    """Tests for enabling paid plugins through the API."""

    @pytest.fixture
    def paid_manifest(self, make_manifest):
        return make_manifest(
            features=frozenset({"pro"}),
            pricing=PluginPricing(price=499, gated_features=frozenset({"pro"})),
        )

    def test_unlicensed(self, client, host, paid_manifest):
        """Test a paid plugin without a user is payment required."""
        install(client, host, paid_manifest, GreeterPlugin(), enable=False)

        response = client.post("/api/v1/plugins/test-plugin/enable")

        assert response.status_code == 402
        assert response.json()["detail"]["error"] == "LicenseError"
        assert host.get_plugin("test-plugin").state == LifecycleState.INSTALLED

    def test_license_service_down(self, client, host, paid_manifest):
        """Test an unreachable license service is retryable."""
        host.set_user(UserIdentity(id="user-1"))
        install(client, host, paid_manifest, GreeterPlugin(), enable=False)

        with respx.mock(assert_all_called=False) as mock:
            mock.post(VALIDATE_URL).mock(side_effect=httpx.ConnectError("down"))
            response = client.post("/api/v1/plugins/test-plugin/enable")

        assert response.status_code == 503
        assert response.json()["detail"]["action"] == "retry"

    def test_licensed(self, client, host, paid_manifest, signed_license):
        """Test a licensed user can enable the plugin."""
        host.set_user(UserIdentity(id="user-1"))
        install(client, host, paid_manifest, GreeterPlugin(), enable=False)

        with respx.mock(assert_all_called=False) as mock:
            mock.post(VALIDATE_URL).mock(
                return_value=httpx.Response(
                    200, json=signed_license("test-plugin", "user-1", ["pro"])
                )
            )
            response = client.post("/api/v1/plugins/test-plugin/enable")

        assert response.status_code == 200
        assert response.json()["state"] == "enabled"


class TestPluginSettingsEndpoint:
    """Tests for PUT /api/v1/plugins/{plugin_id}/config endpoint."""

    def test_update_settings(self, client, host, make_manifest):
        """Test replacing plugin settings."""
        install(client, host, make_manifest(), GreeterPlugin())

        response = client.put(
            "/api/v1/plugins/test-plugin/config",
            json={"settings": {"greeting": "servus"}},
        )

        assert response.status_code == 200
        assert response.json()["settings"] == {"greeting": "servus"}

    def test_rejected_settings(self, client, host, make_manifest):
        """Test settings rejected by the plugin keep the old values."""
        install(
            client,
            host,
            make_manifest(default_config={"greeting": "hello"}),
            GreeterPlugin(),
        )

        response = client.put(
            "/api/v1/plugins/test-plugin/config", json={"settings": {"greeting": ""}}
        )

        assert response.status_code == 500
        assert response.json()["detail"]["cause"] == "greeting is required"
        info = client.get("/api/v1/plugins/test-plugin").json()
        assert info["settings"] == {"greeting": "hello"}
        assert info["state"] == "enabled"

    def test_settings_body_required(self, client, host, make_manifest):
        """Test the request body must contain settings."""
        install(client, host, make_manifest(), GreeterPlugin())
        response = client.put("/api/v1/plugins/test-plugin/config", json={})
        assert response.status_code == 422


class TestPluginUninstallEndpoint:
    """Tests for DELETE /api/v1/plugins/{plugin_id} endpoint."""

    def test_uninstall(self, client, host, make_manifest):
        """Test uninstalling an enabled plugin."""
        install(client, host, make_manifest(), GreeterPlugin())

        response = client.delete("/api/v1/plugins/test-plugin")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert client.get("/api/v1/plugins/test-plugin").status_code == 404

    def test_uninstall_unknown(self, client):
        """Test uninstalling a plugin that is not installed."""
        response = client.delete("/api/v1/plugins/missing")
        assert response.status_code == 404


class TestErrorMapping:
    """Tests for translating host errors into HTTP errors."""

    @pytest.mark.parametrize(
        "error,status_code,action",
        [
            (PluginNotFoundError("gone"), 404, None),
            (BusyError("p", "enable"), 409, "retry"),
            (InvalidTransitionError("nope"), 409, None),
            (ValidationError("bad"), 400, None),
            (PermissionDeniedError("no network"), 403, None),
            (RetryableLicenseError("later"), 503, "retry"),
            (LicenseError("pay"), 402, None),
            (RequestTimeoutError("r-1", "forecast", 50), 504, "retry"),
        ],
    )
    def test_status_and_action(self, error, status_code, action):
        """Test each error maps to its status code and follow-up action."""
        exc = _http_error(error)
        assert exc.status_code == status_code
        assert exc.detail["action"] == action
        assert exc.detail["error"] == type(error).__name__
