# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
import os
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Set test environment before importing the app
os.environ["PLUGINHOST_DATABASE_URL"] = "sqlite:///./test.db"
os.environ["PLUGINHOST_AUTOLOAD_PLUGINS"] = "false"
os.environ["PLUGINHOST_LICENSE_SERVICE_URL"] = "https://licenses.test"
os.environ["PLUGINHOST_LICENSE_SIGNING_KEY"] = "test-signing-key"  # nosec - test-only secret  # noqa: S105

from pluginhost.main import app
from pluginhost.models.base import Base
from pluginhost.plugins.base import Permission, PluginManifest, PluginPricing
from pluginhost.plugins.events import EventBus
from pluginhost.plugins.host import PluginHost
from pluginhost.plugins.licensing import LicenseServiceClient, LicenseValidator, sign_license
from pluginhost.plugins.lifecycle import LifecycleManager
from pluginhost.plugins.storage import InMemoryStorageBackend

SIGNING_KEY = "test-signing-key"  # noqa: S105
LICENSE_SERVICE_URL = "https://licenses.test"

# Test database setup
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def session_factory():
    """Create fresh tables for each test and hand out the session factory."""
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_manifest():
    """Factory for plugin manifests with sensible defaults."""

    def _make(
        plugin_id: str = "test-plugin",
        version: str = "1.0.0",
        *,
        permissions: frozenset[Permission] = frozenset(),
        features: frozenset[str] = frozenset(),
        pricing: PluginPricing | None = None,
        **kwargs,
    ) -> PluginManifest:
        return PluginManifest(
            id=plugin_id,
            name=kwargs.pop("name", "Test Plugin"),
            version=version,
            entry_point=kwargs.pop("entry_point", "backend/plugin.py"),
            description=kwargs.pop("description", "Test"),
            permissions=permissions,
            features=features,
            pricing=pricing,
            **kwargs,
        )

    return _make


@pytest.fixture
def signed_license():
    """Factory for license service response bodies signed with the test key."""

    def _make(
        plugin_id: str,
        user_id: str,
        features: list[str],
        *,
        expires_at: datetime | None = None,
        valid: bool = True,
        key: str = SIGNING_KEY,
    ) -> dict:
        expires_at = expires_at or datetime.now(timezone.utc) + timedelta(days=30)
        return {
            "valid": valid,
            "featureSet": features,
            "expiresAt": expires_at.isoformat(),
            "signature": sign_license(key, plugin_id, user_id, features, expires_at),
        }

    return _make


@pytest.fixture
def license_validator():
    """Validator talking to the mocked license service."""
    return LicenseValidator(
        LicenseServiceClient(base_url=LICENSE_SERVICE_URL, timeout=1.0),
        signing_key=SIGNING_KEY,
    )


@pytest.fixture
def event_bus():
    """Create a fresh EventBus for each test."""
    return EventBus()


@pytest.fixture
def lifecycle(event_bus, license_validator):
    """Lifecycle manager with in-memory storage and no plugin loading."""
    return LifecycleManager(
        event_bus,
        license_validator,
        InMemoryStorageBackend(),
        host_version="1.0.0",
        request_timeout_ms=1000,
        entry_point_resolver=lambda manifest, path: False,
    )


@pytest.fixture(scope="function")
def host():
    """A plugin host with in-memory storage installed as the singleton."""
    PluginHost.reset_instance()
    plugin_host = PluginHost(storage=InMemoryStorageBackend(), autoload=False)
    PluginHost._instance = plugin_host
    yield plugin_host
    PluginHost.reset_instance()


@pytest.fixture(scope="function")
def client(host):
    """Create a test client running the app lifespan against the test host."""
    with TestClient(app) as test_client:
        yield test_client
