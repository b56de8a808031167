# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""License validation for paid plugin features.

Records come from an external license service and are signed with
HMAC-SHA256 over a canonical JSON rendering of
``{pluginId, userId, featureSet, expiresAt}``. Verified records are cached
per ``(user_id, plugin_id)``; when the service is unreachable the last good
record is used for a grace period.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx
from pydantic import ValidationError as PydanticValidationError

from pluginhost.config import settings
from pluginhost.plugins.base import PluginManifest, PluginPricing
from pluginhost.plugins.errors import (
    LicenseError,
    RetryableLicenseError,
    ValidationError,
)
from pluginhost.schemas.license import (
    LicenseServiceResponse,
    LicenseValidationRequest,
)

logger = logging.getLogger(__name__)

VALIDATE_LICENSE_PATH = "/validate-license"


class LicenseServiceError(Exception):
    """The license service could not be reached or answered garbage."""


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def canonical_license_payload(
    plugin_id: str,
    user_id: str,
    feature_set: Iterable[str],
    expires_at: datetime,
) -> bytes:
    """Bytes covered by a license signature."""
    return json.dumps(
        {
            "expiresAt": _as_utc(expires_at).isoformat(),
            "featureSet": sorted(feature_set),
            "pluginId": plugin_id,
            "userId": user_id,
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")


def sign_license(
    key: str,
    plugin_id: str,
    user_id: str,
    feature_set: Iterable[str],
    expires_at: datetime,
) -> str:
    """Compute the hex HMAC-SHA256 signature of a license record."""
    return hmac.new(
        key.encode("utf-8"),
        canonical_license_payload(plugin_id, user_id, feature_set, expires_at),
        hashlib.sha256,
    ).hexdigest()


@dataclass(frozen=True)
class LicenseRecord:
    """A license as returned by the service. Immutable once verified."""

    plugin_id: str
    user_id: str
    feature_set: frozenset[str]
    expires_at: datetime
    signature: str
    valid: bool

    @classmethod
    def from_response(
        cls, plugin_id: str, user_id: str, response: LicenseServiceResponse
    ) -> LicenseRecord:
        return cls(
            plugin_id=plugin_id,
            user_id=user_id,
            feature_set=frozenset(response.feature_set),
            expires_at=_as_utc(response.expires_at),
            signature=response.signature,
            valid=response.valid,
        )

    def verify(self, key: str) -> bool:
        """Check the signature against the record's own fields."""
        expected = sign_license(
            key, self.plugin_id, self.user_id, self.feature_set, self.expires_at
        )
        return hmac.compare_digest(expected, self.signature)

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def grants(self, feature: str | None, now: datetime) -> bool:
        """Whether the record allows ``feature`` (any feature if None)."""
        if not self.valid or self.is_expired(now):
            return False
        return feature is None or feature in self.feature_set


@dataclass(frozen=True)
class LicenseCacheEntry:
    """A verified record and when it was fetched (clock seconds)."""

    record: LicenseRecord
    cached_at: float


class LicenseServiceClient:
    """Client for the external license service."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: License service URL (settings value if None)
            timeout: Request timeout in seconds (settings value if None)
        """
        self.base_url = (base_url or settings.license_service_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.license_request_timeout
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
            )
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def fetch_license(self, user_id: str, plugin_id: str) -> LicenseServiceResponse:
        """Ask the service for a user's license to a plugin.

        Raises:
            LicenseServiceError: If the call fails or the reply is malformed
        """
        body = LicenseValidationRequest(user_id=user_id, plugin_id=plugin_id)
        try:
            client = await self._get_client()
            response = await client.post(
                VALIDATE_LICENSE_PATH, json=body.model_dump(by_alias=True)
            )
            response.raise_for_status()
            return LicenseServiceResponse.model_validate(response.json())
        except httpx.HTTPError as e:
            logger.error(f"License service request failed for {plugin_id}: {e}")
            raise LicenseServiceError(f"License service request failed: {e}") from e
        except (PydanticValidationError, ValueError) as e:
            logger.error(f"Invalid license service response for {plugin_id}: {e}")
            raise LicenseServiceError(f"Invalid license service response: {e}") from e


class LicenseValidator:
    """Decides whether a user may use a plugin feature.

    Plugins without registered pricing, or with free pricing, are always
    allowed and never cause a remote call. The cache is shared and
    last-writer-wins.
    """

    def __init__(
        self,
        client: LicenseServiceClient | None = None,
        *,
        signing_key: str | None = None,
        ttl_seconds: float | None = None,
        grace_period_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the validator.

        Args:
            client: License service client
            signing_key: HMAC key for record signatures
            ttl_seconds: How long a verified record is trusted without refetching
            grace_period_seconds: How old a record may be when the service is down
            clock: Source of epoch seconds, used for cache age and expiry
        """
        self._client = client or LicenseServiceClient()
        self._signing_key = (
            signing_key
            if signing_key is not None
            else settings.license_signing_key.get_secret_value()
        )
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.license_cache_ttl_seconds
        )
        self.grace_period_seconds = (
            grace_period_seconds
            if grace_period_seconds is not None
            else settings.license_grace_period_seconds
        )
        self._clock = clock
        self._pricing: dict[str, PluginPricing] = {}
        self._cache: dict[tuple[str, str], LicenseCacheEntry] = {}
        self._in_flight: dict[tuple[str, str], asyncio.Task[LicenseRecord | None]] = {}

    def register_plugin(self, manifest: PluginManifest) -> None:
        """Record a plugin's pricing. Replaces any earlier registration."""
        if manifest.pricing is None:
            self._pricing.pop(manifest.id, None)
        else:
            self._pricing[manifest.id] = manifest.pricing

    def unregister_plugin(self, plugin_id: str) -> None:
        self._pricing.pop(plugin_id, None)
        self.invalidate(plugin_id=plugin_id)

    def requires_license(self, plugin_id: str) -> bool:
        pricing = self._pricing.get(plugin_id)
        return pricing is not None and not pricing.is_free

    def cached(self, user_id: str, plugin_id: str) -> LicenseCacheEntry | None:
        """The cache entry for a key, fresh or stale."""
        return self._cache.get((user_id, plugin_id))

    async def validate(
        self, plugin_id: str, user_id: str, feature: str | None = None
    ) -> bool:
        """Check whether ``user_id`` may use ``feature`` of ``plugin_id``.

        Args:
            plugin_id: Plugin ID
            user_id: User ID
            feature: Feature name, or None for "any valid license"

        Returns:
            True if allowed

        Raises:
            RetryableLicenseError: If the service is unreachable and no
                record within the grace period is cached
        """
        pricing = self._pricing.get(plugin_id)
        if pricing is None or pricing.is_free:
            return True
        if feature is not None and feature not in pricing.gated_features:
            return True
        if not user_id:
            raise ValidationError("user_id is required to validate a paid plugin")

        key = (user_id, plugin_id)
        entry = self._cache.get(key)
        if entry is not None and self._clock() - entry.cached_at < self.ttl_seconds:
            return entry.record.grants(feature, self._now())

        record = await self._revalidate(key)
        if record is None:
            return False
        return record.grants(feature, self._now())

    async def require(
        self, plugin_id: str, user_id: str | None, feature: str | None = None
    ) -> None:
        """Like ``validate`` but raise LicenseError on denial."""
        if not user_id:
            if not self.requires_license(plugin_id):
                return
            raise LicenseError(
                f"Plugin {plugin_id} requires a license but no user is signed in",
                plugin_id=plugin_id,
                feature=feature,
            )
        if not await self.validate(plugin_id, user_id, feature):
            what = f"feature '{feature}'" if feature else "a license"
            raise LicenseError(
                f"User {user_id} has no valid license for {what} of plugin {plugin_id}",
                plugin_id=plugin_id,
                feature=feature,
            )

    def invalidate(
        self, plugin_id: str | None = None, user_id: str | None = None
    ) -> int:
        """Drop cache entries matching the given filters (all if none).

        Returns:
            Number of entries dropped
        """
        doomed = [
            key
            for key in self._cache
            if (user_id is None or key[0] == user_id)
            and (plugin_id is None or key[1] == plugin_id)
        ]
        for key in doomed:
            del self._cache[key]
        return len(doomed)

    async def close(self) -> None:
        for task in list(self._in_flight.values()):
            task.cancel()
        self._in_flight.clear()
        await self._client.close()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    async def _revalidate(self, key: tuple[str, str]) -> LicenseRecord | None:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(key))
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        # One caller giving up must not cancel the lookup for the others
        return await asyncio.shield(task)

    def _forget(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _fetch(self, key: tuple[str, str]) -> LicenseRecord | None:
        user_id, plugin_id = key
        try:
            response = await self._client.fetch_license(user_id, plugin_id)
        except LicenseServiceError as e:
            return self._fall_back(key, e)

        record = LicenseRecord.from_response(plugin_id, user_id, response)
        if not record.verify(self._signing_key):
            logger.warning(
                f"Rejecting license for plugin {plugin_id} and user {user_id}: "
                "signature mismatch"
            )
            self._cache.pop(key, None)
            return None
        if record.is_expired(self._now()):
            logger.info(f"License for plugin {plugin_id} and user {user_id} has expired")
            self._cache.pop(key, None)
            return None

        self._cache[key] = LicenseCacheEntry(record=record, cached_at=self._clock())
        logger.debug(f"Cached license for plugin {plugin_id} and user {user_id}")
        return record

    def _fall_back(
        self, key: tuple[str, str], error: LicenseServiceError
    ) -> LicenseRecord:
        user_id, plugin_id = key
        entry = self._cache.get(key)
        if entry is not None and self._clock() - entry.cached_at <= self.grace_period_seconds:
            logger.warning(
                f"License service unavailable, using cached license for plugin "
                f"{plugin_id} from {self._clock() - entry.cached_at:.0f}s ago"
            )
            return entry.record
        raise RetryableLicenseError(
            f"License service unavailable and no recent license for plugin {plugin_id}",
            plugin_id=plugin_id,
        ) from error
