# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Storage backends for the plugin Storage facade.

The persistent key-value engine itself is an external collaborator; these
backends adapt one to the interface the facade consumes. Keys are always
scoped by plugin ID.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from pluginhost.models.plugin_storage import PluginStorageEntry

logger = logging.getLogger(__name__)


class StorageBackend(ABC):
    """Interface a persistent key-value store must provide."""

    @abstractmethod
    async def get(self, plugin_id: str, key: str) -> Any:
        """Return the stored value, or None if the key is absent."""
        ...

    @abstractmethod
    async def set(self, plugin_id: str, key: str, value: Any) -> None:
        """Store a value, replacing any existing one."""
        ...

    @abstractmethod
    async def delete(self, plugin_id: str, key: str) -> bool:
        """Remove a key. Returns True if it existed."""
        ...

    @abstractmethod
    async def clear(self, plugin_id: str) -> int:
        """Remove every key of a plugin. Returns how many were removed."""
        ...

    @abstractmethod
    async def keys(self, plugin_id: str, prefix: str | None = None) -> list[str]:
        """List a plugin's keys, optionally filtered by prefix."""
        ...

    async def has(self, plugin_id: str, key: str) -> bool:
        """Check whether a key exists."""
        return key in await self.keys(plugin_id)

    async def size(self, plugin_id: str) -> int:
        """Number of keys stored by a plugin."""
        return len(await self.keys(plugin_id))

    async def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryStorageBackend(StorageBackend):
    """Process-local backend. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    async def get(self, plugin_id: str, key: str) -> Any:
        value = self._data.get(plugin_id, {}).get(key)
        return copy.deepcopy(value)

    async def set(self, plugin_id: str, key: str, value: Any) -> None:
        self._data.setdefault(plugin_id, {})[key] = copy.deepcopy(value)

    async def delete(self, plugin_id: str, key: str) -> bool:
        values = self._data.get(plugin_id)
        if values is None or key not in values:
            return False
        del values[key]
        if not values:
            del self._data[plugin_id]
        return True

    async def clear(self, plugin_id: str) -> int:
        return len(self._data.pop(plugin_id, {}))

    async def keys(self, plugin_id: str, prefix: str | None = None) -> list[str]:
        return sorted(
            key
            for key in self._data.get(plugin_id, {})
            if prefix is None or key.startswith(prefix)
        )

    async def has(self, plugin_id: str, key: str) -> bool:
        return key in self._data.get(plugin_id, {})

    async def size(self, plugin_id: str) -> int:
        return len(self._data.get(plugin_id, {}))


class SqlAlchemyStorageBackend(StorageBackend):
    """Backend storing JSON values in the ``plugin_storage`` table.

    Session work is blocking, so each operation runs in a worker thread
    with its own session.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        """Initialize the backend.

        Args:
            session_factory: Factory producing database sessions
        """
        self._session_factory = session_factory

    def _find(self, db: Session, plugin_id: str, key: str) -> PluginStorageEntry | None:
        return db.execute(
            select(PluginStorageEntry).where(
                PluginStorageEntry.plugin_id == plugin_id,
                PluginStorageEntry.key == key,
            )
        ).scalar_one_or_none()

    async def get(self, plugin_id: str, key: str) -> Any:
        return await asyncio.to_thread(self._get_sync, plugin_id, key)

    async def set(self, plugin_id: str, key: str, value: Any) -> None:
        await asyncio.to_thread(self._set_sync, plugin_id, key, value)

    async def delete(self, plugin_id: str, key: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, plugin_id, key)

    async def clear(self, plugin_id: str) -> int:
        removed = await asyncio.to_thread(self._clear_sync, plugin_id)
        logger.debug(f"Cleared {removed} storage keys for plugin {plugin_id}")
        return removed

    async def keys(self, plugin_id: str, prefix: str | None = None) -> list[str]:
        return await asyncio.to_thread(self._keys_sync, plugin_id, prefix)

    async def has(self, plugin_id: str, key: str) -> bool:
        return await asyncio.to_thread(self._has_sync, plugin_id, key)

    async def size(self, plugin_id: str) -> int:
        return await asyncio.to_thread(self._size_sync, plugin_id)

    # Blocking session work, run off the event loop

    def _get_sync(self, plugin_id: str, key: str) -> Any:
        with self._session_factory() as db:
            entry = self._find(db, plugin_id, key)
            return entry.get_value() if entry else None

    def _set_sync(self, plugin_id: str, key: str, value: Any) -> None:
        with self._session_factory() as db:
            entry = self._find(db, plugin_id, key)
            if entry is None:
                entry = PluginStorageEntry(plugin_id=plugin_id, key=key)
                db.add(entry)
            entry.set_value(value)
            db.commit()

    def _delete_sync(self, plugin_id: str, key: str) -> bool:
        with self._session_factory() as db:
            result = db.execute(
                delete(PluginStorageEntry).where(
                    PluginStorageEntry.plugin_id == plugin_id,
                    PluginStorageEntry.key == key,
                )
            )
            db.commit()
            return result.rowcount > 0

    def _clear_sync(self, plugin_id: str) -> int:
        with self._session_factory() as db:
            result = db.execute(
                delete(PluginStorageEntry).where(
                    PluginStorageEntry.plugin_id == plugin_id
                )
            )
            db.commit()
            return result.rowcount

    def _keys_sync(self, plugin_id: str, prefix: str | None) -> list[str]:
        query = select(PluginStorageEntry.key).where(
            PluginStorageEntry.plugin_id == plugin_id
        )
        if prefix:
            query = query.where(PluginStorageEntry.key.startswith(prefix, autoescape=True))
        with self._session_factory() as db:
            return list(db.execute(query.order_by(PluginStorageEntry.key)).scalars())

    def _has_sync(self, plugin_id: str, key: str) -> bool:
        with self._session_factory() as db:
            return self._find(db, plugin_id, key) is not None

    def _size_sync(self, plugin_id: str) -> int:
        with self._session_factory() as db:
            return db.execute(
                select(func.count())
                .select_from(PluginStorageEntry)
                .where(PluginStorageEntry.plugin_id == plugin_id)
            ).scalar_one()
