# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Database model backing the plugin Storage facade."""

import json
import uuid as uuid_lib
from typing import Any

from sqlalchemy import String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from pluginhost.models.base import Base, TimestampMixin


class PluginStorageEntry(Base, TimestampMixin):
    """One key/value pair stored by a plugin.

    Values are stored as JSON text, so anything a plugin stores must be
    JSON-serializable.
    """

    __tablename__ = "plugin_storage"
    __table_args__ = (
        UniqueConstraint("plugin_id", "key", name="uq_plugin_storage_key"),
    )

    id: Mapped[uuid_lib.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid_lib.uuid4,
    )
    plugin_id: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    value_json: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def get_value(self) -> Any:
        """Decode the stored JSON value."""
        return json.loads(self.value_json)

    def set_value(self, value: Any) -> None:
        """Encode and store a JSON value.

        Raises:
            TypeError: If the value is not JSON-serializable
        """
        self.value_json = json.dumps(value)
