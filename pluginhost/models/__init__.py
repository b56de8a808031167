# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Database models package."""

from pluginhost.models.base import Base, TimestampMixin
from pluginhost.models.plugin_storage import PluginStorageEntry

__all__ = [
    "Base",
    "PluginStorageEntry",
    "TimestampMixin",
]
