# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""API dependencies for dependency injection."""

from pluginhost.plugins.host import PluginHost


def get_host() -> PluginHost:
    """Get the process-wide plugin host."""
    return PluginHost.get_instance()
