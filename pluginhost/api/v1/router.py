# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Main API router for v1 endpoints."""

from fastapi import APIRouter

from pluginhost.api.v1 import plugins

api_router = APIRouter()

# Plugin administration routes
api_router.include_router(plugins.router)
