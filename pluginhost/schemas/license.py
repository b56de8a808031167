# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Pydantic schemas for the external license service."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class LicenseValidationRequest(BaseModel):
    """Body of ``POST /validate-license``."""

    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., min_length=1, alias="userId")
    plugin_id: str = Field(..., min_length=1, alias="pluginId")


class LicenseServiceResponse(BaseModel):
    """Signed license record returned by the license service."""

    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    feature_set: list[str] = Field(default_factory=list, alias="featureSet")
    expires_at: datetime = Field(..., alias="expiresAt")
    signature: str = Field(..., min_length=1)
