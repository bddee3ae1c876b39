"""Pydantic request and response models for the Comfygate API.

Models
------
ViewComfyInput
    One ``{"key", "value"}`` override inside the ``viewComfy`` form field.
ViewComfyPayload
    The decoded ``viewComfy`` form field of ``POST /api/comfy``.
PlaygroundSaveRequest
    Payload for ``POST /api/playground/save``.
ErrorResponse
    JSON body returned when a run fails.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ViewComfyInput(BaseModel):
    """A scalar override for one workflow field.

    Attributes:
        key: Key-path such as ``"6-inputs-text"``.
        value: New value.  ``None`` leaves the template value in place.
    """

    key: str = Field(..., description="Key-path, e.g. '6-inputs-text'.")
    value: Any = Field(default=None, description="Value to bind; null means no override.")


class ViewComfyPayload(BaseModel):
    """Decoded ``viewComfy`` form field.

    Attributes:
        inputs: Scalar overrides, applied in order before any file fields.
        text_output_enabled: Also stream plain text outputs.
    """

    model_config = ConfigDict(populate_by_name=True)

    inputs: list[ViewComfyInput] = Field(default_factory=list)
    text_output_enabled: bool = Field(
        default=False,
        alias="textOutputEnabled",
        description="Include text outputs in the response stream.",
    )


class PlaygroundSaveRequest(BaseModel):
    """Request body for ``POST /api/playground/save``."""

    model_config = ConfigDict(populate_by_name=True)

    view_comfy_json: dict[str, Any] | None = Field(
        default=None,
        alias="viewComfyJSON",
        description="Full view_comfy.json document to persist.",
    )


class ErrorResponse(BaseModel):
    """Error body for failed runs."""

    error_type: str = Field(..., description="Machine-readable error kind.")
    message: str = Field(..., description="Human-readable summary.")
    errors: list[str] = Field(default_factory=list, description="Detail messages.")
