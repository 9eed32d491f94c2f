"""Pydantic request models for the ComfyChat API.

Models
------
SettingsRequest
    Payload for ``PUT /api/settings`` — the full settings form.
ConnectionTestRequest
    Payload for ``POST /api/settings/test`` — address and token to check.
PromptRequest
    Payload for ``POST /api/messages`` — a prompt to generate from.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from comfychat.core.models import SeedStrategy
from comfychat.core.template import MAX_SAFE_SEED


class SettingsRequest(BaseModel):
    """Request body for the ``PUT /api/settings`` endpoint.

    Attributes:
        api_host: Backend address, with or without scheme.
        workflow_json: Workflow in API format containing ``%PROMPT%``.
        auth_token: Bearer token.  ``None`` keeps the stored token, an
            empty string clears it.
        seed_mode: ``"random"`` or ``"increment"``.  ``None`` keeps the
            stored mode (random when unconfigured).
        last_seed: Seed the increment strategy continues from.  ``None``
            keeps the stored seed (0 when unconfigured).
    """

    api_host: str = Field(
        ...,
        min_length=1,
        description="Backend address, e.g. '127.0.0.1:8188'.",
    )
    workflow_json: str = Field(
        ...,
        min_length=2,
        description="Workflow JSON (API format) containing the %PROMPT% placeholder.",
    )
    auth_token: str | None = Field(
        default=None,
        description="Bearer token.  None keeps the stored value.",
    )
    seed_mode: SeedStrategy | None = Field(
        default=None,
        description="Seed strategy: 'random' or 'increment'.  None keeps the stored value.",
    )
    last_seed: int | None = Field(
        default=None,
        ge=0,
        le=MAX_SAFE_SEED,
        description="Last applied seed.  None keeps the stored value.",
    )


class ConnectionTestRequest(BaseModel):
    """Request body for the ``POST /api/settings/test`` endpoint."""

    api_host: str = Field(
        ...,
        min_length=1,
        description="Backend address to check.",
    )
    auth_token: str | None = Field(
        default=None,
        description="Bearer token.  None uses the stored value.",
    )


class PromptRequest(BaseModel):
    """Request body for the ``POST /api/messages`` endpoint."""

    prompt: str = Field(
        ...,
        description="Prompt text injected in place of %PROMPT%.",
    )
