"""Saving and editing the user's backend settings.

These helpers sit between whatever edits settings (the API, a UI, a
script) and the store.  They normalize input the same way regardless of
caller and refuse to save a workflow that is not valid JSON.
"""

import logging
from dataclasses import replace

from .client import ComfyClient, HealthStatus
from .config import ComfyChatConfig, config
from .models import SeedStrategy, Settings
from .resolver import resolve_base
from .store import ChatStore
from .template import DEFAULT_WORKFLOW_JSON, parse_workflow

logger = logging.getLogger(__name__)

DEFAULT_API_HOST = "127.0.0.1:8188"


def default_settings() -> Settings:
    """Settings pre-filled for a local ComfyUI with the stock workflow."""
    return Settings(api_host=DEFAULT_API_HOST, workflow_json=DEFAULT_WORKFLOW_JSON)


def normalize_host(host: str) -> str:
    """Trim whitespace and one trailing slash from a backend address."""
    host = host.strip()
    if host.endswith("/"):
        host = host[:-1]
    return host


def build_settings(
    api_host: str,
    workflow_json: str,
    auth_token: str = "",
    seed_mode: SeedStrategy = SeedStrategy.RANDOM,
    last_seed: int = 0,
) -> Settings:
    """Validate and normalize user input into a :class:`Settings` record.

    Raises:
        TemplateError: If ``workflow_json`` is not a JSON object.
    """
    parse_workflow(workflow_json)
    return Settings(
        api_host=normalize_host(api_host),
        workflow_json=workflow_json,
        auth_token=(auth_token or "").strip(),
        seed_mode=SeedStrategy(seed_mode),
        last_seed=last_seed,
    )


def save_settings(store: ChatStore, settings: Settings) -> Settings:
    """Validate ``settings`` and replace the stored row with them."""
    settings = build_settings(
        settings.api_host,
        settings.workflow_json,
        settings.auth_token,
        settings.seed_mode,
        settings.last_seed,
    )
    return store.upsert_settings(settings)


def toggle_seed_mode(store: ChatStore) -> Settings:
    """Flip the stored seed strategy between random and increment.

    Raises:
        ConfigurationMissing: If no settings are stored yet.
    """
    updated = store.update_settings_with(lambda s: replace(s, seed_mode=s.seed_mode.toggled()))
    logger.info(f"Seed mode is now {updated.seed_mode.value}")
    return updated


async def check_backend(
    client: ComfyClient,
    api_host: str,
    auth_token: str = "",
    cfg: ComfyChatConfig = config,
) -> HealthStatus:
    """Check the backend at ``api_host`` without touching stored settings."""
    base_url = resolve_base(api_host, cfg.secure_origin)
    status = await client.check_health(base_url, auth_token.strip() or None)
    logger.info(f"Connection test for {base_url}: {status.message}")
    return status
