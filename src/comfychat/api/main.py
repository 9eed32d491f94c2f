"""ComfyChat — FastAPI Application.

This module exposes the generation coordinator and the local store over a
small REST API, and provides the ``main()`` CLI function that launches the
uvicorn server.  Any frontend (or script) drives ComfyChat through it.

Architecture
------------
- **Store** — :class:`~comfychat.core.store.ChatStore` (SQLite) holds the
  conversation, favorites and settings.  Handlers read from it directly.
- **Coordinator** — :class:`~comfychat.core.session.GenerationCoordinator`
  submits prompts and resolves push events; it is created in the lifespan
  handler and kept on ``app.state``.
- **Push channel** — connected at startup from the stored settings and
  re-targeted whenever settings are saved.

Endpoints
---------
========  =====================================  ===============================
Method    Path                                   Purpose
========  =====================================  ===============================
GET       ``/api/status``                        Configured/connected/generating
GET       ``/api/settings``                      Stored settings (token masked)
PUT       ``/api/settings``                      Save settings
POST      ``/api/settings/test``                 Check backend health
POST      ``/api/settings/seed-mode/toggle``     Flip random/increment
GET       ``/api/messages``                      Conversation history
POST      ``/api/messages``                      Send a prompt
DELETE    ``/api/messages``                      Clear history
GET       ``/api/messages/{id}/image``           Stored image of an entry
POST      ``/api/messages/{id}/generate-more``   Re-submit the entry's prompt
POST      ``/api/messages/{id}/favorite``        Copy the image to favorites
GET       ``/api/favorites``                     Favorites, newest first
GET       ``/api/favorites/{id}/image``          Favorite image download
DELETE    ``/api/favorites/{id}``                Delete a favorite
========  =====================================  ===============================

Usage
-----
CLI (installed entry point)::

    comfychat

Direct invocation::

    python -m comfychat.api.main
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from comfychat import __version__
from comfychat.api.models import ConnectionTestRequest, PromptRequest, SettingsRequest
from comfychat.core.artifacts import download_name, sniff_image
from comfychat.core.client import ComfyClient
from comfychat.core.config import ComfyChatConfig, config
from comfychat.core.connection import ConnectionManager
from comfychat.core.exceptions import ConfigurationMissing, TemplateError
from comfychat.core.models import ConversationEntry, FavoriteItem, Settings
from comfychat.core.preferences import (
    check_backend,
    default_settings,
    save_settings,
    toggle_seed_mode,
)
from comfychat.core.session import GenerationCoordinator, GenerationSession
from comfychat.core.store import ChatStore

logger = logging.getLogger(__name__)


def build_coordinator(cfg: ComfyChatConfig) -> GenerationCoordinator:
    """Wire a coordinator to the configured store and a fresh client id."""
    store = ChatStore(cfg.database_path)
    client_id = uuid.uuid4().hex
    return GenerationCoordinator(
        store=store,
        client=ComfyClient(cfg),
        connection=ConnectionManager(client_id, cfg),
        cfg=cfg,
    )


# ---------------------------------------------------------------------------
# Serialisation helpers.
# ---------------------------------------------------------------------------


def _entry_to_dict(entry: ConversationEntry) -> dict:
    return {
        "id": entry.id,
        "role": entry.role.value,
        "content": entry.content,
        "status": entry.status.value,
        "image_url": entry.image_url,
        "has_image": entry.has_image,
        "timestamp": entry.timestamp,
    }


def _favorite_to_dict(favorite: FavoriteItem) -> dict:
    return {
        "id": favorite.id,
        "prompt": favorite.prompt,
        "timestamp": favorite.timestamp,
    }


def _settings_to_dict(settings: Settings) -> dict:
    return {
        "api_host": settings.api_host,
        "workflow_json": settings.workflow_json,
        "has_token": bool(settings.auth_token),
        "seed_mode": settings.seed_mode.value,
        "last_seed": settings.last_seed,
    }


def _session_to_dict(session: GenerationSession) -> dict:
    return {
        "id": session.id,
        "state": session.state.value,
        "applied_seed": session.applied_seed,
        "error": session.error,
    }


def _image_response(blob: bytes, timestamp: int) -> Response:
    media_type, _ = sniff_image(blob)
    return Response(
        content=blob,
        media_type=media_type,
        headers={"Content-Disposition": f'inline; filename="{download_name(blob, timestamp)}"'},
    )


def _setup_required(e: ConfigurationMissing) -> HTTPException:
    return HTTPException(status_code=409, detail=str(e))


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    cfg: ComfyChatConfig = config,
    coordinator_factory: Callable[[ComfyChatConfig], GenerationCoordinator] = build_coordinator,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        cfg: Process configuration.
        coordinator_factory: Builds the coordinator at startup.  Tests pass
            a factory wired to fake transports.

    Returns:
        The configured application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Start the coordinator (and push channel) and stop it on shutdown."""
        coordinator = coordinator_factory(cfg)
        app.state.coordinator = coordinator
        await coordinator.start()
        logger.info("Coordinator started for client %s", coordinator.client_id)

        yield

        await coordinator.stop()
        logger.info("Coordinator stopped.")

    app = FastAPI(
        title="ComfyChat",
        description="Chat-style client for ComfyUI-compatible image generation backends.",
        version=__version__,
        lifespan=lifespan,
    )

    # Allow a frontend served from another port during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _coordinator(request: Request) -> GenerationCoordinator:
        return request.app.state.coordinator

    # -- Status ---------------------------------------------------------------

    @app.get("/api/status")
    async def get_status(request: Request) -> dict:
        """Return whether ComfyChat is configured, connected and generating."""
        coordinator = _coordinator(request)
        return {
            "version": __version__,
            "client_id": coordinator.client_id,
            "configured": coordinator.store.read_settings() is not None,
            "connected": coordinator.connection.connected,
            "channel_error": coordinator.connection.last_error,
            "generating": coordinator.generating,
            "pending": len(coordinator.pending),
        }

    # -- Settings -------------------------------------------------------------

    @app.get("/api/settings")
    async def get_settings(request: Request) -> dict:
        """Return stored settings, or the defaults when unconfigured."""
        settings = _coordinator(request).store.read_settings()
        return {
            "configured": settings is not None,
            "settings": _settings_to_dict(settings) if settings else None,
            "defaults": _settings_to_dict(default_settings()),
        }

    @app.put("/api/settings")
    async def put_settings(req: SettingsRequest, request: Request) -> dict:
        """Validate and save settings, then re-target the push channel.

        Raises:
            HTTPException: 400 if the workflow is not valid JSON.
        """
        coordinator = _coordinator(request)
        # Omitted fields keep their stored values.
        current = coordinator.store.read_settings() or Settings(api_host="", workflow_json="")
        auth_token = current.auth_token if req.auth_token is None else req.auth_token
        seed_mode = current.seed_mode if req.seed_mode is None else req.seed_mode
        last_seed = current.last_seed if req.last_seed is None else req.last_seed

        try:
            saved = save_settings(
                coordinator.store,
                Settings(
                    api_host=req.api_host,
                    workflow_json=req.workflow_json,
                    auth_token=auth_token,
                    seed_mode=seed_mode,
                    last_seed=last_seed,
                ),
            )
        except TemplateError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e

        connected = await coordinator.refresh_connection(force=True)
        return {"success": True, "connected": connected, "settings": _settings_to_dict(saved)}

    @app.post("/api/settings/test")
    async def post_settings_test(req: ConnectionTestRequest, request: Request) -> dict:
        """Check ``/system_stats`` on the given backend."""
        coordinator = _coordinator(request)
        auth_token = req.auth_token
        if auth_token is None:
            current = coordinator.store.read_settings()
            auth_token = current.auth_token if current else ""
        status = await check_backend(coordinator.client, req.api_host, auth_token, cfg)
        return {"ok": status.ok, "message": status.message}

    @app.post("/api/settings/seed-mode/toggle")
    async def post_toggle_seed_mode(request: Request) -> dict:
        try:
            settings = toggle_seed_mode(_coordinator(request).store)
        except ConfigurationMissing as e:
            raise _setup_required(e) from e
        return {"seed_mode": settings.seed_mode.value}

    # -- Messages -------------------------------------------------------------

    @app.get("/api/messages")
    async def get_messages(
        request: Request,
        since: int | None = None,
        until: int | None = None,
    ) -> dict:
        """Return the conversation in timestamp order (image bytes omitted)."""
        messages = _coordinator(request).store.list_messages(since=since, until=until)
        return {"messages": [_entry_to_dict(m) for m in messages]}

    @app.post("/api/messages")
    async def post_message(req: PromptRequest, request: Request) -> dict:
        """Send a prompt.

        Raises:
            HTTPException: 400 for a blank prompt, 409 when unconfigured.
        """
        try:
            session = await _coordinator(request).send_prompt(req.prompt)
        except ConfigurationMissing as e:
            raise _setup_required(e) from e
        if session is None:
            raise HTTPException(status_code=400, detail="Prompt must not be empty")
        return {"session": _session_to_dict(session)}

    @app.delete("/api/messages")
    async def delete_messages(request: Request) -> dict:
        removed = _coordinator(request).store.clear_messages()
        return {"success": True, "deleted": removed}

    @app.get("/api/messages/{entry_id}/image")
    async def get_message_image(entry_id: int, request: Request) -> Response:
        entry = _coordinator(request).store.get_message(entry_id)
        if entry is None or not entry.has_image:
            raise HTTPException(status_code=404, detail="Image not found")
        return _image_response(entry.image_blob, entry.timestamp)

    @app.post("/api/messages/{entry_id}/generate-more")
    async def post_generate_more(entry_id: int, request: Request) -> dict:
        """Re-submit the prompt that led to ``entry_id``.

        Raises:
            HTTPException: 404 for an unknown entry, 400 if no prompt
                precedes it, 409 when unconfigured.
        """
        coordinator = _coordinator(request)
        if coordinator.store.get_message(entry_id) is None:
            raise HTTPException(status_code=404, detail="Message not found")
        try:
            session = await coordinator.generate_more(entry_id)
        except ConfigurationMissing as e:
            raise _setup_required(e) from e
        if session is None:
            raise HTTPException(status_code=400, detail="No prompt precedes this message")
        return {"session": _session_to_dict(session)}

    @app.post("/api/messages/{entry_id}/favorite")
    async def post_favorite(entry_id: int, request: Request) -> dict:
        store = _coordinator(request).store
        if store.get_message(entry_id) is None:
            raise HTTPException(status_code=404, detail="Message not found")
        favorite = store.favorite_message(entry_id)
        if favorite is None:
            raise HTTPException(status_code=400, detail="Message has no stored image")
        return {"success": True, "favorite": _favorite_to_dict(favorite)}

    # -- Favorites ------------------------------------------------------------

    @app.get("/api/favorites")
    async def get_favorites(request: Request) -> dict:
        favorites = _coordinator(request).store.list_favorites()
        return {"favorites": [_favorite_to_dict(f) for f in favorites]}

    @app.get("/api/favorites/{favorite_id}/image")
    async def get_favorite_image(favorite_id: int, request: Request) -> Response:
        favorite = _coordinator(request).store.get_favorite(favorite_id)
        if favorite is None:
            raise HTTPException(status_code=404, detail="Favorite not found")
        return _image_response(favorite.image_blob, favorite.timestamp)

    @app.delete("/api/favorites/{favorite_id}")
    async def delete_favorite(favorite_id: int, request: Request) -> dict:
        if not _coordinator(request).store.delete_favorite(favorite_id):
            raise HTTPException(status_code=404, detail="Favorite not found")
        return {"success": True, "deleted": favorite_id}

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~comfychat.core.config.config`
    (``COMFYCHAT_SERVER_HOST``, ``COMFYCHAT_SERVER_PORT``,
    ``COMFYCHAT_LOG_LEVEL``).

    This function is registered as the ``comfychat`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "comfychat.api.main:app",
        host=config.server_host,
        port=config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
