"""Shared pytest fixtures for ComfyChat tests."""

import json
import shutil
import tempfile
from io import BytesIO
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from comfychat.core.client import HealthStatus
from comfychat.core.config import ComfyChatConfig
from comfychat.core.connection import ConnectionManager
from comfychat.core.exceptions import RetrievalError, SubmissionError
from comfychat.core.models import Settings
from comfychat.core.session import GenerationCoordinator
from comfychat.core.store import ChatStore
from comfychat.core.template import DEFAULT_WORKFLOW_JSON


class FakeClient:
    """Stand-in for ComfyClient that records calls instead of using the network.

    Attributes:
        submit_error: Raised from ``submit_prompt`` when set.
        fetch_error: When True, ``fetch_image`` raises RetrievalError (404).
        image_bytes: Bytes returned by ``fetch_image``.
    """

    def __init__(self, image_bytes: bytes = b"") -> None:
        self.submissions: list[dict] = []
        self.fetches: list[tuple[str, str | None]] = []
        self.health_checks: list[tuple[str, str | None]] = []
        self.submit_error: SubmissionError | None = None
        self.fetch_error = False
        self.image_bytes = image_bytes
        self.health = HealthStatus(True, "Connected successfully!")
        self.closed = False

    async def submit_prompt(self, base_url, token, client_id, workflow) -> None:
        self.submissions.append(
            {"base_url": base_url, "token": token, "client_id": client_id, "workflow": workflow}
        )
        if self.submit_error is not None:
            raise self.submit_error

    async def fetch_image(self, url, token) -> bytes:
        self.fetches.append((url, token))
        if self.fetch_error:
            raise RetrievalError("Image fetch failed: 404 Not Found", url)
        return self.image_bytes

    async def check_health(self, base_url, token) -> HealthStatus:
        self.health_checks.append((base_url, token))
        return self.health

    async def close(self) -> None:
        self.closed = True


class FakeConnection(ConnectionManager):
    """ConnectionManager that never opens a socket; events are injected with ``emit``."""

    def __init__(self, cfg: ComfyChatConfig) -> None:
        super().__init__("test-client", cfg)
        self.configure_calls: list[tuple[str, str | None, bool]] = []
        self.closed_count = 0

    async def configure(self, api_host, auth_token, force=False) -> bool:
        self.configure_calls.append((api_host, auth_token, force))
        return True

    async def close(self) -> None:
        self.closed_count += 1

    async def emit(self, event) -> None:
        await self._dispatch(event)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> ComfyChatConfig:
    """Create a test configuration that keeps the database in a temp directory."""
    return ComfyChatConfig(
        data_dir=str(temp_dir / "data"),
        secure_origin=False,
        _env_file=None,
    )


@pytest.fixture
def store(test_config: ComfyChatConfig) -> ChatStore:
    """Empty (unconfigured) store."""
    return ChatStore(test_config.database_path)


@pytest.fixture
def workflow_settings() -> Settings:
    """Settings pointing at a local backend with the stock workflow."""
    return Settings(
        api_host="127.0.0.1:8188",
        workflow_json=DEFAULT_WORKFLOW_JSON,
        auth_token="secret-token",
    )


@pytest.fixture
def configured_store(store: ChatStore, workflow_settings: Settings) -> ChatStore:
    """Store with settings already saved."""
    store.upsert_settings(workflow_settings)
    return store


@pytest.fixture
def png_bytes() -> bytes:
    """A tiny valid PNG image."""
    buffer = BytesIO()
    Image.new("RGB", (8, 8), color=(255, 0, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def fake_client(png_bytes: bytes) -> FakeClient:
    return FakeClient(image_bytes=png_bytes)


@pytest.fixture
def fake_connection(test_config: ComfyChatConfig) -> FakeConnection:
    return FakeConnection(test_config)


@pytest.fixture
def make_coordinator(test_config, fake_client, fake_connection):
    """Factory building a coordinator around a given store and the fakes."""

    def _make(store: ChatStore, rng=None) -> GenerationCoordinator:
        return GenerationCoordinator(
            store=store,
            client=fake_client,
            connection=fake_connection,
            cfg=test_config,
            rng=rng,
        )

    return _make


@pytest.fixture
def sample_graph() -> dict:
    """Small workflow with a placeholder, seeds in two places and odd nodes."""
    return json.loads(
        """{
          "1": {"class_type": "KSampler",
                "inputs": {"seed": 5, "steps": 20, "model": ["4", 0]}},
          "2": {"class_type": "KSamplerAdvanced",
                "inputs": {"noise_seed": 7, "cfg": 8.0}},
          "3": {"class_type": "CLIPTextEncode",
                "inputs": {"text": "%PROMPT%", "clip": ["4", 1]}},
          "4": {"class_type": "CheckpointLoaderSimple"},
          "5": {"class_type": "Note", "inputs": "not an object"}
        }"""
    )


@pytest.fixture
def test_client(test_config, store, make_coordinator) -> Generator:
    """FastAPI TestClient whose coordinator uses the fakes and the test store.

    Entering the client runs the lifespan handler, so the coordinator is
    started (and the fake push channel configured) before each request.
    """
    from fastapi.testclient import TestClient

    from comfychat.api.main import create_app

    app = create_app(test_config, coordinator_factory=lambda cfg: make_coordinator(store))
    with TestClient(app) as client:
        yield client
