"""Generation sessions: submit a prompt, correlate push events, store results.

One :class:`GenerationSession` tracks a single prompt from submission to
its settled state::

    IDLE -> SUBMITTING -> AWAITING_COMPLETION -> RETRIEVING -> COMPLETE
                 |                                    |
                 +-------------> ERROR <--------------+

:class:`GenerationCoordinator` drives sessions.  It prepares the workflow,
persists the applied seed before submitting (so seed progression survives
transient network failures), submits the job, and reacts to push events:

- ``executing`` with no node clears the "generating" indicator only
- ``executed`` with images moves the matched session to ``RETRIEVING``,
  downloads the artifact and writes the resulting conversation entry

Every user-visible failure becomes an ordinary ``assistant`` entry with
status ``error``, so failures are part of the persisted history.

Event correlation
-----------------
The consumed event frames carry no job id.  :class:`PendingSessions`
attributes each completion to the most recently submitted unsettled
session.  Overlapping sessions can therefore be misattributed; swapping
in a job-id based matcher only requires replacing that class.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum

from .client import ComfyClient
from .config import ComfyChatConfig, config
from .connection import ConnectionManager, Subscription
from .exceptions import ConfigurationMissing, RetrievalError, SubmissionError, TemplateError
from .models import (
    ArtifactDescriptor,
    ConversationEntry,
    EntryStatus,
    ExecutedEvent,
    ExecutingEvent,
    PushEvent,
    Role,
)
from .resolver import image_url, resolve_base
from .store import ChatStore
from .template import parse_workflow, prepare_workflow

logger = logging.getLogger(__name__)

RETRIEVAL_FAILED_MESSAGE = "Image generated but failed to download."


class SessionState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    AWAITING_COMPLETION = "awaiting_completion"
    RETRIEVING = "retrieving"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def settled(self) -> bool:
        return self in (SessionState.COMPLETE, SessionState.ERROR)


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.SUBMITTING}),
    SessionState.SUBMITTING: frozenset({SessionState.AWAITING_COMPLETION, SessionState.ERROR}),
    SessionState.AWAITING_COMPLETION: frozenset({SessionState.RETRIEVING}),
    SessionState.RETRIEVING: frozenset({SessionState.COMPLETE, SessionState.ERROR}),
    SessionState.COMPLETE: frozenset(),
    SessionState.ERROR: frozenset(),
}


@dataclass
class GenerationSession:
    """Lifecycle of one submitted prompt."""

    prompt: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.IDLE
    applied_seed: int | None = None
    error: str | None = None
    result_entry_id: int | None = None

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``.

        Raises:
            RuntimeError: If the transition is not allowed from the current state.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Session {self.id}: illegal transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Session %s: %s -> %s", self.id, self.state.value, new_state.value)
        self.state = new_state


class PendingSessions:
    """Sessions awaiting a completion event, matched most-recent-first."""

    def __init__(self) -> None:
        self._sessions: list[GenerationSession] = []

    def push(self, session: GenerationSession) -> None:
        self._sessions.append(session)

    def claim(self) -> GenerationSession | None:
        """Remove and return the session the next completion belongs to."""
        while self._sessions:
            session = self._sessions.pop()
            if session.state is SessionState.AWAITING_COMPLETION:
                return session
        return None

    def discard(self, session: GenerationSession) -> None:
        if session in self._sessions:
            self._sessions.remove(session)

    def __len__(self) -> int:
        return len(self._sessions)


class GenerationCoordinator:
    """Orchestrates generation sessions against one store and backend.

    Args:
        store: Durable store receiving conversation entries and seed updates.
        client: REST transport.
        connection: Push channel manager.
        cfg: Process configuration.
        rng: Random source for the random seed strategy.
    """

    def __init__(
        self,
        store: ChatStore,
        client: ComfyClient,
        connection: ConnectionManager,
        cfg: ComfyChatConfig = config,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.client = client
        self.connection = connection
        self.pending = PendingSessions()
        self._config = cfg
        self._rng = rng
        self._seed_lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self.generating = False

    @property
    def client_id(self) -> str:
        return self.connection.client_id

    # -- Lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        """Subscribe to push events and connect using the stored settings."""
        self._subscription = self.connection.subscribe(self.handle_event)
        await self.refresh_connection()

    async def stop(self) -> None:
        """Unsubscribe, close the push channel and wait for pending retrievals."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        await self.connection.close()
        # Let in-flight retrievals finish before the HTTP session goes away.
        await self.connection.wait_dispatched()
        await self.client.close()

    async def refresh_connection(self, force: bool = False) -> bool:
        """Align the push channel with the stored backend address and token."""
        settings = self.store.read_settings()
        if settings is None:
            await self.connection.close()
            return False
        return await self.connection.configure(settings.api_host, settings.auth_token, force=force)

    # -- Submission -----------------------------------------------------------

    async def send_prompt(self, text: str) -> GenerationSession | None:
        """Start a session for ``text``.

        Returns:
            The session (``AWAITING_COMPLETION`` or ``ERROR``), or ``None``
            for a blank prompt.

        Raises:
            ConfigurationMissing: If no settings have been saved yet.  No
                entry is written and nothing is sent.
        """
        if not text or not text.strip():
            return None
        if self.store.read_settings() is None:
            raise ConfigurationMissing()

        self.store.add_message(ConversationEntry(role=Role.USER, content=text))
        session = GenerationSession(prompt=text)
        session.transition(SessionState.SUBMITTING)
        self.generating = True

        async with self._seed_lock:
            # Re-read so Increment always builds on the latest persisted seed.
            settings = self.store.read_settings()
            if settings is None:
                raise ConfigurationMissing()
            try:
                graph = parse_workflow(settings.workflow_json)
                workflow, applied_seed = prepare_workflow(
                    graph, text, settings.seed_mode, settings.last_seed, self._rng
                )
            except TemplateError as e:
                return self._fail(session, f"Error: {e}")
            self.store.update_settings(last_seed=applied_seed)
        session.applied_seed = applied_seed

        base_url = resolve_base(settings.api_host, self._config.secure_origin)
        try:
            await self.client.submit_prompt(base_url, settings.auth_token, self.client_id, workflow)
        except SubmissionError as e:
            return self._fail(session, f"Error: {e}")

        session.transition(SessionState.AWAITING_COMPLETION)
        self.pending.push(session)
        logger.info("Session %s submitted with seed %d", session.id, applied_seed)
        return session

    async def generate_more(self, entry_id: int) -> GenerationSession | None:
        """Re-submit the prompt that produced ``entry_id``.

        Returns:
            The new session, or ``None`` if no preceding user prompt exists.
        """
        prompt = self.store.find_originating_prompt(entry_id)
        if not prompt:
            return None
        return await self.send_prompt(prompt)

    def _fail(self, session: GenerationSession, message: str) -> GenerationSession:
        session.error = message
        session.transition(SessionState.ERROR)
        entry = self.store.add_message(
            ConversationEntry(role=Role.ASSISTANT, content=message, status=EntryStatus.ERROR)
        )
        session.result_entry_id = entry.id
        if len(self.pending) == 0:
            self.generating = False
        logger.warning("Session %s failed: %s", session.id, message)
        return session

    # -- Push events ----------------------------------------------------------

    async def handle_event(self, event: PushEvent) -> None:
        """React to one push channel event."""
        if isinstance(event, ExecutingEvent):
            if event.finished:
                self.generating = False
            return

        if isinstance(event, ExecutedEvent) and event.images:
            session = self.pending.claim()
            if session is None:
                logger.info("Received output with no pending session; storing it anyway")
            else:
                session.transition(SessionState.RETRIEVING)
            await self._retrieve(session, event.images)

    def _store_retrieval_failure(self, url: str) -> ConversationEntry:
        return self.store.add_message(
            ConversationEntry(
                role=Role.ASSISTANT,
                content=RETRIEVAL_FAILED_MESSAGE,
                status=EntryStatus.ERROR,
                image_url=url,
            )
        )

    async def _retrieve(
        self,
        session: GenerationSession | None,
        images: tuple[ArtifactDescriptor, ...],
    ) -> None:
        settings = self.store.read_settings()
        if settings is None:
            logger.warning("Settings removed before retrieval; dropping %d artifacts", len(images))
            return
        base_url = resolve_base(settings.api_host, self._config.secure_origin)

        failed = None
        for descriptor in images:
            url = image_url(base_url, descriptor.filename, descriptor.subfolder, descriptor.type)
            try:
                blob = await self.client.fetch_image(url, settings.auth_token)
            except RetrievalError as e:
                failed = str(e)
                entry = self._store_retrieval_failure(e.url)
            except asyncio.CancelledError:
                # The output exists on the backend; keep it visible as a failed download.
                entry = self._store_retrieval_failure(url)
                if session is not None:
                    session.result_entry_id = session.result_entry_id or entry.id
                    session.error = "Image download was cancelled"
                    session.transition(SessionState.ERROR)
                raise
            else:
                entry = self.store.add_message(
                    ConversationEntry(
                        role=Role.ASSISTANT,
                        status=EntryStatus.COMPLETE,
                        image_url=url,
                        image_blob=blob,
                    )
                )
            if session is not None and session.result_entry_id is None:
                session.result_entry_id = entry.id

        if session is not None:
            session.error = failed
            session.transition(SessionState.ERROR if failed else SessionState.COMPLETE)
            logger.info("Session %s settled: %s", session.id, session.state.value)
