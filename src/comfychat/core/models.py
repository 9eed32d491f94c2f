"""Record and event types shared across ComfyChat.

Persisted records
-----------------
- :class:`ConversationEntry` — one chat message (user prompt, generated
  image, or failure report)
- :class:`FavoriteItem` — an image copied into the favorites gallery
- :class:`Settings` — the singleton backend/workflow configuration row

Push channel events
-------------------
- :class:`ExecutingEvent` — the backend started a node (``node is None``
  means the queued job finished)
- :class:`ExecutedEvent` — a node produced output artifacts
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SeedStrategy(str, Enum):
    """How the sampler seed evolves between requests."""

    RANDOM = "random"
    INCREMENT = "increment"

    def toggled(self) -> SeedStrategy:
        """Return the other strategy."""
        if self is SeedStrategy.RANDOM:
            return SeedStrategy.INCREMENT
        return SeedStrategy.RANDOM


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class EntryStatus(str, Enum):
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class ConversationEntry:
    """A single message in the conversation history.

    Entries are immutable once stored.  ``id`` and ``timestamp`` are
    assigned by the store on insert; ``timestamp`` is in milliseconds and
    strictly increasing across entries.
    """

    role: Role
    content: str = ""
    status: EntryStatus = EntryStatus.COMPLETE
    image_url: str | None = None
    image_blob: bytes | None = None
    timestamp: int = 0
    id: int | None = None

    @property
    def has_image(self) -> bool:
        """True when the image bytes are stored locally."""
        return self.image_blob is not None


@dataclass
class FavoriteItem:
    """An image saved to the favorites gallery.

    The blob is a copy, so clearing the conversation leaves favorites intact.
    """

    prompt: str
    image_blob: bytes
    timestamp: int = 0
    id: int | None = None


@dataclass
class Settings:
    """User-editable backend configuration (a single row in the store)."""

    api_host: str
    workflow_json: str
    auth_token: str = ""
    seed_mode: SeedStrategy = SeedStrategy.RANDOM
    last_seed: int = 0


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Location of an output artifact on the backend."""

    filename: str
    subfolder: str = ""
    type: str = "output"


@dataclass(frozen=True)
class ExecutingEvent:
    node: str | None

    @property
    def finished(self) -> bool:
        """True when the backend signals the queued job is complete."""
        return self.node is None


@dataclass(frozen=True)
class ExecutedEvent:
    node: str | None = None
    images: tuple[ArtifactDescriptor, ...] = ()


PushEvent = ExecutingEvent | ExecutedEvent
