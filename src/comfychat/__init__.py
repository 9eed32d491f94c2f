"""ComfyChat - chat-style client for ComfyUI-compatible image generation backends."""

__version__ = "0.1.0"

from comfychat.core.config import ComfyChatConfig, config
from comfychat.core.session import GenerationCoordinator
from comfychat.core.store import ChatStore

__all__ = [
    "ChatStore",
    "ComfyChatConfig",
    "GenerationCoordinator",
    "config",
]
