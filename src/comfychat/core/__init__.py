"""Core functionality for driving a ComfyUI-compatible backend.

Architecture Overview
---------------------
1. **Configuration Layer** (config.py, resolver.py):
   - Process settings via Pydantic Settings (COMFYCHAT_ prefix)
   - Backend address normalization and bearer headers

2. **Template Engine** (template.py):
   - Prompt placeholder substitution and seed strategy, no I/O

3. **Transport Layer** (client.py, connection.py):
   - REST submission, artifact download and health check (aiohttp)
   - Push channel ownership and event parsing

4. **Session Layer** (session.py):
   - Submit-and-correlate lifecycle of each prompt

5. **Persistence Layer** (store.py, preferences.py):
   - SQLite tables for messages, favorites and settings with
     publish-on-write subscriptions

Usage Example
-------------
    from comfychat.core import ChatStore, GenerationCoordinator, config

    store = ChatStore(config.database_path)
    coordinator = GenerationCoordinator(store, client, connection)
    await coordinator.start()
    await coordinator.send_prompt("a lighthouse at dusk")
"""

from comfychat.core.config import ComfyChatConfig, config
from comfychat.core.exceptions import (
    ChannelError,
    ComfyChatError,
    ConfigurationMissing,
    RetrievalError,
    SubmissionError,
    TemplateError,
)
from comfychat.core.session import GenerationCoordinator
from comfychat.core.store import ChatStore
from comfychat.core.template import prepare_workflow

__all__ = [
    "ChannelError",
    "ChatStore",
    "ComfyChatConfig",
    "ComfyChatError",
    "ConfigurationMissing",
    "GenerationCoordinator",
    "RetrievalError",
    "SubmissionError",
    "TemplateError",
    "config",
    "prepare_workflow",
]
