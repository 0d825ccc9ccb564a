from __future__ import annotations

from agent_sync.processors.base import (
    ProcessingContext,
    ProcessingResult,
    SessionProcessor,
)
from agent_sync.processors.conversations import ConversationsProcessor
from agent_sync.processors.metrics import MetricsProcessor
from agent_sync.storage.session_store import SessionStore

__all__ = [
    "ProcessingContext",
    "ProcessingResult",
    "SessionProcessor",
    "MetricsProcessor",
    "ConversationsProcessor",
    "get_default_processors",
]


def get_default_processors(store: SessionStore) -> list[SessionProcessor]:
    """Metrics first, then conversations."""
    return [MetricsProcessor(store), ConversationsProcessor(store)]
