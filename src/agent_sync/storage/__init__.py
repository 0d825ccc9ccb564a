from __future__ import annotations

from agent_sync.storage.models import SyncSettings
from agent_sync.storage.session_store import SessionStore


def create_session_store(settings: SyncSettings) -> SessionStore:
    """
    Factory function for the session store rooted at the configured home directory.
    """
    settings.sessions_dir.mkdir(parents=True, exist_ok=True)
    return SessionStore(settings.sessions_dir)
