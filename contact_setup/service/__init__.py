"""
HTTP service running the installation wizard.
"""

from .orchestrator import ActionOutcome, InstallationOrchestrator
from .session_store import InMemorySessionStore, RedisSessionStore, SessionStore, create_session_store
from .service import InstallerService, create_app

__all__ = [
    "ActionOutcome",
    "InstallationOrchestrator",
    "InMemorySessionStore",
    "RedisSessionStore",
    "SessionStore",
    "create_session_store",
    "InstallerService",
    "create_app",
]
