from codeloop.memory.pruning import prune_sessions
from codeloop.memory.session_store import SessionStore, SessionSummary

__all__ = [
    "SessionStore",
    "SessionSummary",
    "prune_sessions",
]
