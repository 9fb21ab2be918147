"""
Refinery - Self-editing memory consolidation for autonomous agents.

An agent reviews and compacts its own memory under a token budget;
refinery makes sure one overzealous session can always be undone.
"""

from .refinement import MAX_MUTATIONS, RefinementSession, begin_session, revert_session
from .storage import SQLiteStorage

try:
    from importlib.metadata import version

    __version__ = version("refinery")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "MAX_MUTATIONS",
    "RefinementSession",
    "SQLiteStorage",
    "begin_session",
    "revert_session",
]
