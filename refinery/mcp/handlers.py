"""Validators and handlers for the refinement MCP tools.

Validators only check what the server needs to route a call: the
session id. Everything else (operation, ids, content, query, summary) is
passed through so the model gets the session's structured,
self-describing error instead of a plain-text rejection.
"""

import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict

from refinery.refinement import begin_session
from refinery.validation import sanitize_string

if TYPE_CHECKING:
    from refinery.mcp.server import ServerState

logger = logging.getLogger(__name__)

# Arguments forwarded to the session untouched
SESSION_PARAMETERS = ("operation", "query", "ids", "id", "content", "summary")

# ---------------------------------------------------------------------------
# Validators
# ---------------------------------------------------------------------------


def validate_refinement_begin(arguments: Dict[str, Any]) -> Dict[str, Any]:
    return {}


def validate_refinement(arguments: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    sanitized["session_id"] = sanitize_string(
        arguments.get("session_id"), "session_id", 100, required=True
    ).strip()
    for name in SESSION_PARAMETERS:
        if name in arguments:
            sanitized[name] = arguments[name]
    return sanitized


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _session_error(message: str, code: str, **extra: Any) -> str:
    return json.dumps({"type": "error", "error": message, "error_code": code, **extra}, indent=2)


def handle_refinement_begin(args: Dict[str, Any], state: "ServerState") -> str:
    # One session per server process: a new one would reset the quota and
    # measure the breaker against mass this run already cut.
    session = state.session
    if session is not None:
        if session.terminated:
            logger.warning(f"refinement_begin after session {session.session_id[:8]} finished")
            return _session_error(
                f"Refinement session {session.session_id} has finished. "
                "No new session can be started in this run.",
                "session_finished",
                session_id=session.session_id,
            )
        logger.warning(f"refinement_begin while session {session.session_id[:8]} is open")
        return _session_error(
            f"Refinement session {session.session_id} is still open. "
            "Continue it, or call complete with a summary to finish.",
            "session_open",
            session_id=session.session_id,
            next_operation="complete",
        )

    session = begin_session(
        state.storage,
        state.owner_id,
        pre_session_mass=state.pre_session_mass,
        session_id=state.session_id,
    )
    state.session = session

    store = state.storage.memory_store(state.owner_id)
    ledger = [entry.as_ledger_entry() for entry in store.list_entries(kind="core")]
    return json.dumps(
        {
            "type": "session_started",
            "session_id": session.session_id,
            "pre_session_mass": session.pre_session_mass,
            "retention_threshold": session.threshold,
            "max_mutations": session.max_mutations,
            "count": len(ledger),
            "ledger": ledger,
        },
        indent=2,
        default=str,
    )


def handle_refinement(args: Dict[str, Any], state: "ServerState") -> str:
    params = dict(args)
    session_id = params.pop("session_id")
    session = state.session
    if session is None or session.session_id != session_id:
        logger.warning(f"Refinement call for unknown session {session_id[:8]}")
        result: Dict[str, Any] = {
            "type": "error",
            "error": f"Unknown session '{session_id}'.",
            "error_code": "unknown_session",
        }
        if session is None:
            result["error"] += " Start one with refinement_begin."
            result["next_operation"] = "refinement_begin"
        else:
            result["session_id"] = session.session_id
    else:
        result = session.dispatch(params)
    return json.dumps(result, indent=2, default=str)


HANDLERS: Dict[str, Callable] = {
    "refinement_begin": handle_refinement_begin,
    "refinement": handle_refinement,
}

VALIDATORS: Dict[str, Callable] = {
    "refinement_begin": validate_refinement_begin,
    "refinement": validate_refinement,
}
