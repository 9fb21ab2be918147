"""
Refinery MCP Server - memory refinement for MCP clients.

Exposes a refinement session to a language model as two MCP tools:
``refinement_begin`` opens the session over the owner's memories and
``refinement`` runs one operation inside it. A server process serves one
session; the scheduler that launches it may pass the session id and the
pre-session mass it measured.

Usage:
    refinery mcp  # Start MCP server (stdio transport)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from refinery.mcp.handlers import HANDLERS, VALIDATORS
from refinery.mcp.tool_definitions import TOOLS
from refinery.refinement import RefinementSession
from refinery.storage import SQLiteStorage
from refinery.utils import resolve_owner_id

logger = logging.getLogger(__name__)

# Initialize MCP server
mcp = Server("refinery")


@dataclass
class ServerState:
    """Storage, owner and the one refinement session of this server process."""

    storage: SQLiteStorage
    owner_id: str
    pre_session_mass: Optional[int] = None
    session_id: Optional[str] = None
    # Kept after termination so late calls get the terminated error.
    session: Optional[RefinementSession] = None


_state: Optional[ServerState] = None


def configure(
    owner_id: Optional[str] = None,
    storage: Optional[SQLiteStorage] = None,
    pre_session_mass: Optional[int] = None,
    session_id: Optional[str] = None,
) -> ServerState:
    """Set the owner (and optionally storage and session trigger) served by this process."""
    global _state
    _state = ServerState(
        storage=storage or SQLiteStorage(),
        owner_id=resolve_owner_id(owner_id),
        pre_session_mass=pre_session_mass,
        session_id=session_id,
    )
    return _state


def get_state() -> ServerState:
    """Get or create the server state."""
    if _state is None:
        return configure()
    return _state


# =============================================================================
# INPUT VALIDATION & ERROR HANDLING
# =============================================================================


def validate_tool_input(name: str, arguments: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and sanitize MCP tool inputs."""
    try:
        if not isinstance(name, str) or not name:
            raise ValueError("tool name must be a non-empty string")
        if not isinstance(arguments, dict):
            raise ValueError(f"arguments must be an object, got {type(arguments).__name__}")

        validator = VALIDATORS.get(name)
        if validator is None:
            raise ValueError(f"Unknown tool: {name}")
        return validator(arguments)

    except (ValueError, TypeError) as e:
        logger.warning(f"Input validation failed for tool {name}: {e}")
        raise ValueError(f"Invalid input: {str(e)}")


def handle_tool_error(e: Exception, tool_name: str, arguments: Dict[str, Any]) -> List[TextContent]:
    """Handle tool errors securely."""
    if isinstance(e, ValueError):
        logger.warning(f"Invalid input for tool {tool_name}: {e}")
        return [TextContent(type="text", text=str(e))]

    elif isinstance(e, PermissionError):
        logger.warning(f"Permission denied for tool {tool_name}")
        return [TextContent(type="text", text="Access denied")]

    elif isinstance(e, ConnectionError):
        logger.error(f"Database connection error for tool {tool_name}")
        return [TextContent(type="text", text="Service temporarily unavailable")]

    else:
        # Unknown error - log full details but return generic message
        argument_keys = list(arguments.keys()) if isinstance(arguments, dict) else []
        logger.error(
            f"Internal error in tool {tool_name}",
            extra={
                "tool_name": tool_name,
                "arguments_keys": argument_keys,
                "error_type": type(e).__name__,
                "error_message": str(e),
            },
            exc_info=True,
        )
        return [TextContent(type="text", text="Internal server error")]


# =============================================================================
# MCP PROTOCOL HANDLERS
# =============================================================================


@mcp.list_tools()
async def list_tools() -> list[Tool]:
    """List available refinement tools."""
    return list(TOOLS)


@mcp.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
    """Handle tool calls with validation and error handling."""
    try:
        sanitized_args = validate_tool_input(name, arguments)
        result = HANDLERS[name](sanitized_args, get_state())
        return [TextContent(type="text", text=result)]
    except Exception as e:
        return handle_tool_error(e, name, arguments)


async def run_server():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await mcp.run(
            read_stream,
            write_stream,
            mcp.create_initialization_options(),
        )


def main(
    owner_id: Optional[str] = None,
    storage: Optional[SQLiteStorage] = None,
    pre_session_mass: Optional[int] = None,
    session_id: Optional[str] = None,
):
    """Entry point for MCP server.

    Owner resolution: explicit argument, then REFINERY_OWNER_ID, then "default".
    """
    configure(owner_id, storage, pre_session_mass, session_id)
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
