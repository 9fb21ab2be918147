"""MCP tool schema definitions for refinery.

Each Tool() defines the name, description, and JSON Schema for one MCP tool.
Validators and handlers live in refinery.mcp.handlers.
"""

from mcp.types import Tool

from refinery.refinement import MAX_MUTATIONS
from refinery.types import ALLOWED_OPERATIONS

TOOLS = [
    Tool(
        name="refinement_begin",
        description=(
            "Start a memory refinement session. Returns the session_id to pass to every "
            "refinement call, your current core memory ledger, its token mass, and the "
            "retention threshold below which the session is rolled back automatically. "
            "Only one session can be started per run; finish it with complete."
        ),
        inputSchema={
            "type": "object",
            "properties": {},
        },
    ),
    Tool(
        name="refinement",
        description=(
            "Memory refinement tool. Operations: search, consolidate, update, delete, "
            f"protect, complete. consolidate/update/delete share a cap of {MAX_MUTATIONS} "
            "per session. If your changes cut memory mass below the retention threshold, "
            "the whole session is rolled back. Completing with zero operations is fine."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "session_id": {
                    "type": "string",
                    "description": "Session id returned by refinement_begin",
                },
                "operation": {
                    "type": "string",
                    "enum": ALLOWED_OPERATIONS,
                    "description": "search, consolidate, update, delete, protect, or complete",
                },
                "query": {
                    "type": "string",
                    "description": "Search query (for search)",
                },
                "ids": {
                    "type": ["array", "string"],
                    "items": {"type": "integer"},
                    "description": "Memory IDs to merge, at least 2 (for consolidate)",
                },
                "id": {
                    "type": ["integer", "string"],
                    "description": "Single memory ID (for update, delete, protect)",
                },
                "content": {
                    "type": "string",
                    "description": "New content (for consolidate, update)",
                },
                "summary": {
                    "type": "string",
                    "description": "Refinement summary (for complete)",
                },
            },
            "required": ["session_id", "operation"],
        },
    ),
]
