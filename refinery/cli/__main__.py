"""
Refinery CLI - owner-side administration of agent memory refinement.

Usage:
    refinery memory add CONTENT [--kind core|journal]
    refinery memory list [--all] [--kind K] [--json]
    refinery memory protect|unprotect|discard|restore ID
    refinery owner show [--json]
    refinery owner threshold VALUE | --clear
    refinery audit [--session SID] [--operation OP] [--limit N] [--json]
    refinery audit sessions
    refinery revert SESSION_ID [--dry-run]
    refinery mcp [--session-id SID] [--pre-session-mass N]
"""

import argparse
import logging
import sys
from typing import List, Optional

from refinery.cli.commands import cmd_audit, cmd_memory, cmd_owner, cmd_revert
from refinery.cli.commands.helpers import (
    entry_id_arg,
    mass_arg,
    operation_arg,
    threshold_arg,
)
from refinery.logging_config import setup_refinery_logging
from refinery.storage import SQLiteStorage
from refinery.types import MemoryKind
from refinery.utils import resolve_owner_id

# Set up logging
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)


def cmd_mcp(args, storage: SQLiteStorage, owner_id: str):
    """Start MCP server."""
    try:
        from refinery.mcp.server import main as mcp_main
    except ImportError as e:
        logger.error("MCP dependencies not installed. Run: pip install mcp")
        logger.error(f"Error: {e}")
        sys.exit(1)
    mcp_main(
        owner_id=owner_id,
        storage=storage,
        pre_session_mass=args.pre_session_mass,
        session_id=args.session_id,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="refinery",
        description="Self-editing memory refinement with a safety net",
    )
    parser.add_argument("--owner", "-o", help="Owner ID", default=None)
    parser.add_argument("--db", help="Path to the SQLite database", default=None)
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Log level for the file log (DEBUG also logs to the console)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # memory
    p_memory = subparsers.add_parser("memory", help="Manage memory entries")
    mem_sub = p_memory.add_subparsers(dest="memory_action", required=True)

    mem_add = mem_sub.add_parser("add", help="Add a memory entry")
    mem_add.add_argument("content", help="Memory content")
    mem_add.add_argument(
        "--kind",
        choices=[k.value for k in MemoryKind],
        default=MemoryKind.CORE.value,
    )

    mem_list = mem_sub.add_parser("list", help="List memory entries")
    mem_list.add_argument("--all", action="store_true", help="Include discarded entries")
    mem_list.add_argument("--kind", choices=[k.value for k in MemoryKind])
    mem_list.add_argument("--json", "-j", action="store_true")

    for action, help_text in (
        ("protect", "Protect an entry from deletion and merging"),
        ("unprotect", "Lift protection from an entry"),
        ("discard", "Discard an entry (soft delete)"),
        ("restore", "Restore a discarded entry"),
    ):
        p_action = mem_sub.add_parser(action, help=help_text)
        p_action.add_argument("id", type=entry_id_arg, help="Memory ID")

    # owner
    p_owner = subparsers.add_parser("owner", help="Owner settings")
    owner_sub = p_owner.add_subparsers(dest="owner_action", required=True)

    owner_show = owner_sub.add_parser("show", help="Show owner settings and mass")
    owner_show.add_argument("--json", "-j", action="store_true")

    owner_threshold = owner_sub.add_parser("threshold", help="Set the retention threshold")
    owner_threshold.add_argument(
        "value", nargs="?", type=threshold_arg, help="Fraction of mass to keep, in (0, 1]"
    )
    owner_threshold.add_argument(
        "--clear", action="store_true", help="Use the default threshold again"
    )

    # audit
    p_audit = subparsers.add_parser("audit", help="Show the refinement audit trail")
    p_audit.add_argument("--session", "-s", help="Only records of this session")
    p_audit.add_argument("--operation", type=operation_arg, help="Only this operation")
    p_audit.add_argument("--limit", "-l", type=int, default=50)
    p_audit.add_argument("--json", "-j", action="store_true")
    audit_sub = p_audit.add_subparsers(dest="audit_action")
    audit_sub.add_parser("sessions", help="List refinement sessions")

    # revert
    p_revert = subparsers.add_parser("revert", help="Reverse a finished refinement session")
    p_revert.add_argument("session_id", help="Session ID (see `refinery audit sessions`)")
    p_revert.add_argument("--dry-run", action="store_true", help="Report without changing")
    p_revert.add_argument("--json", "-j", action="store_true")

    # mcp
    p_mcp = subparsers.add_parser("mcp", help="Start MCP server (stdio transport)")
    p_mcp.add_argument("--session-id", help="Session ID assigned by the scheduler")
    p_mcp.add_argument(
        "--pre-session-mass",
        type=mass_arg,
        help="Core mass in tokens measured when the session was triggered",
    )

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    # Initialize storage with error handling
    try:
        # Resolve owner ID: explicit > env var > "default"
        owner_id = resolve_owner_id(args.owner)
        setup_refinery_logging(owner_id, args.log_level)
        storage = SQLiteStorage(db_path=args.db)
    except (ValueError, TypeError) as e:
        logger.error(f"Failed to initialize refinery: {e}")
        sys.exit(1)

    # Dispatch with error handling
    try:
        if args.command == "memory":
            cmd_memory(args, storage, owner_id)
        elif args.command == "owner":
            cmd_owner(args, storage, owner_id)
        elif args.command == "audit":
            cmd_audit(args, storage, owner_id)
        elif args.command == "revert":
            cmd_revert(args, storage, owner_id)
        elif args.command == "mcp":
            cmd_mcp(args, storage, owner_id)
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Command failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
