"""Audit trail commands for refinery CLI."""

from typing import TYPE_CHECKING

from refinery.cli.commands.helpers import print_json

if TYPE_CHECKING:
    from refinery.storage import SQLiteStorage


def _describe(record) -> str:
    target = f" #{record.target_entry_id}" if record.target_entry_id is not None else ""
    session = record.session_id[:8] if record.session_id else "owner"
    extra = ""
    if record.merge_set:
        sources = ", ".join(f"#{m['id']}" for m in record.merge_set)
        extra = f" <- {sources}"
    elif record.details and "summary" in record.details:
        extra = f"  \"{record.details['summary']}\""
    elif record.details and "post_compression_mass" in record.details:
        extra = (
            f"  mass {record.details.get('pre_session_mass')}"
            f" -> {record.details.get('post_compression_mass')}"
        )
    return f"  {record.seq:>5}  {session:<8}  {record.operation:<11}{target}{extra}"


def cmd_audit(args, storage: "SQLiteStorage", owner_id: str):
    """Handle audit subcommands."""
    audit = storage.audit_trail(owner_id)

    if getattr(args, "audit_action", None) == "sessions":
        sessions = audit.sessions(limit=args.limit)
        if args.json:
            print_json(sessions)
            return
        if not sessions:
            print("No refinement sessions recorded.")
            return
        print(f"Refinement sessions for {owner_id}:")
        for s in sessions:
            if s["reversed"]:
                status = "reversed"
            elif s["completed"]:
                status = "completed"
            else:
                status = "open"
            print(f"  {s['session_id']}  {s['records']:>3} records  {status:<9}  {s['started_at']}")
        return

    records = audit.list(session_id=args.session, operation=args.operation, limit=args.limit)
    if args.json:
        print_json([record.to_dict() for record in records])
        return
    if not records:
        print("No audit records.")
        return
    print(f"Audit trail for {owner_id} (newest first):")
    for record in records:
        print(_describe(record))
