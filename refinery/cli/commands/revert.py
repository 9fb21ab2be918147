"""Manual session revert for refinery CLI."""

from typing import TYPE_CHECKING

from refinery.cli.commands.helpers import print_json, validate_input
from refinery.refinement import revert_session

if TYPE_CHECKING:
    from refinery.storage import SQLiteStorage


def cmd_revert(args, storage: "SQLiteStorage", owner_id: str):
    """Reverse a finished refinement session from its audit records."""
    session_id = validate_input(args.session_id, "session_id", 100).strip()
    result = revert_session(storage, owner_id, session_id, dry_run=args.dry_run)

    if args.json:
        print_json(result)
        return

    reverted = result["reverted"]
    verb = "Would revert" if result["dry_run"] else "✓ Reverted"
    print(f"{verb} session {session_id}:")
    print(f"  Deletions restored:     {reverted['deletions']}")
    print(f"  Updates restored:       {reverted['updates']}")
    print(f"  Consolidations undone:  {reverted['consolidations']}")
    print(f"  Protections lifted:     {reverted['protections']}")
    if result["dry_run"]:
        print(f"  Core mass now: {result['mass_before']} tokens (dry run, nothing changed)")
    else:
        print(f"  Core mass: {result['mass_before']} -> {result['mass_after']} tokens")
