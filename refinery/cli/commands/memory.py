"""Memory commands for refinery CLI: add, list, protect, unprotect, discard, restore.

These are the owner's tools, not the model's. Protection granted here
can only be lifted here, and every change is written to the audit trail
with no session id.
"""

import logging
from typing import TYPE_CHECKING

from refinery.cli.commands.helpers import print_json, validate_input
from refinery.types import MAX_CONTENT_LENGTH, AuditOperation

if TYPE_CHECKING:
    from refinery.storage import SQLiteStorage

logger = logging.getLogger(__name__)


def _format_entry(entry) -> str:
    flags = []
    if entry.protected:
        flags.append("protected")
    if entry.discarded:
        flags.append("discarded")
    flag_str = f" ({', '.join(flags)})" if flags else ""
    preview = entry.content if len(entry.content) <= 80 else entry.content[:77] + "..."
    preview = preview.replace("\n", " ")
    return f"  #{entry.id:<5} [{entry.kind}] {entry.token_estimate:>5}t{flag_str}  {preview}"


def cmd_memory(args, storage: "SQLiteStorage", owner_id: str):
    """Handle memory subcommands."""
    store = storage.memory_store(owner_id)
    action = args.memory_action

    if action == "add":
        content = validate_input(args.content, "content", MAX_CONTENT_LENGTH).strip()
        if not content:
            raise ValueError("content cannot be empty")
        entry = store.create(content, args.kind)
        print(f"✓ Memory #{entry.id} added ({entry.kind}, {entry.token_estimate} tokens)")
        return

    if action == "list":
        entries = store.list_entries(include_discarded=args.all, kind=args.kind)
        if args.json:
            print_json(
                [
                    {**entry.as_ledger_entry(), "kind": entry.kind, "discarded": entry.discarded}
                    for entry in entries
                ]
            )
            return
        if not entries:
            print("No memories.")
            return
        print(f"Memories for {owner_id} ({len(entries)}):")
        for entry in entries:
            print(_format_entry(entry))
        print(f"\nCore mass: {store.total_mass()} tokens")
        return

    entry = store.get(args.id)
    if entry is None:
        print(f"Memory #{args.id} not found")
        return

    audit = storage.audit_trail(owner_id)

    if action == "protect":
        if entry.protected:
            print(f"Memory #{entry.id} is already protected")
            return
        with storage.atomic():
            store.set_protected(entry, True)
            audit.append(
                AuditOperation.PROTECT,
                target_entry_id=entry.id,
                before_state={"protected": False},
                after_state={"protected": True},
            )
        print(f"✓ Memory #{entry.id} protected")

    elif action == "unprotect":
        if not entry.protected:
            print(f"Memory #{entry.id} is not protected")
            return
        with storage.atomic():
            store.set_protected(entry, False)
            audit.append(
                AuditOperation.UNPROTECT,
                target_entry_id=entry.id,
                before_state={"protected": True},
                after_state={"protected": False},
            )
        print(f"✓ Memory #{entry.id} unprotected")

    elif action == "discard":
        if entry.protected:
            print(f"Memory #{entry.id} is protected; unprotect it first")
            return
        if entry.discarded:
            print(f"Memory #{entry.id} is already discarded")
            return
        with storage.atomic():
            store.discard(entry)
            audit.append(
                AuditOperation.DISCARD,
                target_entry_id=entry.id,
                before_state={"content": entry.content},
            )
        print(f"✓ Memory #{entry.id} discarded")

    elif action == "restore":
        if not entry.discarded:
            print(f"Memory #{entry.id} is not discarded")
            return
        with storage.atomic():
            store.undiscard(entry)
            audit.append(
                AuditOperation.RESTORE,
                target_entry_id=entry.id,
                after_state={"content": entry.content},
            )
        print(f"✓ Memory #{entry.id} restored")
