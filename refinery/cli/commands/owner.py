"""Owner settings commands for refinery CLI."""

from typing import TYPE_CHECKING

from refinery.cli.commands.helpers import print_json

if TYPE_CHECKING:
    from refinery.storage import SQLiteStorage


def cmd_owner(args, storage: "SQLiteStorage", owner_id: str):
    """Handle owner subcommands."""
    if args.owner_action == "threshold":
        if args.clear:
            owner = storage.set_retention_threshold(owner_id, None)
            print(
                f"✓ Retention threshold cleared "
                f"(using default {owner.effective_retention_threshold:.0%})"
            )
        elif args.value is None:
            raise ValueError("give a threshold value or --clear")
        else:
            owner = storage.set_retention_threshold(owner_id, args.value)
            print(f"✓ Retention threshold set to {owner.retention_threshold:.0%}")
        return

    # show
    owner = storage.ensure_owner(owner_id)
    store = storage.memory_store(owner_id)
    core = store.list_entries(kind="core")
    data = {
        "owner_id": owner.id,
        "retention_threshold": owner.retention_threshold,
        "effective_retention_threshold": owner.effective_retention_threshold,
        "last_refined_at": owner.last_refined_at,
        "core_entries": len(core),
        "protected_entries": sum(1 for entry in core if entry.protected),
        "core_mass": store.total_mass(),
    }

    if args.json:
        print_json(data)
        return

    threshold = f"{owner.effective_retention_threshold:.0%}"
    if owner.retention_threshold is None:
        threshold += " (default)"
    print(f"Owner: {owner.id}")
    print(f"  Retention threshold: {threshold}")
    print(f"  Last refined:        {owner.last_refined_at or 'never'}")
    print(f"  Core entries:        {data['core_entries']} ({data['protected_entries']} protected)")
    print(f"  Core mass:           {data['core_mass']} tokens")
