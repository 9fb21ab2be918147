"""CLI command modules for refinery."""

from refinery.cli.commands.audit import cmd_audit
from refinery.cli.commands.memory import cmd_memory
from refinery.cli.commands.owner import cmd_owner
from refinery.cli.commands.revert import cmd_revert

__all__ = ["cmd_audit", "cmd_memory", "cmd_owner", "cmd_revert"]
