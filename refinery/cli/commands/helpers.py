"""Shared helper functions for CLI commands."""

import argparse
import json
from typing import Any

from refinery.types import AuditOperation
from refinery.validation import parse_entry_id, sanitize_string


def validate_input(value: str, field_name: str, max_length: int = 1000) -> str:
    """Validate and sanitize CLI inputs."""
    return sanitize_string(value, field_name, max_length)


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def entry_id_arg(value: str) -> int:
    """argparse type for memory entry ids (``12`` or ``#12``)."""
    try:
        return parse_entry_id(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Memory ID must be an integer, got '{value}'")


def threshold_arg(value: str) -> float:
    """argparse type for a retention threshold in (0, 1]."""
    try:
        fvalue = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Threshold must be a number, got '{value}'")
    if not 0.0 < fvalue <= 1.0:
        raise argparse.ArgumentTypeError(f"Threshold must be in (0, 1], got {fvalue}")
    return fvalue


def mass_arg(value: str) -> int:
    """argparse type for a token mass (non-negative integer)."""
    try:
        mass = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Mass must be an integer, got '{value}'")
    if mass < 0:
        raise argparse.ArgumentTypeError(f"Mass must be >= 0, got {mass}")
    return mass


def operation_arg(value: str) -> str:
    """argparse type for audit operation filters."""
    try:
        return AuditOperation(value.strip().lower()).value
    except ValueError:
        allowed = ", ".join(op.value for op in AuditOperation)
        raise argparse.ArgumentTypeError(f"Unknown operation '{value}' (one of: {allowed})")
