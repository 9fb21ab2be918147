"""Input validation helpers for refinery.

Shared by the refinement session, the CLI and the MCP layer so that
every surface sanitizes the same way:

- ``sanitize_string``: string validation + control-char stripping
- ``sanitize_number``: numeric validation + NaN/Infinity rejection
- ``parse_entry_id`` / ``parse_id_list``: memory entry id coercion

All helpers raise ``ValueError``; callers decide whether that becomes an
exception, a CLI message or a structured tool result.
"""

import logging
import math
import re
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = 1000, required: bool = True
) -> str:
    """Sanitize and validate string inputs.

    Args:
        value: The value to sanitize.
        field_name: Name of the field for error messages.
        max_length: Maximum allowed string length.
        required: If True, empty strings are rejected.

    Returns:
        Sanitized string.

    Raises:
        ValueError: If validation fails.
    """
    if value is None and not required:
        return ""

    if value is None:
        raise ValueError(f"{field_name} is required")

    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")

    if required and not value.strip():
        raise ValueError(f"{field_name} cannot be empty")

    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters, got {len(value)})")

    # Remove null bytes and control characters except newlines and tabs
    return _CONTROL_CHARS.sub("", value)


def sanitize_number(
    value: Any,
    field_name: str,
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    default: Optional[float] = None,
) -> float:
    """Validate numeric inputs, rejecting NaN and Infinity.

    Raises:
        ValueError: If validation fails.
    """
    if value is None:
        if default is not None:
            return default
        raise ValueError(f"{field_name} is required")

    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be a number, got bool")

    if not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be a number, got {type(value).__name__}")

    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValueError(f"{field_name} must be a finite number, got {value}")

    if min_val is not None and value < min_val:
        raise ValueError(f"{field_name} must be >= {min_val}, got {value}")

    if max_val is not None and value > max_val:
        raise ValueError(f"{field_name} must be <= {max_val}, got {value}")

    return float(value)


def validate_retention_threshold(value: Any) -> float:
    """A retention threshold is a fraction in (0, 1]."""
    threshold = sanitize_number(value, "retention_threshold", max_val=1.0)
    if threshold <= 0.0:
        raise ValueError(f"retention_threshold must be > 0, got {threshold}")
    return threshold


def parse_entry_id(value: Any, field_name: str = "id") -> int:
    """Coerce a memory entry id given as int or numeric string (``"12"``, ``"#12"``)."""
    if isinstance(value, bool):
        raise ValueError(f"{field_name} must be an integer id, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip().lstrip("#")
        if text.isdigit():
            return int(text)
    raise ValueError(f"{field_name} must be an integer id, got {value!r}")


def parse_id_list(value: Any, field_name: str = "ids") -> List[int]:
    """Parse ids given as a list or as a comma-separated string.

    Duplicates are dropped, first occurrence wins.
    """
    if isinstance(value, str):
        items: List[Any] = [part for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValueError(
            f"{field_name} must be a list or comma-separated string, got {type(value).__name__}"
        )

    ids: List[int] = []
    for i, item in enumerate(items):
        entry_id = parse_entry_id(item, f"{field_name}[{i}]")
        if entry_id not in ids:
            ids.append(entry_id)
    return ids
