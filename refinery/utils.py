"""Utility functions and constants for refinery."""

import logging
import os
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_OWNER_ID = "default"

# Token estimation safety margin (JSON-wrapped prompt text runs larger than raw text)
TOKEN_ESTIMATION_SAFETY_MARGIN = 1.3


def estimate_tokens(text: str, include_safety_margin: bool = False) -> int:
    """Estimate token count from text.

    Uses the simple heuristic of ~4 characters per token. This is the
    default ``token_estimate`` collaborator; callers with a real tokenizer
    pass their own function to the store.

    Args:
        text: The text to estimate tokens for
        include_safety_margin: If True, multiply by the safety margin

    Returns:
        Estimated token count
    """
    if not text:
        return 0
    base_estimate = len(text) // 4
    if include_safety_margin:
        return int(base_estimate * TOKEN_ESTIMATION_SAFETY_MARGIN)
    return base_estimate


def get_refinery_home() -> Path:
    """Data directory: ``REFINERY_DATA_DIR`` if set, else ``~/.refinery``."""
    env_dir = os.environ.get("REFINERY_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".refinery"


def validate_owner_id(owner_id: str) -> str:
    """Reject empty owner ids and ids that could escape the data directory."""
    if not isinstance(owner_id, str) or not owner_id.strip():
        raise ValueError("Owner ID cannot be empty")
    if "/" in owner_id or "\\" in owner_id:
        raise ValueError("Owner ID must not contain path separators")
    if owner_id.strip() in (".", ".."):
        raise ValueError("Owner ID must not be a relative path component")
    return owner_id.strip()


def resolve_owner_id(owner_id: Optional[str] = None) -> str:
    """Resolve the owner id.

    Order: explicit argument, ``REFINERY_OWNER_ID``, then ``"default"``.
    """
    if owner_id:
        return validate_owner_id(owner_id)
    env_owner = os.environ.get("REFINERY_OWNER_ID")
    if env_owner:
        return validate_owner_id(env_owner)
    return DEFAULT_OWNER_ID
