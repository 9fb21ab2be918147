"""
Shared types for refinery.

Memory entries, audit records and owner settings are plain dataclasses.
The storage layer builds them from rows; the refinement session and the
CLI/MCP layers only ever see these types.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

# === Shared Utility Functions ===


def utc_now() -> str:
    """Get current timestamp as ISO string in UTC."""
    return datetime.now(timezone.utc).isoformat()


class ParseDatetimeError(ValueError):
    """Structured parse failure for ISO datetime strings."""

    def __init__(self, value: str, cause: Exception):
        super().__init__(f"Invalid ISO datetime string: {value!r}")
        self.value = value
        self.cause = cause


def parse_datetime(s: Optional[str], *, strict: bool = False) -> Optional[datetime]:
    """Parse ISO datetime string.

    Returns None for empty or unparseable input unless ``strict`` is set,
    in which case a ParseDatetimeError is raised.
    """
    if not s:
        return None
    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        if strict:
            raise ParseDatetimeError(s, exc) from exc
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# === Constants ===

# Journal entries stay in the prompt window for a week, then age out.
JOURNAL_WINDOW = timedelta(days=7)

# Upper bound on a single memory entry's content
MAX_CONTENT_LENGTH = 10_000

# Minimum acceptable post/pre mass ratio when an owner has no setting
DEFAULT_RETENTION_THRESHOLD = 0.75


# === Enums ===


class MemoryKind(str, Enum):
    """Kind of memory entry. Only core entries count toward mass."""

    CORE = "core"
    JOURNAL = "journal"


VALID_MEMORY_KIND_VALUES = frozenset(k.value for k in MemoryKind)


class AuditOperation(str, Enum):
    """Operation recorded in the audit trail."""

    # Written by a refinement session
    CONSOLIDATE = "consolidate"
    UPDATE = "update"
    DELETE = "delete"
    PROTECT = "protect"
    COMPLETE = "complete"
    ROLLBACK = "rollback"
    # Written by owner-side administration
    UNPROTECT = "unprotect"
    DISCARD = "discard"
    RESTORE = "restore"
    REVERT = "revert"


VALID_AUDIT_OPERATION_VALUES = frozenset(op.value for op in AuditOperation)


class RefinementOperation(str, Enum):
    """The closed set of operations a refinement session accepts."""

    SEARCH = "search"
    CONSOLIDATE = "consolidate"
    UPDATE = "update"
    DELETE = "delete"
    PROTECT = "protect"
    COMPLETE = "complete"

    @classmethod
    def parse(cls, name: Any) -> Optional["RefinementOperation"]:
        if not isinstance(name, str):
            return None
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None

    @property
    def is_quota_limited(self) -> bool:
        return self in QUOTA_LIMITED_OPERATIONS


# consolidate, update and delete share one per-session quota
QUOTA_LIMITED_OPERATIONS = frozenset(
    {
        RefinementOperation.CONSOLIDATE,
        RefinementOperation.UPDATE,
        RefinementOperation.DELETE,
    }
)

ALLOWED_OPERATIONS = [op.value for op in RefinementOperation]


# === Records ===


@dataclass
class MemoryEntry:
    """A single entry in an owner's private memory."""

    id: int
    owner_id: str
    content: str
    kind: str = MemoryKind.CORE.value
    protected: bool = False
    discarded_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    token_estimate: int = 0

    @property
    def discarded(self) -> bool:
        return self.discarded_at is not None

    @property
    def is_core(self) -> bool:
        return self.kind == MemoryKind.CORE.value

    def expired(self, now: Optional[datetime] = None) -> bool:
        """Journal entries expire out of the prompt window; core entries never do."""
        if self.kind != MemoryKind.JOURNAL.value or self.created_at is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.created_at < now - JOURNAL_WINDOW

    def as_ledger_entry(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tokens": self.token_estimate,
            "protected": self.protected,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class AuditRecord:
    """One immutable entry in the audit trail.

    ``before_state``/``after_state`` hold whatever snapshot the operation
    needs to be reversed; ``merge_set`` lists ``{id, content}`` for every
    source of a consolidation.
    """

    id: str
    seq: int
    owner_id: str
    operation: str
    session_id: Optional[str] = None
    target_entry_id: Optional[int] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    merge_set: Optional[List[Dict[str, Any]]] = None
    details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "seq": self.seq,
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "operation": self.operation,
            "target_entry_id": self.target_entry_id,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "merge_set": self.merge_set,
            "details": self.details,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class Owner:
    """Owner-level refinement settings."""

    id: str
    retention_threshold: Optional[float] = None
    last_refined_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def effective_retention_threshold(self) -> float:
        if self.retention_threshold is None:
            return DEFAULT_RETENTION_THRESHOLD
        return self.retention_threshold


@dataclass
class SessionStats:
    """Per-operation counts for one refinement session."""

    consolidated: int = 0
    updated: int = 0
    deleted: int = 0
    protected: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "consolidated": self.consolidated,
            "updated": self.updated,
            "deleted": self.deleted,
            "protected": self.protected,
        }


@dataclass
class RevertSummary:
    """Counts of what a replay reversed (or would reverse, on a dry run)."""

    restored: List[int] = field(default_factory=list)
    discarded: List[int] = field(default_factory=list)
    content_restored: List[int] = field(default_factory=list)
    unprotected: List[int] = field(default_factory=list)
    deletions: int = 0
    updates: int = 0
    consolidations: int = 0
    protections: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "deletions": self.deletions,
            "updates": self.updates,
            "consolidations": self.consolidations,
            "protections": self.protections,
            "restored": list(self.restored),
            "discarded": list(self.discarded),
            "content_restored": list(self.content_restored),
            "unprotected": list(self.unprotected),
        }
