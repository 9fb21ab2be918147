"""Memory entry operations for one owner.

MemoryStore handles lookup, keyword search, mass, soft delete
(discard/undiscard), protection and content edits. It receives its
connection factory explicitly so that calls made inside
``SQLiteStorage.atomic()`` join the surrounding transaction.
"""

import logging
import sqlite3
from typing import Callable, List, Optional

from refinery.types import MemoryEntry, MemoryKind, parse_datetime

logger = logging.getLogger(__name__)


def escape_like_pattern(pattern: str) -> str:
    """Escape LIKE pattern special characters to prevent pattern injection."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class MemoryStore:
    """Owner-scoped access to memory entries.

    Args:
        connect_fn: Callable returning a DB connection context manager.
        owner_id: The owner whose entries this store sees.
        now_fn: Callable returning current timestamp string.
        token_estimate: Callable(content) -> int used for mass.
    """

    def __init__(
        self,
        connect_fn: Callable,
        owner_id: str,
        now_fn: Callable[[], str],
        token_estimate: Callable[[str], int],
    ):
        self._connect = connect_fn
        self.owner_id = owner_id
        self._now = now_fn
        self.token_estimate = token_estimate

    def _row_to_entry(self, row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            owner_id=row["owner_id"],
            content=row["content"],
            kind=row["kind"],
            protected=bool(row["protected"]),
            discarded_at=parse_datetime(row["discarded_at"]),
            created_at=parse_datetime(row["created_at"]),
            token_estimate=self.token_estimate(row["content"]),
        )

    # === Lookup ===

    def get(self, entry_id: int) -> Optional[MemoryEntry]:
        """Fetch an entry by id, discarded or not."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM memory_entries WHERE id = ? AND owner_id = ?",
                (entry_id, self.owner_id),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def find_active(self, entry_id: int) -> Optional[MemoryEntry]:
        """Fetch an active (not discarded) core entry, or None."""
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM memory_entries
                   WHERE id = ? AND owner_id = ? AND kind = ? AND discarded_at IS NULL""",
                (entry_id, self.owner_id, MemoryKind.CORE.value),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def search(self, query: str) -> List[MemoryEntry]:
        """Case-insensitive substring match over active core entries, oldest first."""
        pattern = f"%{escape_like_pattern(query)}%"
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM memory_entries
                   WHERE owner_id = ? AND kind = ? AND discarded_at IS NULL
                     AND content LIKE ? ESCAPE '\\'
                   ORDER BY created_at ASC, id ASC""",
                (self.owner_id, MemoryKind.CORE.value, pattern),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def list_entries(
        self,
        include_discarded: bool = False,
        kind: Optional[str] = None,
    ) -> List[MemoryEntry]:
        conditions = ["owner_id = ?"]
        params: list = [self.owner_id]
        if not include_discarded:
            conditions.append("discarded_at IS NULL")
        if kind:
            conditions.append("kind = ?")
            params.append(kind)

        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT * FROM memory_entries
                   WHERE {' AND '.join(conditions)}
                   ORDER BY created_at ASC, id ASC""",
                params,
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def total_mass(self) -> int:
        """Sum of token estimates over active core entries.

        Protected entries count: they cannot be removed, but they still
        take up budget.
        """
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT content FROM memory_entries
                   WHERE owner_id = ? AND kind = ? AND discarded_at IS NULL""",
                (self.owner_id, MemoryKind.CORE.value),
            ).fetchall()
        return sum(self.token_estimate(row["content"]) for row in rows)

    # === Writes ===

    def create(
        self,
        content: str,
        kind: str = MemoryKind.CORE.value,
        created_at: Optional[str] = None,
    ) -> MemoryEntry:
        """Create an entry.

        ``created_at`` is settable so a consolidated entry can inherit the
        earliest source's timestamp.
        """
        kind = MemoryKind(kind).value
        now = self._now()
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO memory_entries
                   (owner_id, content, kind, protected, created_at, updated_at)
                   VALUES (?, ?, ?, 0, ?, ?)""",
                (self.owner_id, content, kind, created_at or now, now),
            )
            entry_id = cursor.lastrowid
        logger.debug(f"Created {kind} entry #{entry_id} for {self.owner_id}")
        return self.get(entry_id)

    def update_content(self, entry: MemoryEntry, content: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE memory_entries SET content = ?, updated_at = ?
                   WHERE id = ? AND owner_id = ?""",
                (content, self._now(), entry.id, self.owner_id),
            )
        if cursor.rowcount > 0:
            entry.content = content
            entry.token_estimate = self.token_estimate(content)
        return cursor.rowcount > 0

    def set_protected(self, entry: MemoryEntry, protected: bool = True) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE memory_entries SET protected = ?, updated_at = ?
                   WHERE id = ? AND owner_id = ?""",
                (1 if protected else 0, self._now(), entry.id, self.owner_id),
            )
        if cursor.rowcount > 0:
            entry.protected = protected
        return cursor.rowcount > 0

    def discard(self, entry: MemoryEntry) -> bool:
        """Soft-delete an entry.

        Returns:
            True if discarded, False if not found, already discarded, or protected
        """
        now = self._now()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE memory_entries SET discarded_at = ?, updated_at = ?
                   WHERE id = ? AND owner_id = ? AND discarded_at IS NULL AND protected = 0""",
                (now, now, entry.id, self.owner_id),
            )
        if cursor.rowcount > 0:
            entry.discarded_at = parse_datetime(now)
        else:
            logger.debug(f"Discard skipped for entry #{entry.id} (missing, discarded or protected)")
        return cursor.rowcount > 0

    def undiscard(self, entry: MemoryEntry) -> bool:
        """Restore a discarded entry.

        Returns:
            True if restored, False if not found or not discarded
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE memory_entries SET discarded_at = NULL, updated_at = ?
                   WHERE id = ? AND owner_id = ? AND discarded_at IS NOT NULL""",
                (self._now(), entry.id, self.owner_id),
            )
        if cursor.rowcount > 0:
            entry.discarded_at = None
        return cursor.rowcount > 0
