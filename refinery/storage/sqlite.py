"""SQLite storage backend for refinery.

One database holds every owner's memory entries, audit trail and
settings. Connections are opened per operation; ``atomic()`` pins a
single connection to the current thread so that several store and audit
writes land in one transaction or not at all.
"""

import contextlib
import logging
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import Callable, Iterator, Optional

from refinery.types import Owner, parse_datetime, utc_now
from refinery.utils import estimate_tokens, get_refinery_home, validate_owner_id
from refinery.validation import validate_retention_threshold

from .audit_trail import AuditTrail
from .memory_store import MemoryStore
from .schema import init_db

logger = logging.getLogger(__name__)


class SQLiteStorage:
    """SQLite-based local storage for refinery.

    Features:
    - Zero-config local storage
    - Per-thread atomic scopes (nested scopes join the outer transaction)
    - Owner-scoped memory stores and audit trails
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        token_estimate: Callable[[str], int] = estimate_tokens,
    ):
        self.db_path = self._resolve_db_path(db_path)
        self.token_estimate = token_estimate
        self._local = threading.local()

        # Ensure directory exists
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    def _resolve_db_path(self, db_path: Optional[Path]) -> Path:
        """Resolve the database path, falling back to temp dir if home is not writable."""
        if db_path is not None:
            return Path(db_path).expanduser().resolve()

        default_path = get_refinery_home() / "memories.db"
        try:
            default_path.parent.mkdir(parents=True, exist_ok=True)
            return default_path.resolve()
        except (OSError, PermissionError) as e:
            # Home dir not writable (sandboxed/container/CI environment)
            fallback_dir = Path(tempfile.gettempdir()) / ".refinery"
            logger.warning(
                f"Cannot write to {default_path.parent} ({e}), falling back to {fallback_dir}"
            )
            return (fallback_dir / "memories.db").resolve()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        """Context manager that handles transactions AND closes connection.

        Inside an ``atomic()`` scope the scope's connection is reused and
        commit/rollback is left to the scope.
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def atomic(self) -> Iterator[sqlite3.Connection]:
        """All-or-nothing scope for a group of writes.

        Every store and audit call made on this thread inside the block
        shares one connection and one transaction. An exception rolls the
        whole block back and propagates.
        """
        active = getattr(self._local, "conn", None)
        if active is not None:
            yield active
            return

        conn = self._get_conn()
        conn.execute("BEGIN IMMEDIATE")
        self._local.conn = conn
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Atomic scope failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    @property
    def in_atomic(self) -> bool:
        return getattr(self._local, "conn", None) is not None

    def close(self):
        """Close any resources.

        Connections are per-operation, so this exists for API symmetry.
        """
        pass

    def _init_db(self):
        with self._connect() as conn:
            init_db(conn=conn, db_path=self.db_path)

    # === Owner-scoped views ===

    def memory_store(self, owner_id: str) -> MemoryStore:
        return MemoryStore(
            connect_fn=self._connect,
            owner_id=validate_owner_id(owner_id),
            now_fn=utc_now,
            token_estimate=self.token_estimate,
        )

    def audit_trail(self, owner_id: str) -> AuditTrail:
        return AuditTrail(
            connect_fn=self._connect,
            owner_id=validate_owner_id(owner_id),
            now_fn=utc_now,
        )

    # === Owners ===

    def _row_to_owner(self, row: sqlite3.Row) -> Owner:
        return Owner(
            id=row["id"],
            retention_threshold=row["retention_threshold"],
            last_refined_at=parse_datetime(row["last_refined_at"]),
            created_at=parse_datetime(row["created_at"]),
        )

    def get_owner(self, owner_id: str) -> Optional[Owner]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM owners WHERE id = ?", (owner_id,)).fetchone()
        return self._row_to_owner(row) if row else None

    def ensure_owner(self, owner_id: str) -> Owner:
        """Return the owner row, creating it with default settings if absent."""
        owner_id = validate_owner_id(owner_id)
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO owners (id, created_at) VALUES (?, ?)",
                (owner_id, utc_now()),
            )
            row = conn.execute("SELECT * FROM owners WHERE id = ?", (owner_id,)).fetchone()
        return self._row_to_owner(row)

    def set_retention_threshold(self, owner_id: str, threshold: Optional[float]) -> Owner:
        """Set (or clear, with None) the owner's retention threshold.

        Raises:
            ValueError: If threshold is outside (0, 1]
        """
        if threshold is not None:
            threshold = validate_retention_threshold(threshold)
        self.ensure_owner(owner_id)
        with self._connect() as conn:
            conn.execute(
                "UPDATE owners SET retention_threshold = ? WHERE id = ?",
                (threshold, owner_id),
            )
        logger.info(f"Owner {owner_id}: retention threshold set to {threshold}")
        return self.get_owner(owner_id)

    def mark_refined(self, owner_id: str, when: Optional[str] = None) -> None:
        """Stamp the owner's last-refined timestamp."""
        self.ensure_owner(owner_id)
        with self._connect() as conn:
            conn.execute(
                "UPDATE owners SET last_refined_at = ? WHERE id = ?",
                (when or utc_now(), owner_id),
            )
