"""Append-only audit trail for memory mutations.

Each record stores enough before/after state to reverse itself. Records
are never updated or deleted; replay order is the ``seq`` column, so two
records written within the same clock tick still unwind correctly.
"""

import json
import logging
import sqlite3
import uuid
from typing import Any, Callable, Dict, List, Optional

from refinery.types import AuditOperation, AuditRecord, parse_datetime

logger = logging.getLogger(__name__)


def _to_json(data: Any) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data)


def _from_json(s: Optional[str]) -> Any:
    if not s:
        return None
    try:
        return json.loads(s)
    except json.JSONDecodeError:
        logger.warning(f"Unreadable JSON in audit record: {s[:80]!r}")
        return None


class AuditTrail:
    """Owner-scoped audit trail.

    Args:
        connect_fn: Callable returning a DB connection context manager.
        owner_id: The owner whose records this trail reads and writes.
        now_fn: Callable returning current timestamp string.
    """

    def __init__(self, connect_fn: Callable, owner_id: str, now_fn: Callable[[], str]):
        self._connect = connect_fn
        self.owner_id = owner_id
        self._now = now_fn

    def _row_to_record(self, row: sqlite3.Row) -> AuditRecord:
        return AuditRecord(
            id=row["id"],
            seq=row["seq"],
            owner_id=row["owner_id"],
            session_id=row["session_id"],
            operation=row["operation"],
            target_entry_id=row["target_entry_id"],
            before_state=_from_json(row["before_state"]),
            after_state=_from_json(row["after_state"]),
            merge_set=_from_json(row["merge_set"]),
            details=_from_json(row["details"]),
            created_at=parse_datetime(row["created_at"]),
        )

    def append(
        self,
        operation: AuditOperation,
        *,
        session_id: Optional[str] = None,
        target_entry_id: Optional[int] = None,
        before_state: Optional[Dict[str, Any]] = None,
        after_state: Optional[Dict[str, Any]] = None,
        merge_set: Optional[List[Dict[str, Any]]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditRecord:
        """Append one record and return it."""
        operation = AuditOperation(operation)
        record_id = str(uuid.uuid4())
        now = self._now()

        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO refinement_audit
                   (id, owner_id, session_id, operation, target_entry_id,
                    before_state, after_state, merge_set, details, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record_id,
                    self.owner_id,
                    session_id,
                    operation.value,
                    target_entry_id,
                    _to_json(before_state),
                    _to_json(after_state),
                    _to_json(merge_set),
                    _to_json(details),
                    now,
                ),
            )
            seq = cursor.lastrowid

        return AuditRecord(
            id=record_id,
            seq=seq,
            owner_id=self.owner_id,
            session_id=session_id,
            operation=operation.value,
            target_entry_id=target_entry_id,
            before_state=before_state,
            after_state=after_state,
            merge_set=merge_set,
            details=details,
            created_at=parse_datetime(now),
        )

    def for_session(self, session_id: str) -> List[AuditRecord]:
        """Every record tagged with ``session_id``, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM refinement_audit
                   WHERE owner_id = ? AND session_id = ?
                   ORDER BY seq DESC""",
                (self.owner_id, session_id),
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list(
        self,
        *,
        session_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 50,
    ) -> List[AuditRecord]:
        """Filtered records, newest first."""
        conditions = ["owner_id = ?"]
        params: list = [self.owner_id]

        if session_id:
            conditions.append("session_id = ?")
            params.append(session_id)
        if operation:
            conditions.append("operation = ?")
            params.append(AuditOperation(operation).value)

        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT * FROM refinement_audit
                   WHERE {' AND '.join(conditions)}
                   ORDER BY seq DESC
                   LIMIT ?""",
                params,
            ).fetchall()
        return [self._row_to_record(row) for row in rows]

    def sessions(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Distinct session ids with record counts and time span, most recent first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT session_id,
                          COUNT(*) AS records,
                          MIN(created_at) AS started_at,
                          MAX(created_at) AS ended_at,
                          MAX(seq) AS last_seq,
                          SUM(CASE WHEN operation IN ('rollback', 'revert') THEN 1 ELSE 0 END)
                              AS reversals,
                          SUM(CASE WHEN operation = 'complete' THEN 1 ELSE 0 END) AS completions
                   FROM refinement_audit
                   WHERE owner_id = ? AND session_id IS NOT NULL
                   GROUP BY session_id
                   ORDER BY last_seq DESC
                   LIMIT ?""",
                (self.owner_id, limit),
            ).fetchall()

        return [
            {
                "session_id": row["session_id"],
                "records": row["records"],
                "started_at": row["started_at"],
                "ended_at": row["ended_at"],
                "reversed": bool(row["reversals"]),
                "completed": bool(row["completions"]),
            }
            for row in rows
        ]
