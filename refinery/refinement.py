"""Memory refinement sessions.

A refinement session is the tool surface a language model uses to review
its own core memories: search, consolidate, update, delete, protect and
complete. The model may overreact, so the session

- caps consolidate/update/delete at ``MAX_MUTATIONS`` per session,
- re-measures core memory mass after every successful mutation and rolls
  the whole session back the moment mass falls below the owner's retention
  threshold (and once more on ``complete``),
- reverses a session by replaying its audit records newest first.

Every result is a dict tagged with ``type``. Bad input never raises: it
comes back as ``{"type": "error", ...}`` with enough structure for the
caller to correct itself.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from refinery.logging_config import log_refinement, log_rollback
from refinery.storage.memory_store import MemoryStore
from refinery.storage.sqlite import SQLiteStorage
from refinery.types import (
    ALLOWED_OPERATIONS,
    MAX_CONTENT_LENGTH,
    AuditOperation,
    AuditRecord,
    MemoryKind,
    RefinementOperation,
    RevertSummary,
    SessionStats,
)
from refinery.utils import validate_owner_id
from refinery.validation import parse_entry_id, parse_id_list, sanitize_string

logger = logging.getLogger(__name__)

# Shared cap on consolidate + update + delete per session
MAX_MUTATIONS = 10

TERMINATED_MESSAGE = (
    "Refinement session terminated. No further operations are accepted in this session."
)


def _error(message: str, code: str, **extra: Any) -> Dict[str, Any]:
    return {"type": "error", "error": message, "error_code": code, **extra}


def _pluralize(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def describe_reverted(summary: RevertSummary) -> str:
    """Human-readable list of what a reversal undid, e.g. ``1 deletion, 2 updates``."""
    parts = []
    if summary.deletions:
        parts.append(_pluralize(summary.deletions, "deletion"))
    if summary.updates:
        parts.append(_pluralize(summary.updates, "update"))
    if summary.consolidations:
        parts.append(_pluralize(summary.consolidations, "consolidation"))
    if summary.protections:
        parts.append(_pluralize(summary.protections, "protection"))
    return ", ".join(parts) if parts else "no operations"


def revert_records(
    store: MemoryStore, records: List[AuditRecord], dry_run: bool = False
) -> RevertSummary:
    """Reverse audit records in the order given (callers pass newest first).

    Must run inside ``SQLiteStorage.atomic()`` unless ``dry_run`` is set,
    in which case nothing is written and the summary reports what would be.
    """
    summary = RevertSummary()

    for record in records:
        match AuditOperation(record.operation):
            case AuditOperation.DELETE:
                entry = store.get(record.target_entry_id)
                if entry is None or not entry.discarded:
                    continue
                if dry_run or store.undiscard(entry):
                    summary.restored.append(entry.id)
                    summary.deletions += 1

            case AuditOperation.UPDATE:
                entry = store.get(record.target_entry_id)
                before = (record.before_state or {}).get("content")
                if entry is None or before is None:
                    continue
                if dry_run or store.update_content(entry, before):
                    summary.content_restored.append(entry.id)
                    summary.updates += 1

            case AuditOperation.CONSOLIDATE:
                merged_id = (record.after_state or {}).get("id", record.target_entry_id)
                merged = store.get(merged_id) if merged_id is not None else None
                if merged is not None and not merged.discarded:
                    if not dry_run:
                        # A session-created entry; clear any flag so discard cannot refuse it.
                        if merged.protected:
                            store.set_protected(merged, False)
                        store.discard(merged)
                    summary.discarded.append(merged.id)
                for source in record.merge_set or []:
                    entry = store.get(source["id"])
                    if entry is None or not entry.discarded:
                        continue
                    if dry_run or store.undiscard(entry):
                        summary.restored.append(entry.id)
                summary.consolidations += 1

            case AuditOperation.PROTECT:
                entry = store.get(record.target_entry_id)
                if entry is None or not entry.protected:
                    continue
                if dry_run or store.set_protected(entry, False):
                    summary.unprotected.append(entry.id)
                    summary.protections += 1

            case (
                AuditOperation.COMPLETE
                | AuditOperation.ROLLBACK
                | AuditOperation.REVERT
                | AuditOperation.UNPROTECT
                | AuditOperation.DISCARD
                | AuditOperation.RESTORE
            ):
                pass

    return summary


class RefinementSession:
    """Single-use dispatcher for one refinement loop.

    Args:
        storage: Storage backend.
        owner_id: Owner whose memories are being refined.
        session_id: Opaque id tagging every audit record of this session.
        pre_session_mass: Core mass when the session was triggered. With no
            mass (None or 0) the circuit breaker is disabled.
        retention_threshold: Override for the owner's configured threshold.
        max_mutations: Shared quota for consolidate/update/delete.
    """

    def __init__(
        self,
        storage: SQLiteStorage,
        owner_id: str,
        session_id: Optional[str] = None,
        pre_session_mass: Optional[int] = None,
        retention_threshold: Optional[float] = None,
        max_mutations: int = MAX_MUTATIONS,
    ):
        self.storage = storage
        self.owner_id = validate_owner_id(owner_id)
        self.session_id = session_id or str(uuid.uuid4())
        self.pre_session_mass = pre_session_mass
        self.max_mutations = max_mutations
        self.mutation_count = 0
        self.terminated = False
        self.stats = SessionStats()

        owner = storage.ensure_owner(self.owner_id)
        if retention_threshold is None:
            retention_threshold = owner.effective_retention_threshold
        self.threshold = retention_threshold

        self._store = storage.memory_store(self.owner_id)
        self._audit = storage.audit_trail(self.owner_id)

    # === Dispatch ===

    def dispatch(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Dispatch a ``{"operation": ..., **params}`` request."""
        params = dict(request or {})
        operation = params.pop("operation", None)
        blank = operation is None or (isinstance(operation, str) and not operation.strip())
        if blank and not self.terminated:
            return _error(
                "operation is required",
                "missing_parameter",
                required_parameter="operation",
                allowed_operations=ALLOWED_OPERATIONS,
            )
        return self.execute(operation, **params)

    def execute(self, operation: Any, **params: Any) -> Dict[str, Any]:
        """Run one operation and return its tagged result."""
        if self.terminated:
            logger.warning(f"[Refinement] Owner {self.owner_id}: {operation} after termination")
            return _error(TERMINATED_MESSAGE, "terminated")

        op = RefinementOperation.parse(operation)
        if op is None:
            logger.warning(f"[Refinement] Owner {self.owner_id}: unknown operation {operation!r}")
            return _error(
                f"Invalid operation '{operation}'",
                "invalid_operation",
                allowed_operations=ALLOWED_OPERATIONS,
            )

        if op.is_quota_limited and self.mutation_count >= self.max_mutations:
            logger.warning(
                f"[Refinement] Owner {self.owner_id}: quota of {self.max_mutations} reached"
            )
            return _error(
                f"Hard cap of {self.max_mutations} mutations per session reached. "
                "Call complete with a summary to finish.",
                "quota_exceeded",
                quota=self.max_mutations,
                next_operation=RefinementOperation.COMPLETE.value,
            )

        logger.info(f"[Refinement] Owner {self.owner_id}: {op.value}")
        match op:
            case RefinementOperation.SEARCH:
                result = self._search(params)
            case RefinementOperation.CONSOLIDATE:
                result = self._consolidate(params)
            case RefinementOperation.UPDATE:
                result = self._update(params)
            case RefinementOperation.DELETE:
                result = self._delete(params)
            case RefinementOperation.PROTECT:
                result = self._protect(params)
            case RefinementOperation.COMPLETE:
                result = self._complete(params)

        mutated = result["type"] != "error" and (
            op.is_quota_limited or op is RefinementOperation.PROTECT
        )
        if mutated:
            if op.is_quota_limited:
                self.mutation_count += 1
            tripped, current_mass = self._breaker_check()
            if tripped:
                result = self._rollback(current_mass)

        log_refinement(
            self.owner_id, self.session_id, op.value, result["type"], params.get("id")
        )
        return result

    # === Parameter helpers ===

    def _param(self, params: Dict[str, Any], name: str) -> Any:
        value = params.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        if isinstance(value, (list, tuple)) and not value:
            return None
        return value

    def _param_error(self, op: RefinementOperation, name: str) -> Dict[str, Any]:
        return _error(
            f"{name} is required for {op.value}",
            "missing_parameter",
            operation=op.value,
            required_parameter=name,
        )

    def _content(self, params: Dict[str, Any], op: RefinementOperation):
        """Return (content, error) for the ``content`` parameter."""
        raw = self._param(params, "content")
        if raw is None:
            return None, self._param_error(op, "content")
        try:
            return sanitize_string(raw, "content", MAX_CONTENT_LENGTH).strip(), None
        except ValueError as e:
            return None, _error(str(e), "invalid_parameter", operation=op.value, parameter="content")

    def _entry_id(self, params: Dict[str, Any], op: RefinementOperation):
        """Return (id, error) for the ``id`` parameter."""
        raw = self._param(params, "id")
        if raw is None:
            return None, self._param_error(op, "id")
        try:
            return parse_entry_id(raw), None
        except ValueError as e:
            return None, _error(str(e), "invalid_parameter", operation=op.value, parameter="id")

    def _not_found(self, entry_id: int) -> Dict[str, Any]:
        return _error(f"Memory #{entry_id} not found", "not_found", id=entry_id)

    # === Operations ===

    def _search(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.SEARCH
        query = self._param(params, "query")
        if query is None:
            return self._param_error(op, "query")
        try:
            query = sanitize_string(query, "query", 500).strip()
        except ValueError as e:
            return _error(str(e), "invalid_parameter", operation=op.value, parameter="query")

        results = [entry.as_ledger_entry() for entry in self._store.search(query)]
        return {"type": "search_results", "query": query, "count": len(results), "results": results}

    def _consolidate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.CONSOLIDATE
        raw_ids = self._param(params, "ids")
        if raw_ids is None:
            return self._param_error(op, "ids")
        content, error = self._content(params, op)
        if error:
            return error
        try:
            ids = parse_id_list(raw_ids)
        except ValueError as e:
            return _error(str(e), "invalid_parameter", operation=op.value, parameter="ids")
        if len(ids) < 2:
            return _error(
                "consolidate requires at least 2 distinct memory IDs",
                "invalid_parameter",
                operation=op.value,
                parameter="ids",
            )

        with self.storage.atomic():
            sources = [self._store.find_active(entry_id) for entry_id in ids]
            missing = [entry_id for entry_id, entry in zip(ids, sources) if entry is None]
            if missing:
                return _error(
                    f"Memories not found: {', '.join(f'#{i}' for i in missing)}",
                    "not_found",
                    ids=missing,
                )
            protected = [entry.id for entry in sources if entry.protected]
            if protected:
                return _error(
                    "Cannot consolidate protected memories: "
                    f"{', '.join(f'#{i}' for i in protected)}",
                    "protected",
                    ids=protected,
                )

            earliest = min(entry.created_at for entry in sources)
            merged = self._store.create(content, MemoryKind.CORE.value, earliest.isoformat())
            merge_set = [{"id": entry.id, "content": entry.content} for entry in sources]
            for entry in sources:
                self._store.discard(entry)

            self._audit.append(
                AuditOperation.CONSOLIDATE,
                session_id=self.session_id,
                target_entry_id=merged.id,
                after_state={"id": merged.id, "content": merged.content},
                merge_set=merge_set,
            )
            self.stats.consolidated += len(sources)

        return {
            "type": "consolidated",
            "merged_ids": ids,
            "merged_count": len(sources),
            "new_id": merged.id,
            "new_content": merged.content,
        }

    def _update(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.UPDATE
        entry_id, error = self._entry_id(params, op)
        if error:
            return error
        content, error = self._content(params, op)
        if error:
            return error

        with self.storage.atomic():
            entry = self._store.find_active(entry_id)
            if entry is None:
                return self._not_found(entry_id)
            before = entry.content
            self._store.update_content(entry, content)
            self._audit.append(
                AuditOperation.UPDATE,
                session_id=self.session_id,
                target_entry_id=entry.id,
                before_state={"content": before},
                after_state={"content": content},
            )
            self.stats.updated += 1

        return {"type": "updated", "id": entry.id, "content": entry.content}

    def _delete(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.DELETE
        entry_id, error = self._entry_id(params, op)
        if error:
            return error

        with self.storage.atomic():
            entry = self._store.find_active(entry_id)
            if entry is None:
                return self._not_found(entry_id)
            if entry.protected:
                return _error(f"Cannot delete protected memory #{entry_id}", "protected", id=entry_id)
            self._audit.append(
                AuditOperation.DELETE,
                session_id=self.session_id,
                target_entry_id=entry.id,
                before_state={"content": entry.content},
            )
            self._store.discard(entry)
            self.stats.deleted += 1

        return {"type": "deleted", "id": entry.id}

    def _protect(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.PROTECT
        entry_id, error = self._entry_id(params, op)
        if error:
            return error

        with self.storage.atomic():
            entry = self._store.find_active(entry_id)
            if entry is None:
                return self._not_found(entry_id)
            if entry.protected:
                return {
                    "type": "protected",
                    "id": entry.id,
                    "content": entry.content,
                    "already_protected": True,
                }
            self._store.set_protected(entry, True)
            self._audit.append(
                AuditOperation.PROTECT,
                session_id=self.session_id,
                target_entry_id=entry.id,
                before_state={"protected": False},
                after_state={"protected": True},
            )
            self.stats.protected += 1

        return {"type": "protected", "id": entry.id, "content": entry.content}

    def _complete(self, params: Dict[str, Any]) -> Dict[str, Any]:
        op = RefinementOperation.COMPLETE
        summary = self._param(params, "summary")
        if summary is None:
            return self._param_error(op, "summary")
        try:
            summary = sanitize_string(summary, "summary", 2000).strip()
        except ValueError as e:
            return _error(str(e), "invalid_parameter", operation=op.value, parameter="summary")

        # Final check: catches mass loss the per-operation checks never saw.
        tripped, current_mass = self._breaker_check()
        if tripped:
            return self._rollback(current_mass)

        with self.storage.atomic():
            self._audit.append(
                AuditOperation.COMPLETE,
                session_id=self.session_id,
                details={
                    "summary": summary,
                    "stats": self.stats.as_dict(),
                    "mutation_count": self.mutation_count,
                    "pre_session_mass": self.pre_session_mass,
                    "post_session_mass": current_mass,
                },
            )
            self._store.create(f"Refinement session: {summary}", MemoryKind.JOURNAL.value)
            self.storage.mark_refined(self.owner_id)
        self.terminated = True

        logger.info(
            f"[Refinement] Owner {self.owner_id} complete: {self.stats.as_dict()} "
            f"(mass {self.pre_session_mass} -> {current_mass})"
        )
        return {
            "type": "completed",
            "summary": summary,
            "stats": self.stats.as_dict(),
            "mutation_count": self.mutation_count,
        }

    # === Circuit breaker ===

    def _breaker_check(self):
        """Return (tripped, current_mass).

        Trips when current mass / pre-session mass drops below the
        retention threshold. Disabled without a pre-session mass.
        """
        current = self._store.total_mass()
        if not self.pre_session_mass:
            return False, current
        ratio = current / self.pre_session_mass
        return ratio < self.threshold, current

    def _rollback(self, post_compression_mass: int) -> Dict[str, Any]:
        """Undo every audited change of this session in one atomic scope."""
        pre = self.pre_session_mass
        cut_pct = round((1 - post_compression_mass / pre) * 100) if pre else 0
        threshold_pct = round(self.threshold * 100)

        try:
            with self.storage.atomic():
                records = self._audit.for_session(self.session_id)
                reverted = revert_records(self._store, records)
                self._audit.append(
                    AuditOperation.ROLLBACK,
                    session_id=self.session_id,
                    details={
                        "pre_session_mass": pre,
                        "post_compression_mass": post_compression_mass,
                        "threshold": self.threshold,
                        "stats": self.stats.as_dict(),
                        "mutation_count": self.mutation_count,
                        "reverted": reverted.as_dict(),
                    },
                )
                reason = (
                    f"Memory mass fell from {pre} to {post_compression_mass} tokens "
                    f"({cut_pct}% cut), below the {threshold_pct}% retention threshold"
                )
                self._store.create(
                    f"Refinement session {self.session_id[:8]} was rolled back by the circuit "
                    f"breaker. {reason}. Reverted {describe_reverted(reverted)}; all memories "
                    "are as they were before the session.",
                    MemoryKind.JOURNAL.value,
                )
                self.storage.mark_refined(self.owner_id)
        finally:
            self.terminated = True

        logger.warning(f"[Refinement] Owner {self.owner_id} rolled back: {reason}")
        log_rollback(
            self.owner_id,
            self.session_id,
            pre,
            post_compression_mass,
            self.threshold,
            {
                "deletions": reverted.deletions,
                "updates": reverted.updates,
                "consolidations": reverted.consolidations,
                "protections": reverted.protections,
            },
        )
        return {
            "type": "rolled_back",
            "reason": reason,
            "session_id": self.session_id,
            "pre_session_mass": pre,
            "post_compression_mass": post_compression_mass,
            "threshold": self.threshold,
            "stats": self.stats.as_dict(),
            "reverted": reverted.as_dict(),
        }


def begin_session(
    storage: SQLiteStorage,
    owner_id: str,
    pre_session_mass: Optional[int] = None,
    session_id: Optional[str] = None,
    max_mutations: int = MAX_MUTATIONS,
) -> RefinementSession:
    """Start a session, measuring mass and minting an id when the trigger supplies none."""
    store = storage.memory_store(owner_id)
    if pre_session_mass is None:
        pre_session_mass = store.total_mass()
    session = RefinementSession(
        storage,
        owner_id,
        session_id=session_id or str(uuid.uuid4()),
        pre_session_mass=pre_session_mass,
        max_mutations=max_mutations,
    )
    logger.info(
        f"[Refinement] Starting session {session.session_id} for {owner_id} "
        f"(mass {pre_session_mass}, threshold {session.threshold})"
    )
    return session


def revert_session(
    storage: SQLiteStorage, owner_id: str, session_id: str, dry_run: bool = False
) -> Dict[str, Any]:
    """Manually reverse a finished session from its audit records.

    Raises:
        ValueError: If the session has no records or was already reversed
    """
    audit = storage.audit_trail(owner_id)
    store = storage.memory_store(owner_id)

    records = audit.for_session(session_id)
    if not records:
        raise ValueError(f"No audit records for session {session_id}")
    reversed_ops = {AuditOperation.ROLLBACK.value, AuditOperation.REVERT.value}
    if any(record.operation in reversed_ops for record in records):
        raise ValueError(f"Session {session_id} was already reversed")

    mass_before = store.total_mass()
    if dry_run:
        summary = revert_records(store, records, dry_run=True)
        return {
            "session_id": session_id,
            "dry_run": True,
            "mass_before": mass_before,
            "reverted": summary.as_dict(),
        }

    with storage.atomic():
        summary = revert_records(store, records)
        mass_after = store.total_mass()
        audit.append(
            AuditOperation.REVERT,
            session_id=session_id,
            details={
                "mass_before": mass_before,
                "mass_after": mass_after,
                "reverted": summary.as_dict(),
            },
        )

    logger.warning(
        f"[Refinement] Owner {owner_id}: session {session_id} reverted manually "
        f"({describe_reverted(summary)})"
    )
    return {
        "session_id": session_id,
        "dry_run": False,
        "mass_before": mass_before,
        "mass_after": mass_after,
        "reverted": summary.as_dict(),
    }
