"""Tests for RefinementSession operations, validation and quota."""

import pytest

from refinery.refinement import MAX_MUTATIONS, RefinementSession, begin_session
from refinery.types import ALLOWED_OPERATIONS


@pytest.fixture
def session(storage, owner_id):
    def _begin(**kwargs):
        return begin_session(storage, owner_id, **kwargs)

    return _begin


# ============================================================================
# Dispatch and validation
# ============================================================================


class TestDispatch:
    def test_unknown_operation_lists_allowed(self, session):
        result = session().execute("shred")

        assert result["type"] == "error"
        assert result["error_code"] == "invalid_operation"
        assert result["allowed_operations"] == ALLOWED_OPERATIONS

    def test_non_string_operation(self, session):
        result = session().execute(None)
        assert result["error_code"] == "invalid_operation"

    def test_operation_name_is_case_insensitive(self, session, add_entry):
        add_entry("alpha")
        assert session().execute("SEARCH", query="alpha")["type"] == "search_results"

    def test_dispatch_requires_operation(self, session):
        result = session().dispatch({"query": "x"})

        assert result["error_code"] == "missing_parameter"
        assert result["required_parameter"] == "operation"
        assert "allowed_operations" in result

    @pytest.mark.parametrize("operation", ["", "  "])
    def test_dispatch_treats_blank_operation_as_missing(self, session, operation):
        result = session().dispatch({"operation": operation})
        assert result["error_code"] == "missing_parameter"
        assert result["required_parameter"] == "operation"

    def test_dispatch_passes_parameters(self, session, add_entry):
        add_entry("alpha one")
        result = session().dispatch({"operation": "search", "query": "alpha"})
        assert result["count"] == 1

    @pytest.mark.parametrize(
        "operation,params,missing",
        [
            ("search", {}, "query"),
            ("search", {"query": "   "}, "query"),
            ("update", {"content": "x"}, "id"),
            ("update", {"id": 1}, "content"),
            ("delete", {}, "id"),
            ("protect", {}, "id"),
            ("consolidate", {"content": "x"}, "ids"),
            ("consolidate", {"ids": [1, 2]}, "content"),
            ("consolidate", {"ids": [], "content": "x"}, "ids"),
            ("complete", {}, "summary"),
        ],
    )
    def test_missing_parameter_is_named(self, session, operation, params, missing):
        result = session().execute(operation, **params)

        assert result["type"] == "error"
        assert result["error_code"] == "missing_parameter"
        assert result["required_parameter"] == missing
        assert result["operation"] == operation

    def test_bad_id_is_invalid_parameter(self, session):
        result = session().execute("delete", id="abc")

        assert result["error_code"] == "invalid_parameter"
        assert result["parameter"] == "id"

    def test_content_too_long(self, session, add_entry):
        entry = add_entry()
        result = session().execute("update", id=entry.id, content="x" * 10_001)

        assert result["error_code"] == "invalid_parameter"
        assert "too long" in result["error"]


# ============================================================================
# Operations
# ============================================================================


class TestSearch:
    def test_returns_ledger_entries(self, session, add_entry):
        entry = add_entry("User prefers tea", protected=True)
        add_entry("User owns a cat")

        result = session().execute("search", query="tea")

        assert result == {
            "type": "search_results",
            "query": "tea",
            "count": 1,
            "results": [entry.as_ledger_entry() | {"protected": True}],
        }

    def test_no_matches(self, session, add_entry):
        add_entry("alpha")
        result = session().execute("search", query="zeta")
        assert result["count"] == 0
        assert result["results"] == []


class TestConsolidate:
    def test_merges_and_inherits_earliest_created_at(self, session, store, audit):
        a = store.create("User likes tea", created_at="2024-01-01T00:00:00+00:00")
        b = store.create("User likes green tea", created_at="2024-06-01T00:00:00+00:00")
        s = session()

        result = s.execute(
            "consolidate", ids=[a.id, b.id], content="User likes tea, especially green tea"
        )

        assert result["type"] == "consolidated"
        assert result["merged_ids"] == [a.id, b.id]
        assert result["merged_count"] == 2
        merged = store.get(result["new_id"])
        assert merged.content == "User likes tea, especially green tea"
        assert merged.created_at == a.created_at
        assert store.get(a.id).discarded and store.get(b.id).discarded
        assert s.stats.consolidated == 2

        [record] = audit.for_session(s.session_id)
        assert record.operation == "consolidate"
        assert record.merge_set == [
            {"id": a.id, "content": "User likes tea"},
            {"id": b.id, "content": "User likes green tea"},
        ]
        assert record.after_state == {"id": merged.id, "content": merged.content}

    def test_accepts_comma_separated_ids(self, session, add_entry):
        a, b = add_entry(chars=100), add_entry(chars=100)
        result = session().execute("consolidate", ids=f"{a.id},{b.id}", content="x" * 200)
        assert result["type"] == "consolidated"

    def test_requires_two_distinct_ids(self, session, add_entry):
        a = add_entry()
        result = session().execute("consolidate", ids=[a.id, a.id], content="x")

        assert result["error_code"] == "invalid_parameter"
        assert "at least 2" in result["error"]

    def test_names_missing_ids(self, session, store, add_entry):
        a, b = add_entry(), add_entry()
        store.discard(b)

        result = session().execute("consolidate", ids=[a.id, b.id, 999], content="x")

        assert result["error_code"] == "not_found"
        assert result["ids"] == [b.id, 999]
        assert store.get(a.id).discarded is False

    def test_refuses_protected(self, session, store, add_entry):
        a, b = add_entry(), add_entry(protected=True)

        result = session().execute("consolidate", ids=[a.id, b.id], content="x")

        assert result["error_code"] == "protected"
        assert result["ids"] == [b.id]
        assert store.get(a.id).discarded is False


class TestUpdate:
    def test_updates_and_audits(self, session, store, audit, add_entry):
        entry = add_entry("old text")
        s = session()

        result = s.execute("update", id=entry.id, content="new text")

        assert result == {"type": "updated", "id": entry.id, "content": "new text"}
        assert store.get(entry.id).content == "new text"
        [record] = audit.for_session(s.session_id)
        assert record.before_state == {"content": "old text"}
        assert record.after_state == {"content": "new text"}

    def test_string_id(self, session, add_entry):
        entry = add_entry("old text")
        result = session().execute("update", id=f"#{entry.id}", content="new text")
        assert result["id"] == entry.id

    def test_not_found(self, session):
        result = session().execute("update", id=42, content="x")
        assert result["error_code"] == "not_found"
        assert result["id"] == 42

    def test_protected_entry_can_be_updated(self, session, add_entry):
        entry = add_entry("old text", protected=True)
        assert session().execute("update", id=entry.id, content="new text")["type"] == "updated"


class TestDelete:
    def test_discards_and_audits_content(self, session, store, audit, add_entry):
        add_entry(chars=400)
        entry = add_entry("short")
        s = session()

        result = s.execute("delete", id=entry.id)

        assert result == {"type": "deleted", "id": entry.id}
        assert store.get(entry.id).discarded is True
        [record] = audit.for_session(s.session_id)
        assert record.before_state == {"content": "short"}

    def test_refuses_protected(self, session, store, audit, add_entry):
        entry = add_entry(protected=True)
        s = session()

        result = s.execute("delete", id=entry.id)

        assert result["error_code"] == "protected"
        assert store.get(entry.id).discarded is False
        assert audit.for_session(s.session_id) == []
        assert s.mutation_count == 0

    def test_already_discarded_is_not_found(self, session, store, add_entry):
        entry = add_entry()
        store.discard(entry)
        assert session().execute("delete", id=entry.id)["error_code"] == "not_found"

    def test_journal_entries_are_out_of_reach(self, session, add_entry):
        entry = add_entry("Refinement session: x", kind="journal")
        assert session().execute("delete", id=entry.id)["error_code"] == "not_found"


class TestProtect:
    def test_protects_and_audits(self, session, store, audit, add_entry):
        entry = add_entry("core value")
        s = session()

        result = s.execute("protect", id=entry.id)

        assert result == {"type": "protected", "id": entry.id, "content": "core value"}
        assert store.get(entry.id).protected is True
        [record] = audit.for_session(s.session_id)
        assert record.operation == "protect"
        assert s.mutation_count == 0
        assert s.stats.protected == 1

    def test_already_protected_writes_no_record(self, session, audit, add_entry):
        entry = add_entry(protected=True)
        s = session()

        result = s.execute("protect", id=entry.id)

        assert result["type"] == "protected"
        assert result["already_protected"] is True
        assert audit.for_session(s.session_id) == []


class TestComplete:
    def test_empty_session_completes(self, session, storage, store, owner_id, audit):
        s = session()

        result = s.execute("complete", summary="Nothing to change")

        assert result["type"] == "completed"
        assert result["stats"] == {"consolidated": 0, "updated": 0, "deleted": 0, "protected": 0}
        assert s.terminated is True
        [journal] = store.list_entries(kind="journal")
        assert journal.content == "Refinement session: Nothing to change"
        assert storage.get_owner(owner_id).last_refined_at is not None
        [record] = audit.for_session(s.session_id)
        assert record.operation == "complete"
        assert record.details["summary"] == "Nothing to change"

    def test_journal_does_not_change_mass(self, session, store, add_entry):
        add_entry(chars=400)
        s = session()
        s.execute("complete", summary="x" * 1000)
        assert store.total_mass() == 100

    def test_reports_stats(self, session, add_entry):
        a, b = add_entry(chars=400), add_entry(chars=400)
        s = session()
        s.execute("update", id=a.id, content="y" * 400)
        s.execute("protect", id=b.id)

        result = s.execute("complete", summary="Tidied")

        assert result["stats"] == {"consolidated": 0, "updated": 1, "deleted": 0, "protected": 1}
        assert result["mutation_count"] == 1


# ============================================================================
# Terminated state
# ============================================================================


class TestTerminated:
    @pytest.mark.parametrize("operation", ALLOWED_OPERATIONS + ["bogus"])
    def test_every_call_after_complete_is_rejected(self, session, add_entry, operation):
        entry = add_entry()
        s = session()
        s.execute("complete", summary="done")

        result = s.execute(operation, id=entry.id, query="x", summary="again")

        assert result["type"] == "error"
        assert result["error_code"] == "terminated"

    def test_dispatch_without_operation_after_complete(self, session):
        s = session()
        s.execute("complete", summary="done")
        assert s.dispatch({})["error_code"] == "terminated"


# ============================================================================
# Quota
# ============================================================================


class TestQuota:
    def test_eleventh_mutation_is_rejected(self, session, store, add_entry):
        entries = [add_entry(chars=400) for _ in range(12)]
        s = session()

        for entry in entries[:MAX_MUTATIONS]:
            result = s.execute("update", id=entry.id, content="z" * 400)
            assert result["type"] == "updated"

        result = s.execute("delete", id=entries[-1].id)

        assert result["type"] == "error"
        assert result["error_code"] == "quota_exceeded"
        assert "Hard cap" in result["error"]
        assert result["next_operation"] == "complete"
        assert store.get(entries[-1].id).discarded is False

        assert s.execute("protect", id=entries[-1].id)["type"] == "protected"
        assert s.execute("search", query="memory")["type"] == "search_results"
        assert s.execute("complete", summary="Hit the cap")["type"] == "completed"

    def test_consolidate_counts_once(self, session, add_entry):
        a, b = add_entry(chars=200), add_entry(chars=200)
        s = session()
        s.execute("consolidate", ids=[a.id, b.id], content="m" * 400)
        assert s.mutation_count == 1

    def test_failed_operations_do_not_count(self, session, add_entry):
        protected = add_entry(protected=True)
        s = session(max_mutations=1)

        s.execute("delete", id=protected.id)
        s.execute("update", id=999, content="x")
        s.execute("consolidate", ids=[protected.id], content="x")

        assert s.mutation_count == 0
        entry = add_entry(chars=40)
        assert s.execute("update", id=entry.id, content="w" * 40)["type"] == "updated"

    def test_custom_quota(self, session, add_entry):
        a, b = add_entry(chars=400), add_entry(chars=400)
        s = session(max_mutations=1)
        s.execute("update", id=a.id, content="q" * 400)
        assert s.execute("update", id=b.id, content="q" * 400)["error_code"] == "quota_exceeded"


class TestSessionSetup:
    def test_begin_measures_mass(self, session, add_entry):
        add_entry(chars=400)
        add_entry(chars=800)
        s = session()
        assert s.pre_session_mass == 300
        assert s.threshold == 0.75

    def test_uses_owner_threshold(self, storage, owner_id, session):
        storage.set_retention_threshold(owner_id, 0.4)
        assert session().threshold == 0.4

    def test_explicit_session_id_and_mass(self, session):
        s = session(session_id="trigger-42", pre_session_mass=1000)
        assert s.session_id == "trigger-42"
        assert s.pre_session_mass == 1000

    def test_constructor_override_threshold(self, storage, owner_id):
        s = RefinementSession(storage, owner_id, pre_session_mass=10, retention_threshold=0.9)
        assert s.threshold == 0.9
        assert s.session_id
