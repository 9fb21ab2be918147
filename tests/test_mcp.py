"""Tests for the refinement MCP server."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mcp.types import TextContent

import refinery.mcp.server as srv
from refinery.mcp.handlers import handle_refinement_begin, validate_refinement
from refinery.mcp.server import (
    call_tool,
    configure,
    get_state,
    handle_tool_error,
    list_tools,
    main,
    validate_tool_input,
)


@pytest.fixture
def state(storage, owner_id):
    old = srv._state
    configured = configure(owner_id, storage)
    yield configured
    srv._state = old


async def _call(name, arguments):
    [content] = await call_tool(name, arguments)
    assert isinstance(content, TextContent)
    return content.text


async def _call_json(name, arguments):
    return json.loads(await _call(name, arguments))


class TestListTools:
    @pytest.mark.asyncio
    async def test_lists_both_tools(self):
        tools = await list_tools()
        names = [t.name for t in tools]
        assert names == ["refinement_begin", "refinement"]

    @pytest.mark.asyncio
    async def test_refinement_schema(self):
        tools = {t.name: t for t in await list_tools()}
        schema = tools["refinement"].inputSchema
        assert schema["required"] == ["session_id", "operation"]
        assert schema["properties"]["operation"]["enum"] == [
            "search",
            "consolidate",
            "update",
            "delete",
            "protect",
            "complete",
        ]


class TestSessionFlow:
    @pytest.mark.asyncio
    async def test_begin_returns_ledger(self, state, add_entry):
        entry = add_entry(chars=400)
        add_entry("Refinement session: old", kind="journal")

        started = await _call_json("refinement_begin", {})

        assert started["type"] == "session_started"
        assert started["pre_session_mass"] == 100
        assert started["retention_threshold"] == 0.75
        assert started["max_mutations"] == 10
        assert started["count"] == 1
        assert started["ledger"][0]["id"] == entry.id
        assert state.session.session_id == started["session_id"]

    @pytest.mark.asyncio
    async def test_full_session(self, state, store, add_entry):
        a = add_entry(chars=400)
        started = await _call_json("refinement_begin", {})
        sid = started["session_id"]

        found = await _call_json(
            "refinement", {"session_id": sid, "operation": "search", "query": "memory"}
        )
        updated = await _call_json(
            "refinement",
            {"session_id": sid, "operation": "update", "id": str(a.id), "content": "n" * 400},
        )
        done = await _call_json(
            "refinement", {"session_id": sid, "operation": "complete", "summary": "Reworded"}
        )
        late = await _call_json(
            "refinement", {"session_id": sid, "operation": "search", "query": "memory"}
        )

        assert found["count"] == 1
        assert updated["type"] == "updated"
        assert done["type"] == "completed"
        assert late["error_code"] == "terminated"
        assert store.get(a.id).content == "n" * 400

    @pytest.mark.asyncio
    async def test_rollback_reported_to_triggering_call(self, state, store, add_entry):
        a = add_entry(chars=400)
        add_entry(chars=400)
        sid = (await _call_json("refinement_begin", {}))["session_id"]

        result = await _call_json(
            "refinement", {"session_id": sid, "operation": "delete", "id": a.id}
        )

        assert result["type"] == "rolled_back"
        assert store.find_active(a.id) is not None

    @pytest.mark.asyncio
    async def test_unknown_session(self, state):
        result = await _call_json(
            "refinement", {"session_id": "nope", "operation": "search", "query": "x"}
        )
        assert result["error_code"] == "unknown_session"
        assert result["next_operation"] == "refinement_begin"

    @pytest.mark.asyncio
    async def test_unknown_session_names_open_session(self, state):
        sid = (await _call_json("refinement_begin", {}))["session_id"]
        result = await _call_json(
            "refinement", {"session_id": "nope", "operation": "search", "query": "x"}
        )
        assert result["error_code"] == "unknown_session"
        assert result["session_id"] == sid
        assert "next_operation" not in result

    @pytest.mark.asyncio
    async def test_unknown_operation_is_structured(self, state):
        sid = (await _call_json("refinement_begin", {}))["session_id"]
        result = await _call_json("refinement", {"session_id": sid, "operation": "shred"})
        assert result["error_code"] == "invalid_operation"
        assert "allowed_operations" in result


class TestOneSessionPerRun:
    @pytest.mark.asyncio
    async def test_begin_refused_while_session_open(self, state, add_entry):
        add_entry(chars=400)
        sid = (await _call_json("refinement_begin", {}))["session_id"]

        again = await _call_json("refinement_begin", {})

        assert again["type"] == "error"
        assert again["error_code"] == "session_open"
        assert again["session_id"] == sid
        assert again["next_operation"] == "complete"
        assert state.session.session_id == sid

    @pytest.mark.asyncio
    async def test_begin_refused_after_session_finished(self, state):
        sid = (await _call_json("refinement_begin", {}))["session_id"]
        await _call_json("refinement", {"session_id": sid, "operation": "complete", "summary": "ok"})

        again = await _call_json("refinement_begin", {})

        assert again["error_code"] == "session_finished"
        assert again["session_id"] == sid

    @pytest.mark.asyncio
    async def test_repeated_begin_cannot_dodge_breaker(self, state, store, add_entry):
        entries = [add_entry(chars=400) for _ in range(10)]
        results = []
        for entry in entries[:7]:
            await _call("refinement_begin", {})
            sid = state.session.session_id
            result = await _call_json(
                "refinement", {"session_id": sid, "operation": "delete", "id": entry.id}
            )
            results.append(result["type"])
            if result["type"] != "deleted":
                break

        assert results == ["deleted", "deleted", "rolled_back"]
        assert store.total_mass() == 1000
        assert state.session.terminated is True

    @pytest.mark.asyncio
    async def test_repeated_begin_cannot_reset_quota(self, state, add_entry):
        a = add_entry(chars=400)
        sid = (await _call_json("refinement_begin", {}))["session_id"]
        for i in range(10):
            result = await _call_json(
                "refinement",
                {"session_id": sid, "operation": "update", "id": a.id, "content": str(i) * 400},
            )
            assert result["type"] == "updated"

        assert (await _call_json("refinement_begin", {}))["error_code"] == "session_open"
        over = await _call_json(
            "refinement",
            {"session_id": sid, "operation": "update", "id": a.id, "content": "z" * 400},
        )

        assert over["error_code"] == "quota_exceeded"
        assert state.session.mutation_count == 10

    @pytest.mark.asyncio
    async def test_scheduler_supplied_session(self, storage, owner_id, store, add_entry):
        a = add_entry(chars=400)
        add_entry(chars=400)
        old = srv._state
        try:
            configure(owner_id, storage, pre_session_mass=250, session_id="job-42")
            started = await _call_json("refinement_begin", {})
            result = await _call_json(
                "refinement", {"session_id": "job-42", "operation": "delete", "id": a.id}
            )
        finally:
            srv._state = old

        assert started["session_id"] == "job-42"
        assert started["pre_session_mass"] == 250
        assert result["type"] == "rolled_back"
        assert store.total_mass() == 200


class TestStructuredSessionErrors:
    @pytest.fixture
    def sid(self, state):
        return json.loads(handle_refinement_begin({}, state))["session_id"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["", "   ", None])
    async def test_blank_operation(self, sid, operation):
        result = await _call_json("refinement", {"session_id": sid, "operation": operation})
        assert result["error_code"] == "missing_parameter"
        assert result["required_parameter"] == "operation"
        assert "allowed_operations" in result

    @pytest.mark.asyncio
    async def test_missing_operation(self, sid):
        result = await _call_json("refinement", {"session_id": sid})
        assert result["error_code"] == "missing_parameter"
        assert result["required_parameter"] == "operation"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params, parameter",
        [
            ({"operation": "update", "id": 1, "content": 5}, "content"),
            ({"operation": "search", "query": 5}, "query"),
            ({"operation": "complete", "summary": 5}, "summary"),
            ({"operation": "delete", "id": True}, "id"),
            ({"operation": "delete", "id": 1.5}, "id"),
            ({"operation": "consolidate", "ids": 5, "content": "m"}, "ids"),
        ],
    )
    async def test_bad_parameter_types(self, sid, add_entry, params, parameter):
        add_entry(chars=400)
        result = await _call_json("refinement", {"session_id": sid, **params})
        assert result["type"] == "error"
        assert result["error_code"] == "invalid_parameter"
        assert result["parameter"] == parameter

    @pytest.mark.asyncio
    async def test_terminated_session_ignores_blank_operation(self, sid):
        await _call_json("refinement", {"session_id": sid, "operation": "complete", "summary": "ok"})
        result = await _call_json("refinement", {"session_id": sid, "operation": ""})
        assert result["error_code"] == "terminated"

    @pytest.mark.asyncio
    async def test_control_characters_stripped_by_session(self, state, store, add_entry):
        a = add_entry("hello world")
        sid = (await _call_json("refinement_begin", {}))["session_id"]
        result = await _call_json(
            "refinement",
            {"session_id": sid, "operation": "update", "id": a.id, "content": "hel\x00lo world"},
        )
        assert result["type"] == "updated"
        assert store.get(a.id).content == "hello world"


class TestValidation:
    @pytest.mark.asyncio
    async def test_missing_session_id(self, state):
        text = await _call("refinement", {"operation": "search"})
        assert text.startswith("Invalid input:")
        assert "session_id" in text

    @pytest.mark.asyncio
    async def test_unknown_tool(self, state):
        text = await _call("memory_wipe", {})
        assert text == "Invalid input: Unknown tool: memory_wipe"

    def test_validate_tool_input_rejects_non_dict(self):
        with pytest.raises(ValueError, match="Invalid input"):
            validate_tool_input("refinement", ["not", "a", "dict"])

    def test_passes_session_parameters_through(self):
        args = {"session_id": "s", "operation": "", "id": True, "content": 5}
        assert validate_refinement(args) == args

    def test_drops_unknown_arguments(self):
        clean = validate_refinement({"session_id": "s", "operation": "search", "evil": 1})
        assert "evil" not in clean


class TestHandleToolError:
    def test_value_error_passes_message(self):
        [c] = handle_tool_error(ValueError("Invalid input: x"), "refinement", {})
        assert c.text == "Invalid input: x"

    def test_connection_error(self):
        [c] = handle_tool_error(ConnectionError("db"), "refinement", {})
        assert c.text == "Service temporarily unavailable"

    def test_unknown_error_is_generic(self):
        [c] = handle_tool_error(RuntimeError("secret path /x"), "refinement", {"a": 1})
        assert c.text == "Internal server error"

    @pytest.mark.asyncio
    async def test_handler_crash_is_contained(self, state):
        with patch.dict(srv.HANDLERS, {"refinement_begin": MagicMock(side_effect=RuntimeError)}):
            text = await _call("refinement_begin", {})
        assert text == "Internal server error"


class TestStateAndMain:
    def test_get_state_creates_default(self, refinery_home):
        old = srv._state
        srv._state = None
        try:
            state = get_state()
            assert state.owner_id == "default"
            assert state.storage.db_path.parent == refinery_home.resolve()
            assert get_state() is state
        finally:
            srv._state = old

    def test_main_configures_and_runs(self, storage):
        old = srv._state
        try:
            with patch.object(srv, "run_server", new=AsyncMock()) as run:
                main(owner_id="agent-7", storage=storage, pre_session_mass=900, session_id="job-1")
            run.assert_awaited_once()
            assert srv._state.owner_id == "agent-7"
            assert srv._state.storage is storage
            assert srv._state.pre_session_mass == 900
            assert srv._state.session_id == "job-1"
            assert srv._state.session is None
        finally:
            srv._state = old
