# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/services/test_tool_bridge.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Standard
import asyncio

# Third-Party
import pytest

# First-Party
from mcpguard.services.tool_bridge import ToolBridge


@pytest.mark.asyncio
async def test_forwards_known_tool(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(), echo_schema, fake_server)
    response = await bridge.call("echo", {"msg": "hi"})
    assert response == {"ok": True, "result": {"echo": {"msg": "hi"}}}
    assert fake_server.calls == [("echo", {"msg": "hi"})]
    record = bridge.records[0]
    assert (record.sequence_number, record.outcome, record.result) == (1, "result", {"echo": {"msg": "hi"}})


@pytest.mark.asyncio
async def test_unknown_tool_is_denied_and_consumes_budget(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(max_tool_calls=1), echo_schema, fake_server)
    response = await bridge.call("delete_everything", {})
    assert response["ok"] is False
    assert response["error"]["kind"] == "UnknownTool"
    assert fake_server.calls == []
    assert bridge.calls_consumed == 1

    response = await bridge.call("echo", {})
    assert response["error"]["kind"] == "CallBudgetExceeded"


@pytest.mark.asyncio
async def test_budget_denials_are_logged_not_counted(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(max_tool_calls=2), echo_schema, fake_server)
    outcomes = [await bridge.call("echo", {"i": i}) for i in range(4)]
    assert [o["ok"] for o in outcomes] == [True, True, False, False]
    assert len(fake_server.calls) == 2
    assert bridge.calls_consumed == 2
    assert [r.sequence_number for r in bridge.records] == [1, 2, 3, 4]
    assert [r.counts_against_budget for r in bridge.records] == [True, True, False, False]


@pytest.mark.asyncio
async def test_schema_checked_before_budget(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(max_tool_calls=1), echo_schema, fake_server)
    assert (await bridge.call("echo", {}))["ok"] is True
    assert (await bridge.call("nope", {}))["error"]["kind"] == "UnknownTool"
    assert (await bridge.call("echo", {}))["error"]["kind"] == "CallBudgetExceeded"
    assert bridge.calls_consumed == 1
    assert fake_server.calls == [("echo", {})]
    assert [r.counts_against_budget for r in bridge.records] == [True, False, False]


@pytest.mark.asyncio
async def test_zero_budget_still_reports_unknown_names(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(max_tool_calls=0), echo_schema, fake_server)
    assert (await bridge.call("nope", {}))["error"]["kind"] == "UnknownTool"
    assert (await bridge.call("echo", {}))["error"]["kind"] == "CallBudgetExceeded"
    assert bridge.calls_consumed == 0
    assert fake_server.calls == []


@pytest.mark.asyncio
async def test_concurrent_calls_cannot_overrun_budget(make_policy, echo_schema, tool_server_factory):
    server = tool_server_factory({"echo": lambda args: args})
    bridge = ToolBridge("r1", make_policy(max_tool_calls=3), echo_schema, server)
    results = await asyncio.gather(*(bridge.call("echo", {"i": i}) for i in range(10)))
    assert sum(1 for r in results if r["ok"]) == 3
    assert len(server.calls) == 3


@pytest.mark.asyncio
async def test_tool_failure_returned_to_script(make_policy, echo_schema, tool_server_factory, broken_tool):
    server = tool_server_factory({"echo": broken_tool})
    bridge = ToolBridge("r1", make_policy(), echo_schema, server)
    response = await bridge.call("echo", {})
    assert response == {"ok": False, "error": {"kind": "ToolError", "message": "backend unavailable"}}
    assert bridge.records[0].outcome == "error"


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_tool_error(make_policy, echo_schema, tool_server_factory):
    def explode(args):
        raise KeyError("boom")

    bridge = ToolBridge("r1", make_policy(), echo_schema, tool_server_factory({"echo": explode}))
    response = await bridge.call("echo", {})
    assert response["error"]["kind"] == "ToolError"
    assert "boom" in response["error"]["message"]


@pytest.mark.asyncio
async def test_non_object_arguments_rejected(make_policy, echo_schema, fake_server):
    bridge = ToolBridge("r1", make_policy(), echo_schema, fake_server)
    response = await bridge.call("echo", [1, 2])
    assert response["error"]["kind"] == "ToolError"
    assert fake_server.calls == []
    assert (await bridge.call("echo", None))["ok"] is True


@pytest.mark.asyncio
async def test_missing_connection(make_policy, echo_schema):
    bridge = ToolBridge("r1", make_policy(), echo_schema, None)
    response = await bridge.call("echo", {})
    assert response["error"]["kind"] == "ToolError"
