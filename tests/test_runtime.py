from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from capsule.agent.cancellation import CancellationToken
from capsule.agent.runtime import LiteLLMAgentRuntime
from capsule.models.agent import AssistantText, ExecutionSpec, RunComplete, RunError, ToolResult, ToolUse

CWD = "/home/user/app"


def _reply(text=None, calls=()):
    tool_calls = [
        SimpleNamespace(
            id=call_id,
            function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
        )
        for call_id, name, arguments in calls
    ]
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text, tool_calls=tool_calls))]
    )


class FakeClient:
    def __init__(self, *replies) -> None:
        self._replies = list(replies)
        self.requests: list[list[dict]] = []

    def resolve(self, model):
        return {"model": model or "fake", "temperature": 0.0, "max_tokens": 10}

    async def acompletion(self, params, messages, **overrides):
        self.requests.append(list(messages))
        return self._replies.pop(0)


async def _collect(runtime, handle, spec=None):
    spec = spec or ExecutionSpec(prompt="make it blue", cwd=CWD, system_prompt="Be brief.")
    return [message async for message in runtime.stream(spec, handle, [], CancellationToken())]


@pytest.mark.asyncio
async def test_tool_loop_writes_and_reads(provider, sessions, sandbox_id):
    client = FakeClient(
        _reply("Editing", [("c1", "write_file", {"path": "App.tsx", "content": "blue"})]),
        _reply(None, [("c2", "read_file", {"path": f"{CWD}/App.tsx"})]),
        _reply("All done"),
    )

    messages = await _collect(LiteLLMAgentRuntime(client), sessions.connect(sandbox_id))

    assert [type(message) for message in messages] == [
        AssistantText,
        ToolUse,
        ToolResult,
        ToolUse,
        ToolResult,
        AssistantText,
        RunComplete,
    ]
    assert messages[2].changed_path == "App.tsx"
    assert messages[4].content == "blue"
    assert messages[-1].turns == 3
    assert provider.read_file(sandbox_id, f"{CWD}/App.tsx") == b"blue"
    assert client.requests[0][0]["content"].endswith("Be brief.")


@pytest.mark.asyncio
async def test_paths_outside_project_are_rejected(sessions, sandbox_id):
    client = FakeClient(
        _reply(None, [("c1", "read_file", {"path": "../../etc/passwd"})]),
        _reply(None, [("c2", "launch_rockets", {})]),
        _reply("Stopped"),
    )

    messages = await _collect(LiteLLMAgentRuntime(client), sessions.connect(sandbox_id))

    results = [message for message in messages if isinstance(message, ToolResult)]
    assert all(result.is_error for result in results)
    assert "escapes" in results[0].content
    assert results[1].content == "Unknown tool: launch_rockets"


@pytest.mark.asyncio
async def test_turn_limit(sessions, sandbox_id):
    client = FakeClient(*[_reply(None, [(f"c{i}", "list_files", {})]) for i in range(2)])

    messages = await _collect(LiteLLMAgentRuntime(client, max_turns=2), sessions.connect(sandbox_id))

    assert isinstance(messages[-1], RunError)
    assert "2 turns" in messages[-1].message
