"""Agent runtimes that turn an ``ExecutionSpec`` into a stream of messages."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
from pathlib import Path
import posixpath
from typing import Any, AsyncIterator, Protocol, Sequence

from capsule.agent.cancellation import CancellationToken
from capsule.errors import CapsuleError, ValidationError
from capsule.models.agent import (
    AgentMessage,
    AssistantText,
    ExecutionSpec,
    RunComplete,
    RunError,
    ToolResult,
    ToolUse,
)
from capsule.providers.llm.litellm_client import LiteLLMClient
from capsule.sessions import SandboxHandle

logger = logging.getLogger(__name__)

BASE_SYSTEM_PROMPT = (
    "You are an autonomous coding agent editing a project inside a sandbox. "
    "Use the tools to inspect and change files, run commands to verify your "
    "work, and reply without tool calls once the task is done."
)

_MAX_TOOL_OUTPUT = 30_000

TOOLS: list[dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read a UTF-8 text file relative to the project root.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Create or overwrite a file relative to the project root.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string"},
                    "content": {"type": "string"},
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": "List the entries of a directory relative to the project root.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": "Run a shell command from the project root.",
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {"type": "string"},
                    "timeout_s": {"type": "integer"},
                },
                "required": ["command"],
            },
        },
    },
]


class AgentRuntime(Protocol):
    def check(self, spec: ExecutionSpec) -> None:
        ...

    def stream(
        self,
        spec: ExecutionSpec,
        sandbox: SandboxHandle,
        image_paths: Sequence[str],
        cancel: CancellationToken,
    ) -> AsyncIterator[AgentMessage]:
        ...


class LiteLLMAgentRuntime(AgentRuntime):
    def __init__(self, client: LiteLLMClient, max_turns: int = 40) -> None:
        self._client = client
        self._max_turns = max_turns

    def check(self, spec: ExecutionSpec) -> None:
        self._client.resolve(spec.model)

    async def stream(
        self,
        spec: ExecutionSpec,
        sandbox: SandboxHandle,
        image_paths: Sequence[str],
        cancel: CancellationToken,
    ) -> AsyncIterator[AgentMessage]:
        params = self._client.resolve(spec.model)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": _system_prompt(spec)},
            {"role": "user", "content": _user_content(spec.prompt, image_paths)},
        ]
        tools = _ToolBox(sandbox, spec.cwd)
        for turn in range(1, self._max_turns + 1):
            if cancel.cancelled:
                return
            response = await self._client.acompletion(params, messages, tools=TOOLS)
            reply = response.choices[0].message
            text = reply.content or ""
            tool_calls = list(getattr(reply, "tool_calls", None) or [])
            if text:
                yield AssistantText(text=text)
            if not tool_calls:
                yield RunComplete(result=text, turns=turn)
                return
            messages.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in tool_calls
                    ],
                }
            )
            for call in tool_calls:
                if cancel.cancelled:
                    return
                arguments = _parse_arguments(call.function.arguments)
                yield ToolUse(tool_use_id=call.id, name=call.function.name, input=arguments)
                result = await tools.call(call.id, call.function.name, arguments)
                yield result
                messages.append(
                    {"role": "tool", "tool_call_id": call.id, "content": result.content}
                )
        yield RunError(message=f"Agent stopped after {self._max_turns} turns")


class _ToolBox:
    def __init__(self, sandbox: SandboxHandle, cwd: str) -> None:
        self._sandbox = sandbox
        self._cwd = cwd

    async def call(self, call_id: str, name: str, arguments: dict[str, Any]) -> ToolResult:
        changed_path = None
        try:
            if name == "read_file":
                data = await asyncio.to_thread(
                    self._sandbox.read_file, self._path(arguments.get("path"))
                )
                content = data.decode("utf-8", errors="replace")
            elif name == "write_file":
                relative = self._relative(arguments.get("path"))
                payload = str(arguments.get("content", "")).encode("utf-8")
                await asyncio.to_thread(
                    self._sandbox.write_file, posixpath.join(self._cwd, relative), payload
                )
                content = f"Wrote {len(payload)} bytes to {relative}"
                changed_path = relative
            elif name == "list_files":
                entries = await asyncio.to_thread(
                    self._sandbox.list_files, self._path(arguments.get("path") or ".")
                )
                content = "\n".join(
                    f"{entry.name}/" if entry.is_dir else entry.name for entry in entries
                )
            elif name == "run_command":
                result = await asyncio.to_thread(
                    self._sandbox.exec,
                    ["bash", "-lc", str(arguments.get("command", ""))],
                    self._cwd,
                    None,
                    int(arguments.get("timeout_s") or 120),
                )
                content = f"exit code {result.exit_code}\n{result.stdout}{result.stderr}"
            else:
                return ToolResult(
                    tool_use_id=call_id,
                    name=name,
                    content=f"Unknown tool: {name}",
                    is_error=True,
                )
        except (CapsuleError, OSError) as exc:
            return ToolResult(tool_use_id=call_id, name=name, content=str(exc), is_error=True)
        return ToolResult(
            tool_use_id=call_id,
            name=name,
            content=content[:_MAX_TOOL_OUTPUT],
            changed_path=changed_path,
        )

    def _relative(self, raw: Any) -> str:
        if not isinstance(raw, str) or not raw.strip():
            raise ValidationError("path is required", field="path")
        normalized = posixpath.normpath(raw.strip())
        if normalized.startswith(self._cwd.rstrip("/") + "/"):
            normalized = normalized[len(self._cwd.rstrip("/")) + 1:]
        if posixpath.isabs(normalized) or normalized == ".." or normalized.startswith("../"):
            raise ValidationError(f"Path escapes the project: {raw}", field="path")
        return normalized

    def _path(self, raw: Any) -> str:
        return posixpath.join(self._cwd, self._relative(raw))


def _system_prompt(spec: ExecutionSpec) -> str:
    if spec.system_prompt:
        return f"{BASE_SYSTEM_PROMPT}\n\n{spec.system_prompt}"
    return BASE_SYSTEM_PROMPT


def _user_content(prompt: str, image_paths: Sequence[str]) -> Any:
    if not image_paths:
        return prompt
    parts: list[dict[str, Any]] = [{"type": "text", "text": prompt}]
    for image_path in image_paths:
        mime = mimetypes.guess_type(image_path)[0] or "image/png"
        encoded = base64.b64encode(Path(image_path).read_bytes()).decode("ascii")
        parts.append(
            {"type": "image_url", "image_url": {"url": f"data:{mime};base64,{encoded}"}}
        )
    return parts


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %r", raw)
        return {}
    return value if isinstance(value, dict) else {}
