"""Data models for agent runs and the messages they stream."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterable, Optional, Union

from capsule.errors import ValidationError


@dataclass(frozen=True)
class ExecutionSpec:
    prompt: str
    cwd: str
    system_prompt: Optional[str] = None
    model: Optional[str] = None
    image_urls: tuple[str, ...] = ()
    with_deploy_hook: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.prompt, str) or not self.prompt.strip():
            raise ValidationError("prompt is required", field="prompt")
        if not self.cwd:
            raise ValidationError("cwd must not be empty", field="cwd")


class RunState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


class MessageKind(str, Enum):
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    ASSISTANT_TEXT = "assistant_text"
    RUN_COMPLETE = "run_complete"
    RUN_ERROR = "run_error"


@dataclass(frozen=True)
class _Message:
    kind: ClassVar[MessageKind]

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["kind"] = self.kind.value
        return payload


@dataclass(frozen=True)
class ToolUse(_Message):
    kind: ClassVar[MessageKind] = MessageKind.TOOL_USE
    tool_use_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult(_Message):
    kind: ClassVar[MessageKind] = MessageKind.TOOL_RESULT
    tool_use_id: str
    name: str
    content: str
    is_error: bool = False
    changed_path: Optional[str] = None


@dataclass(frozen=True)
class AssistantText(_Message):
    kind: ClassVar[MessageKind] = MessageKind.ASSISTANT_TEXT
    text: str


@dataclass(frozen=True)
class RunComplete(_Message):
    kind: ClassVar[MessageKind] = MessageKind.RUN_COMPLETE
    result: str = ""
    turns: int = 0


@dataclass(frozen=True)
class RunError(_Message):
    kind: ClassVar[MessageKind] = MessageKind.RUN_ERROR
    message: str
    transient: bool = False


AgentMessage = Union[ToolUse, ToolResult, AssistantText, RunComplete, RunError]


def messages_of_kind(
    messages: Iterable[AgentMessage], *kinds: MessageKind
) -> list[AgentMessage]:
    wanted = set(kinds)
    return [message for message in messages if message.kind in wanted]


@dataclass
class ExecutorResult:
    success: bool
    state: RunState
    messages: list[AgentMessage] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "state": self.state.value,
            "messages": [message.to_dict() for message in self.messages],
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.error_type is not None:
            payload["errorType"] = self.error_type
        return payload
