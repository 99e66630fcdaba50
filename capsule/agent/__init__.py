"""Agent run resolution, execution and session hooks."""

from capsule.agent.args import parse_args, spec_from_request
from capsule.agent.cancellation import CancellationToken
from capsule.agent.executor import AgentExecutor
from capsule.agent.hooks import (
    HookOutcome,
    HookPipeline,
    HookResult,
    SessionEvent,
    SessionEventName,
    create_deploy_hook,
)
from capsule.agent.runtime import AgentRuntime, LiteLLMAgentRuntime

__all__ = [
    "AgentExecutor",
    "AgentRuntime",
    "CancellationToken",
    "HookOutcome",
    "HookPipeline",
    "HookResult",
    "LiteLLMAgentRuntime",
    "SessionEvent",
    "SessionEventName",
    "create_deploy_hook",
    "parse_args",
    "spec_from_request",
]
