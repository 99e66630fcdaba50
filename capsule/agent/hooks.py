"""Sequential session hooks invoked at run lifecycle events."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
import logging
import shlex
from typing import Any, Awaitable, Callable, Optional, Sequence

from capsule.agent.cancellation import CancellationToken
from capsule.providers.sandbox.base import SandboxProvider

logger = logging.getLogger(__name__)


class HookResult(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class SessionEventName(str, Enum):
    SESSION_END = "SessionEnd"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class SessionEvent:
    name: SessionEventName
    cwd: str


SessionHook = Callable[
    [SessionEvent, Optional[str], CancellationToken], Awaitable[HookResult]
]


@dataclass(frozen=True)
class HookOutcome:
    continue_session: bool
    ran: int
    failures: tuple[str, ...] = ()


def _coerce(result: Any) -> HookResult:
    if isinstance(result, HookResult):
        return result
    if result is False:
        return HookResult.STOP
    return HookResult.CONTINUE


class HookPipeline:
    """Runs hooks one after another with a shared cancellation token.

    A failing hook is logged and counted as ``CONTINUE``. When the token is
    cancelled mid-pipeline the remaining hooks are skipped, except for the
    ``Cancelled`` event whose hooks exist to observe cancellation.
    """

    def __init__(self, cancel: CancellationToken | None = None) -> None:
        self._cancel = cancel or CancellationToken()

    @property
    def cancel(self) -> CancellationToken:
        return self._cancel

    async def run(
        self,
        event: SessionEvent,
        hooks: Sequence[SessionHook],
        hook_run_id: str | None = None,
    ) -> HookOutcome:
        continue_session = True
        failures: list[str] = []
        ran = 0
        for index, hook in enumerate(hooks):
            if self._cancel.cancelled and event.name != SessionEventName.CANCELLED:
                logger.info(
                    "Run cancelled; skipping %d remaining %s hooks",
                    len(hooks) - index,
                    event.name.value,
                )
                break
            name = getattr(hook, "__name__", repr(hook))
            ran += 1
            try:
                result = _coerce(await hook(event, hook_run_id, self._cancel))
            except Exception as exc:
                logger.exception("%s hook %s failed", event.name.value, name)
                failures.append(f"{name}: {exc}")
                continue
            if result == HookResult.STOP:
                continue_session = False
        return HookOutcome(
            continue_session=continue_session, ran=ran, failures=tuple(failures)
        )


def create_deploy_hook(
    provider: SandboxProvider,
    sandbox_id: str,
    command: str = "npx convex deploy",
    timeout_s: int = 300,
) -> SessionHook:
    """Hook that pushes backend changes made during the session."""

    async def deploy_backend(
        event: SessionEvent, hook_run_id: str | None, cancel: CancellationToken
    ) -> HookResult:
        if cancel.cancelled:
            return HookResult.CONTINUE
        logger.info("Running deploy command in %s: %s", event.cwd, command)
        result = await asyncio.to_thread(
            provider.exec,
            sandbox_id,
            shlex.split(command),
            event.cwd,
            None,
            timeout_s,
        )
        if result.ok:
            logger.info("Deploy completed in %d ms", result.duration_ms)
        else:
            logger.error(
                "Deploy failed with exit code %d: %s",
                result.exit_code,
                result.stderr.strip(),
            )
        return HookResult.CONTINUE

    return deploy_backend
