"""Drive one agent run against a sandbox from start to a terminal state."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import inspect
import logging
from pathlib import Path
import shutil
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, Union
import uuid

from capsule.agent.cancellation import CancellationToken
from capsule.agent.env import load_env_file
from capsule.agent.hooks import (
    HookOutcome,
    HookPipeline,
    SessionEvent,
    SessionEventName,
    SessionHook,
    create_deploy_hook,
)
from capsule.agent.images import download_images
from capsule.agent.runtime import AgentRuntime
from capsule.config import Settings
from capsule.errors import (
    CapsuleError,
    FatalAgentError,
    HeartbeatTimeoutError,
    TransientNetworkError,
)
from capsule.models.agent import (
    AgentMessage,
    ExecutionSpec,
    ExecutorResult,
    RunComplete,
    RunError,
    RunState,
    ToolResult,
)
from capsule.models.events import FileChangeEvent, FileChangeKind
from capsule.models.sandbox import Liveness
from capsule.sessions import SandboxHandle, SandboxSessionManager
from capsule.streaming.broadcaster import FileChangeBroadcaster

logger = logging.getLogger(__name__)

MessageConsumer = Callable[[AgentMessage], Union[None, Awaitable[None]]]
HeartbeatCallback = Callable[[int, Liveness], None]


@dataclass
class _RunContext:
    run_id: str
    spec: ExecutionSpec
    cancel: CancellationToken
    state: RunState = RunState.IDLE
    messages: list[AgentMessage] = field(default_factory=list)
    forwarding: bool = True
    last_activity: float = 0.0
    ticks: int = 0


@dataclass
class _StreamOutcome:
    complete: Optional[RunComplete] = None
    error: Optional[RunError] = None


class AgentExecutor:
    """Runs an ``ExecutionSpec`` through an ``AgentRuntime``.

    Each run moves ``IDLE -> STARTING -> RUNNING`` and ends in exactly one of
    ``COMPLETED``, ``FAILED`` or ``CANCELLED``. While running, a heartbeat
    probes the sandbox every ``heartbeat_interval_s``; when neither a message
    nor a successful probe has been seen for
    ``heartbeat_interval_s * missed_ticks_threshold`` the run fails with
    ``HeartbeatTimeoutError``.

    A successful liveness check counts as activity, so a silent agent in a sandbox
    that stays reachable is never timed out by the heartbeat; only a dead or
    unreachable sandbox ends a quiet run.
    """

    def __init__(
        self,
        sessions: SandboxSessionManager,
        runtime: AgentRuntime,
        settings: Settings,
        broadcaster: FileChangeBroadcaster | None = None,
        retry_backoff_s: float = 1.0,
    ) -> None:
        self._sessions = sessions
        self._runtime = runtime
        self._settings = settings
        self._broadcaster = broadcaster
        self._retry_backoff_s = retry_backoff_s

    async def run(
        self,
        spec: ExecutionSpec,
        sandbox_id: str,
        *,
        consumer: MessageConsumer | None = None,
        hooks: Sequence[SessionHook] = (),
        cancel: CancellationToken | None = None,
        project_id: str | None = None,
        on_heartbeat: HeartbeatCallback | None = None,
        run_id: str | None = None,
    ) -> ExecutorResult:
        external = cancel or CancellationToken()
        token = CancellationToken()
        ctx = _RunContext(run_id=run_id or uuid.uuid4().hex[:12], spec=spec, cancel=token)
        hooks = list(hooks)
        if spec.with_deploy_hook:
            hooks.append(
                create_deploy_hook(
                    self._sessions.provider, sandbox_id, self._settings.deploy_command
                )
            )

        logger.info("Run %s starting in sandbox %s", ctx.run_id, sandbox_id)
        ctx.state = RunState.STARTING
        try:
            if external.cancelled:
                token.cancel(external.reason or "cancelled")
                return await self._finish_cancelled(ctx, hooks)
            try:
                handle, image_paths = await self._start(spec, sandbox_id, ctx.run_id)
            except Exception as exc:
                return self._fail(ctx, exc)
            return await self._run_stream(
                ctx, external, handle, image_paths, consumer, hooks, project_id, on_heartbeat
            )
        finally:
            shutil.rmtree(Path(self._settings.images_dir) / ctx.run_id, ignore_errors=True)

    async def _start(
        self, spec: ExecutionSpec, sandbox_id: str, run_id: str
    ) -> tuple[SandboxHandle, list[str]]:
        self._runtime.check(spec)
        handle = await asyncio.to_thread(self._sessions.connect, sandbox_id)
        image_paths: list[str] = []
        if spec.image_urls:
            image_paths = await asyncio.to_thread(
                download_images, spec.image_urls, self._settings.images_dir, run_id
            )
        await asyncio.to_thread(load_env_file, self._settings.env_path)
        return handle, image_paths

    async def _run_stream(
        self,
        ctx: _RunContext,
        external: CancellationToken,
        handle: SandboxHandle,
        image_paths: Sequence[str],
        consumer: MessageConsumer | None,
        hooks: Sequence[SessionHook],
        project_id: str | None,
        on_heartbeat: HeartbeatCallback | None,
    ) -> ExecutorResult:
        loop = asyncio.get_running_loop()
        ctx.state = RunState.RUNNING
        ctx.last_activity = loop.time()
        cancel_signal = asyncio.Event()

        def _on_external_cancel() -> None:
            ctx.cancel.cancel(external.reason or "cancelled")
            loop.call_soon_threadsafe(cancel_signal.set)

        external.add_callback(_on_external_cancel)
        stream_task = asyncio.create_task(
            self._consume(ctx, handle, image_paths, consumer, project_id)
        )
        heartbeat_task = asyncio.create_task(
            self._heartbeat(ctx, handle.sandbox_id, on_heartbeat)
        )
        cancel_task = asyncio.create_task(cancel_signal.wait())
        try:
            done, _ = await asyncio.wait(
                {stream_task, heartbeat_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if stream_task in done:
                await self._stop_task(heartbeat_task)
                return await self._finish_stream(ctx, stream_task, hooks)
            ctx.forwarding = False
            if heartbeat_task in done:
                exc = heartbeat_task.exception() or FatalAgentError("Heartbeat stopped")
                ctx.cancel.cancel("heartbeat timeout")
                await self._stop_stream(stream_task)
                return self._fail(ctx, exc)
            logger.info("Run %s cancelled: %s", ctx.run_id, ctx.cancel.reason)
            await self._stop_task(heartbeat_task)
            await self._stop_stream(stream_task)
            return await self._finish_cancelled(ctx, hooks)
        finally:
            external.remove_callback(_on_external_cancel)
            for task in (heartbeat_task, cancel_task, stream_task):
                await self._stop_task(task)

    async def _finish_stream(
        self,
        ctx: _RunContext,
        stream_task: asyncio.Task,
        hooks: Sequence[SessionHook],
    ) -> ExecutorResult:
        exc = stream_task.exception()
        if exc is not None:
            return self._fail(ctx, exc)
        outcome: _StreamOutcome = stream_task.result()
        if outcome.error is not None:
            ctx.state = RunState.FAILED
            logger.error("Run %s failed: %s", ctx.run_id, outcome.error.message)
            return self._result(ctx, error=outcome.error.message, error_type="RunError")
        if outcome.complete is None:
            if ctx.cancel.cancelled:
                return await self._finish_cancelled(ctx, hooks)
            return self._fail(ctx, FatalAgentError("Agent stream ended without a result"))
        ctx.state = RunState.COMPLETED
        logger.info(
            "Run %s completed after %d turns with %d messages",
            ctx.run_id,
            outcome.complete.turns,
            len(ctx.messages),
        )
        hook_outcome = await self._run_hooks(ctx, SessionEventName.SESSION_END, hooks)
        if hook_outcome is not None and not hook_outcome.continue_session:
            logger.info("Run %s: a session hook asked to stop the session", ctx.run_id)
        return self._result(ctx)

    async def _finish_cancelled(
        self, ctx: _RunContext, hooks: Sequence[SessionHook]
    ) -> ExecutorResult:
        ctx.state = RunState.CANCELLED
        await self._run_hooks(ctx, SessionEventName.CANCELLED, hooks)
        return self._result(
            ctx, error=ctx.cancel.reason or "cancelled", error_type="Cancelled"
        )

    async def _run_hooks(
        self, ctx: _RunContext, name: SessionEventName, hooks: Sequence[SessionHook]
    ) -> HookOutcome | None:
        if not hooks:
            return None
        outcome = await HookPipeline(ctx.cancel).run(
            SessionEvent(name=name, cwd=ctx.spec.cwd), hooks, hook_run_id=ctx.run_id
        )
        if outcome.failures:
            logger.warning(
                "Run %s: %d %s hooks failed", ctx.run_id, len(outcome.failures), name.value
            )
        return outcome

    async def _consume(
        self,
        ctx: _RunContext,
        handle: SandboxHandle,
        image_paths: Sequence[str],
        consumer: MessageConsumer | None,
        project_id: str | None,
    ) -> _StreamOutcome:
        attempt = 0
        while True:
            stream = self._runtime.stream(ctx.spec, handle, image_paths, ctx.cancel)
            try:
                async for message in stream:
                    if isinstance(message, RunError) and message.transient:
                        raise TransientNetworkError(message.message)
                    if not await self._forward(ctx, message, consumer, project_id):
                        return _StreamOutcome()
                    if isinstance(message, RunComplete):
                        return _StreamOutcome(complete=message)
                    if isinstance(message, RunError):
                        return _StreamOutcome(error=message)
                return _StreamOutcome()
            except TransientNetworkError as exc:
                if attempt >= self._settings.stream_retry_limit or ctx.cancel.cancelled:
                    raise
                attempt += 1
                delay = self._retry_backoff_s * (2 ** (attempt - 1))
                logger.warning(
                    "Run %s stream interrupted (%s); retry %d/%d in %.1fs",
                    ctx.run_id,
                    exc,
                    attempt,
                    self._settings.stream_retry_limit,
                    delay,
                )
                await asyncio.sleep(delay)
            finally:
                await _aclose(stream)

    async def _forward(
        self,
        ctx: _RunContext,
        message: AgentMessage,
        consumer: MessageConsumer | None,
        project_id: str | None,
    ) -> bool:
        if not ctx.forwarding or ctx.cancel.cancelled:
            return False
        ctx.last_activity = asyncio.get_running_loop().time()
        ctx.messages.append(message)
        if consumer is not None:
            result = consumer(message)
            if inspect.isawaitable(result):
                await result
        if (
            isinstance(message, ToolResult)
            and message.changed_path
            and not message.is_error
            and project_id
            and self._broadcaster is not None
        ):
            self._broadcaster.broadcast(
                project_id,
                FileChangeEvent(
                    project_id=project_id,
                    kind=FileChangeKind.CHANGED,
                    path=message.changed_path,
                ),
            )
        return True

    async def _heartbeat(
        self,
        ctx: _RunContext,
        sandbox_id: str,
        on_heartbeat: HeartbeatCallback | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        interval = self._settings.heartbeat_interval_s
        window = interval * self._settings.missed_ticks_threshold
        while ctx.state == RunState.RUNNING:
            await asyncio.sleep(interval)
            try:
                liveness = await asyncio.wait_for(
                    asyncio.to_thread(self._sessions.check_alive, sandbox_id),
                    timeout=interval,
                )
            except asyncio.TimeoutError:
                liveness = Liveness(alive=False, reason="Liveness probe timed out")
            ctx.ticks += 1
            if liveness.alive:
                ctx.last_activity = loop.time()
            logger.debug(
                "Run %s heartbeat %d: alive=%s", ctx.run_id, ctx.ticks, liveness.alive
            )
            if on_heartbeat is not None:
                on_heartbeat(ctx.ticks, liveness)
            idle = loop.time() - ctx.last_activity
            if idle >= window:
                raise HeartbeatTimeoutError(
                    f"No agent activity or heartbeat for {idle:.0f}s"
                )

    async def _stop_stream(self, task: asyncio.Task) -> None:
        if task.done():
            return
        await asyncio.wait({task}, timeout=self._settings.cancel_grace_s)
        if not task.done():
            logger.warning("Agent stream did not stop within the grace period; cancelling")
        await self._stop_task(task)

    @staticmethod
    async def _stop_task(task: asyncio.Task) -> None:
        if not task.done():
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _fail(self, ctx: _RunContext, exc: BaseException) -> ExecutorResult:
        ctx.state = RunState.FAILED
        if isinstance(exc, CapsuleError):
            logger.error("Run %s failed: %s", ctx.run_id, exc)
        else:
            logger.error("Run %s failed unexpectedly", ctx.run_id, exc_info=exc)
        return self._result(ctx, error=str(exc), error_type=type(exc).__name__)

    @staticmethod
    def _result(
        ctx: _RunContext, error: str | None = None, error_type: str | None = None
    ) -> ExecutorResult:
        return ExecutorResult(
            success=ctx.state == RunState.COMPLETED,
            state=ctx.state,
            messages=list(ctx.messages),
            error=error,
            error_type=error_type,
        )


async def _aclose(stream: AsyncIterator[Any]) -> None:
    close = getattr(stream, "aclose", None)
    if close is None:
        return
    try:
        await close()
    except Exception as exc:
        logger.debug("Closing agent stream failed: %s", exc)
