"""Command line entry points: run one agent session, or serve the HTTP API."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from typing import Sequence

from capsule.agent.args import parse_args, parse_tokens
from capsule.agent.cancellation import CancellationToken
from capsule.config import Settings, configure_logging
from capsule.errors import CapsuleError
from capsule.models.agent import AgentMessage, ExecutorResult
from capsule.services import Services, build_services

logger = logging.getLogger(__name__)


def _print_message(message: AgentMessage) -> None:
    print(json.dumps(message.to_dict()), flush=True)


async def _run(services: Services, tokens: Sequence[str]) -> ExecutorResult:
    spec = parse_args(tokens, default_cwd=services.settings.default_cwd)
    raw = parse_tokens(tokens)
    sandbox_id = raw.get("sandbox_id") or os.environ.get("CAPSULE_SANDBOX_ID", "")

    cancel = CancellationToken()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, cancel.cancel, f"signal {signum}")
        except NotImplementedError:
            pass
    return await services.executor.run(
        spec,
        sandbox_id,
        consumer=_print_message,
        cancel=cancel,
        project_id=raw.get("project_id"),
    )


def main(argv: Sequence[str] | None = None) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    try:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        services = build_services(settings)
        result = asyncio.run(_run(services, tokens))
    except CapsuleError as exc:
        logger.error("%s", exc)
        print(json.dumps({"success": False, "error": str(exc)}), flush=True)
        return 1
    summary = {"success": result.success, "state": result.state.value}
    if result.error:
        summary["error"] = result.error
    print(json.dumps(summary), flush=True)
    return 0 if result.success else 1


def serve() -> None:
    import uvicorn

    uvicorn.run(
        "capsule.api.main:create_app",
        factory=True,
        host=os.environ.get("CAPSULE_HOST", "0.0.0.0"),
        port=int(os.environ.get("CAPSULE_PORT", "8000")),
    )


if __name__ == "__main__":
    sys.exit(main())
