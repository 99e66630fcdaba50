"""HTTP API for agent runs, live file changes and project checkpoints."""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Iterator
import uuid

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from capsule.agent.args import spec_from_request
from capsule.api.schemas import (
    BundleRequest,
    CheckSandboxRequest,
    CleanupRequest,
    CommitListRequest,
    CommitRequest,
    PauseRequest,
    RestoreRequest,
)
from capsule.config import Settings, configure_logging
from capsule.errors import CapsuleError, NotFoundError, ValidationError, status_for
from capsule.services import Services, build_services
from capsule.streaming.broadcaster import QueueConnection
from capsule.versioning.assets import list_published_assets
from capsule.versioning.checkpoint import create_checkpoint_hook
from capsule.versioning.cleanup import cleanup_project_bundles

logger = logging.getLogger(__name__)

# Run failures that are the caller's fault keep their HTTP status.
RUN_ERROR_STATUS = {"NotFoundError": 404, "ValidationError": 400}

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


def _error_body(exc: BaseException, status: int) -> dict[str, Any]:
    correlation_id = uuid.uuid4().hex[:12]
    if status >= 500:
        logger.error("Request failed [%s]: %s", correlation_id, exc, exc_info=exc)
        return {"success": False, "error": "Internal server error", "details": correlation_id}
    return {"success": False, "error": str(exc), "details": correlation_id}


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CapsuleError)
    async def capsule_error_handler(request: Request, exc: CapsuleError) -> JSONResponse:
        status = status_for(exc)
        return JSONResponse(status_code=status, content=_error_body(exc, status))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        parts = []
        for err in exc.errors():
            loc = ".".join(str(segment) for segment in err.get("loc", []))
            msg = err.get("msg", "validation error")
            parts.append(f"{loc}: {msg}" if loc else msg)
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "; ".join(parts) or "Invalid request body"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=500, content=_error_body(exc, 500))


def stream_file_changes(
    services: Services, project_id: str, connection: QueueConnection, poll_s: float = 15.0
) -> Iterator[bytes]:
    """Yield SSE frames for ``connection`` until it closes, then unregister it."""
    try:
        yield from connection.frames(poll_s=poll_s)
    finally:
        services.broadcaster.remove_connection(project_id, connection)
        connection.close()
        if services.broadcaster.connection_count(project_id) == 0:
            services.watcher.stop_watching(project_id)


def create_app(services: Services | None = None) -> FastAPI:
    if services is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level)
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        app.state.services.watcher.stop_all()

    app = FastAPI(title="capsule-agent", lifespan=lifespan)
    app.state.services = services
    register_error_handlers(app)

    @app.get("/health")
    def health_check() -> dict:
        return {"status": "ok"}

    @app.post("/api/agent/run")
    async def run_agent(
        body: dict[str, Any] = Body(...),
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        spec = spec_from_request(body, default_cwd=services.settings.default_cwd)
        sandbox_id = body.get("sandboxId")
        if not sandbox_id:
            raise ValidationError("Sandbox ID is required", field="sandboxId")
        project_id = body.get("projectId")
        hooks = []
        commit_message = body.get("commitMessage")
        if project_id and commit_message:
            handle = services.sessions.connect(sandbox_id)
            hooks.append(
                create_checkpoint_hook(
                    services.checkpoints, project_id, handle, commit_message
                )
            )
        result = await services.executor.run(
            spec, sandbox_id, hooks=hooks, project_id=project_id
        )
        status = RUN_ERROR_STATUS.get(result.error_type or "", 200)
        return JSONResponse(result.to_dict(), status_code=status)

    @app.get("/api/file-changes")
    def file_changes(
        project_id: str | None = Query(default=None, alias="projectId"),
        services: Services = Depends(get_services),
    ) -> StreamingResponse:
        if not project_id:
            raise ValidationError("projectId is required", field="projectId")
        connection = QueueConnection()
        services.broadcaster.add_connection(project_id, connection)
        project = services.projects.get(project_id)
        if (
            project is not None
            and project.sandbox_id
            and not services.watcher.is_watching(project_id)
        ):
            try:
                services.watcher.start_watching(
                    project_id, project.sandbox_id, services.settings.default_cwd
                )
            except CapsuleError as exc:
                logger.warning("Could not watch project %s: %s", project_id, exc)
        return StreamingResponse(
            stream_file_changes(services, project_id, connection),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.post("/api/git-commits")
    def list_git_commits(
        request: CommitListRequest, services: Services = Depends(get_services)
    ) -> dict:
        if not request.project_id or not request.user_id:
            raise ValidationError("Project ID and User ID are required")
        commits = services.checkpoints.list_commits(
            request.project_id, limit=request.limit, user_id=request.user_id
        )
        return {"versions": [commit.to_version() for commit in commits]}

    @app.post("/api/git-restore")
    def restore_git_commit(
        request: RestoreRequest, services: Services = Depends(get_services)
    ) -> JSONResponse:
        result = services.checkpoints.restore_commit(
            request.project_id or "", request.commit_sha or "", request.user_id or ""
        )
        body: dict[str, Any] = {"success": result.success, "commitSHA": result.commit_sha}
        if result.success:
            body["touchedFiles"] = list(result.touched_files)
            return JSONResponse(body)
        body.update(error=result.error, details=result.details)
        return JSONResponse(body, status_code=500)

    @app.post("/api/github-commit")
    def github_commit(
        request: CommitRequest, services: Services = Depends(get_services)
    ) -> JSONResponse:
        if not request.project_id or not request.user_message:
            raise ValidationError("Project ID and user message are required")
        project = services.projects.get(request.project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if not project.sandbox_id:
            raise ValidationError("No sandbox associated with project", field="sandboxId")
        handle = services.sessions.connect(project.sandbox_id)
        result = services.checkpoints.create_commit(
            request.project_id, handle, request.user_message
        )
        body: dict[str, Any] = {"success": result.success}
        if result.commit is not None:
            body["commitId"] = result.commit.github_sha
        if result.skipped:
            body["skipped"] = True
        if result.error:
            body["error"] = result.error
        status = 200 if result.success or result.skipped else 500
        return JSONResponse(body, status_code=status)

    @app.post("/api/projects/{project_id}/bundle")
    def build_bundle(
        project_id: str,
        request: BundleRequest | None = None,
        services: Services = Depends(get_services),
    ) -> JSONResponse:
        request = request or BundleRequest()
        if request.user_id:
            project = services.projects.get_owned(project_id, request.user_id)
        else:
            project = services.projects.get(project_id)
        if project is None:
            raise NotFoundError("Project not found")
        if not project.sandbox_id:
            raise ValidationError("No active sandbox for this project", field="sandboxId")
        handle = services.sessions.connect(project.sandbox_id)
        commit_id = services.checkpoints.vcs.head(handle.sandbox_id, handle.working_dir)
        if not commit_id:
            raise ValidationError("Sandbox has no commits to bundle")
        result = services.bundler.build_static_bundle(
            handle, project_id, commit_id, request.message or "Static bundle build"
        )
        if not result.success:
            return JSONResponse(
                {"success": False, "error": result.error or "Bundle build failed"},
                status_code=500,
            )
        return JSONResponse(
            {
                "success": True,
                "manifestUrl": result.manifest_url,
                "bundleUrl": result.bundle_url,
                "commitId": result.commit_id,
            }
        )

    @app.post("/api/projects/{project_id}/bundles/cleanup")
    def cleanup_bundles(
        project_id: str,
        request: CleanupRequest,
        services: Services = Depends(get_services),
    ) -> dict:
        if not request.user_id:
            raise ValidationError("User ID is required", field="userId")
        if services.projects.get_owned(project_id, request.user_id) is None:
            raise NotFoundError("Project not found")
        keep = services.settings.bundle_keep_count if request.keep is None else request.keep
        result = cleanup_project_bundles(
            project_id, services.commits, services.object_store, keep=keep
        )
        return {
            "success": not result.errors,
            "deletedCount": result.deleted_count,
            "freedBytes": result.freed_bytes,
            "errors": list(result.errors),
        }

    @app.get("/api/project/{project_id}/{commit_id}/{file_path:path}")
    def legacy_bundle_redirect(
        project_id: str,
        commit_id: str,
        file_path: str,
        services: Services = Depends(get_services),
    ) -> RedirectResponse:
        target = services.checkpoints.legacy_bundle_url(project_id, commit_id, file_path)
        return RedirectResponse(target, status_code=307)

    @app.post("/api/check-sandbox")
    def check_sandbox(
        request: CheckSandboxRequest, services: Services = Depends(get_services)
    ) -> dict:
        if not request.sandbox_id:
            raise ValidationError("Sandbox ID is required", field="sandboxId")
        liveness = services.sessions.check_alive(request.sandbox_id)
        body: dict[str, Any] = {"isAlive": liveness.alive}
        if liveness.reason:
            body["reason"] = liveness.reason
        return body

    @app.post("/api/sandbox/pause")
    def pause_sandbox(
        request: PauseRequest, services: Services = Depends(get_services)
    ) -> dict:
        result = services.sessions.pause_project(
            request.project_id or "", request.user_id or ""
        )
        body: dict[str, Any] = {
            "success": result.success,
            "pausedSandboxId": result.paused_sandbox_id,
            "message": "Sandbox paused successfully",
        }
        if result.caveat:
            body["caveat"] = result.caveat
        return body

    @app.get("/api/assets")
    def list_assets(
        sandbox_id: str | None = Query(default=None, alias="sandboxId"),
        services: Services = Depends(get_services),
    ) -> dict:
        if not sandbox_id:
            raise ValidationError("sandboxId is required", field="sandboxId")
        handle = services.sessions.connect(sandbox_id)
        return {"assets": list_published_assets(handle)}

    return app
