"""Git backend that shells out to ``git`` inside the sandbox."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Sequence

from capsule.errors import CommandError
from capsule.models.sandbox import ExecResult
from capsule.providers.sandbox.base import SandboxProvider
from capsule.providers.vcs.base import LogEntry, VersionControlBackend

logger = logging.getLogger(__name__)

_LOG_SEPARATOR = "\x1f"


class SandboxGitBackend(VersionControlBackend):
    def __init__(
        self,
        provider: SandboxProvider,
        author_name: str = "Capsule Agent",
        author_email: str = "agent@capsule.local",
    ) -> None:
        self._provider = provider
        self._identity = [
            "-c",
            f"user.name={author_name}",
            "-c",
            f"user.email={author_email}",
        ]

    def ensure_repository(self, sandbox_id: str, path: str) -> None:
        check = self._provider.exec(
            sandbox_id, ["git", "rev-parse", "--is-inside-work-tree"], cwd=path
        )
        if check.ok and check.stdout.strip() == "true":
            return
        logger.info("Initialising git repository in %s:%s", sandbox_id, path)
        self._run_git(sandbox_id, ["init"], path)

    def stage_and_commit(self, sandbox_id: str, path: str, message: str) -> str:
        self._run_git(sandbox_id, ["add", "-A"], path)
        self._run_git(
            sandbox_id,
            [*self._identity, "commit", "--allow-empty", "-m", message],
            path,
        )
        output = self._run_git(sandbox_id, ["rev-parse", "HEAD"], path)
        return output.stdout.strip()

    def head(self, sandbox_id: str, path: str) -> str | None:
        result = self._provider.exec(
            sandbox_id, ["git", "rev-parse", "--verify", "-q", "HEAD"], cwd=path
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def has_commit(self, sandbox_id: str, path: str, sha: str) -> bool:
        result = self._provider.exec(
            sandbox_id,
            ["git", "cat-file", "-e", f"{sha}^{{commit}}"],
            cwd=path,
        )
        return result.ok

    def has_remote(self, sandbox_id: str, path: str, remote: str = "origin") -> bool:
        result = self._provider.exec(
            sandbox_id, ["git", "remote", "get-url", remote], cwd=path
        )
        return result.ok and bool(result.stdout.strip())

    def set_remote(
        self, sandbox_id: str, path: str, url: str, remote: str = "origin"
    ) -> None:
        if self.has_remote(sandbox_id, path, remote):
            self._run_git(sandbox_id, ["remote", "set-url", remote, url], path)
        else:
            self._run_git(sandbox_id, ["remote", "add", remote, url], path)

    def push(
        self,
        sandbox_id: str,
        path: str,
        remote: str = "origin",
        branch: str | None = None,
        auth: dict[str, str] | None = None,
    ) -> None:
        remote_url = self._resolve_remote_url(sandbox_id, remote, path, auth)
        target = branch or self._current_branch(sandbox_id, path)
        self._run_git(sandbox_id, ["push", remote_url, f"HEAD:{target}"], path)

    def checkout(self, sandbox_id: str, path: str, sha: str) -> None:
        self._run_git(sandbox_id, ["reset", "--hard", sha], path)
        self._run_git(sandbox_id, ["clean", "-fd"], path)

    def log(self, sandbox_id: str, path: str, limit: int) -> Sequence[LogEntry]:
        if self.head(sandbox_id, path) is None:
            return []
        output = self._run_git(
            sandbox_id,
            [
                "log",
                f"-n{limit}",
                f"--format=%H{_LOG_SEPARATOR}%ct{_LOG_SEPARATOR}%s",
            ],
            path,
        )
        entries: list[LogEntry] = []
        for line in output.stdout.splitlines():
            parts = line.split(_LOG_SEPARATOR, 2)
            if len(parts) != 3:
                continue
            sha, timestamp, message = parts
            entries.append(
                LogEntry(
                    sha=sha,
                    message=message,
                    committed_at=datetime.fromtimestamp(int(timestamp), timezone.utc),
                )
            )
        return entries

    def _current_branch(self, sandbox_id: str, path: str) -> str:
        output = self._run_git(sandbox_id, ["rev-parse", "--abbrev-ref", "HEAD"], path)
        branch = output.stdout.strip()
        return "main" if branch in ("", "HEAD") else branch

    def _run_git(
        self, sandbox_id: str, args: Sequence[str], cwd: str
    ) -> ExecResult:
        command = ["git", *args]
        result = self._provider.exec(sandbox_id, command, cwd=cwd)
        if not result.ok:
            raise CommandError(
                "Git command failed: "
                f"{' '.join(self._redact(command))}\n{result.stderr.strip()}",
                exit_code=result.exit_code,
            )
        return result

    def _resolve_remote_url(
        self,
        sandbox_id: str,
        remote: str,
        repo_path: str,
        auth: dict[str, str] | None,
    ) -> str:
        if remote.startswith("http://") or remote.startswith("https://"):
            return _apply_auth(remote, auth)
        output = self._provider.exec(
            sandbox_id,
            ["git", "remote", "get-url", remote],
            cwd=repo_path,
        )
        if output.exit_code != 0:
            raise CommandError(f"Unknown git remote: {remote}", exit_code=output.exit_code)
        return _apply_auth(output.stdout.strip(), auth)

    @staticmethod
    def _redact(command: Sequence[str]) -> list[str]:
        return [
            "https://***@" + part.split("@", 1)[1]
            if part.startswith("https://") and "@" in part
            else part
            for part in command
        ]


def _apply_auth(url: str, auth: dict[str, str] | None) -> str:
    if not auth or not url.startswith("https://"):
        return url
    token = auth.get("token")
    username = auth.get("username")
    password = auth.get("password")
    credential = None
    if token:
        credential = f"x-access-token:{token}"
    elif username and password:
        credential = f"{username}:{password}"
    if not credential:
        return url
    return url.replace("https://", f"https://{credential}@", 1)
