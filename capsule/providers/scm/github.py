"""GitHub SCM provider backed by the GitHub REST API."""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from typing import Any

from capsule.errors import ConfigurationError, NotFoundError, TransientNetworkError
from capsule.models.scm import RepositoryInfo
from capsule.providers.scm.base import ScmProvider

logger = logging.getLogger(__name__)

_REPO_NAME = re.compile(r"[^A-Za-z0-9._-]+")


class GitHubProvider(ScmProvider):
    def __init__(
        self,
        token: str | None = None,
        owner: str | None = None,
        base_url: str = "https://api.github.com",
    ) -> None:
        self._token = token
        self._owner = owner
        self._base_url = base_url.rstrip("/")

    def _ensure_token(self) -> str:
        if not self._token:
            raise ConfigurationError(
                "GitHub token is required (set GITHUB_PAT or GITHUB_TOKEN)."
            )
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        token = self._ensure_token()
        url = f"{self._base_url}{path}"
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(url, data=data, method=method)
        request.add_header("Accept", "application/vnd.github+json")
        request.add_header("User-Agent", "capsule-agent")
        request.add_header("Authorization", f"Bearer {token}")
        if data is not None:
            request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=30) as response:
                raw = response.read()
                return json.loads(raw.decode("utf-8")) if raw else None
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace")
            if exc.code == 404:
                raise NotFoundError(f"GitHub resource not found: {path}") from exc
            if exc.code in (401, 403):
                raise ConfigurationError(f"GitHub API error {exc.code}: {body}") from exc
            if exc.code >= 500:
                raise TransientNetworkError(f"GitHub API error {exc.code}: {body}") from exc
            raise RuntimeError(f"GitHub API error {exc.code}: {body}") from exc
        except urllib.error.URLError as exc:
            raise TransientNetworkError(f"GitHub API unreachable: {exc.reason}") from exc

    def validate_auth(self) -> None:
        self._request("GET", "/user")

    def ensure_repository(self, name: str, private: bool = True) -> RepositoryInfo:
        repo_name = _REPO_NAME.sub("-", name).strip("-") or "project"
        owner = self._owner or self._login()
        try:
            response = self._request("GET", f"/repos/{owner}/{repo_name}")
        except NotFoundError:
            logger.info("Creating GitHub repository %s/%s", owner, repo_name)
            payload = {"name": repo_name, "private": private, "auto_init": False}
            if owner == self._login():
                response = self._request("POST", "/user/repos", payload)
            else:
                response = self._request("POST", f"/orgs/{owner}/repos", payload)
        if not isinstance(response, dict) or "clone_url" not in response:
            raise RuntimeError("Unexpected response from GitHub API.")
        return RepositoryInfo(
            full_name=response.get("full_name", f"{owner}/{repo_name}"),
            clone_url=response["clone_url"],
            html_url=response.get("html_url", ""),
            default_branch=response.get("default_branch") or "main",
        )

    def auth(self) -> dict[str, str]:
        return {"token": self._ensure_token()}

    def _login(self) -> str:
        response = self._request("GET", "/user")
        if not isinstance(response, dict) or "login" not in response:
            raise RuntimeError("Unexpected response from GitHub API.")
        return response["login"]
