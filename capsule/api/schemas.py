"""Request bodies accepted by the HTTP API."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# Clients send the owner as either ``userId`` or ``userID``.
def _user_id_field() -> Any:
    return Field(default=None, validation_alias=AliasChoices("userId", "userID", "user_id"))


class CommitListRequest(_Body):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    user_id: Optional[str] = _user_id_field()
    limit: Optional[int] = None


class RestoreRequest(_Body):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    commit_sha: Optional[str] = Field(default=None, alias="commitSHA")
    user_id: Optional[str] = _user_id_field()


class CommitRequest(_Body):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    user_message: Optional[str] = Field(default=None, alias="userMessage")


class BundleRequest(_Body):
    message: Optional[str] = None
    user_id: Optional[str] = _user_id_field()


class CleanupRequest(_Body):
    user_id: Optional[str] = _user_id_field()
    keep: Optional[int] = Field(default=None, ge=0)


class CheckSandboxRequest(_Body):
    sandbox_id: Optional[str] = Field(default=None, alias="sandboxId")


class PauseRequest(_Body):
    project_id: Optional[str] = Field(default=None, alias="projectId")
    user_id: Optional[str] = _user_id_field()
