from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from capsule.models.versioning import Commit, Project, ProjectStatus
from capsule.store.memory import InMemoryCommitStore, InMemoryProjectStore
from capsule.store.sql import SqlCommitStore, SqlProjectStore, create_session_factory


@pytest.fixture(params=["memory", "sql"])
def stores(request, tmp_path):
    if request.param == "memory":
        return InMemoryProjectStore(), InMemoryCommitStore()
    factory = create_session_factory(f"sqlite:///{tmp_path}/capsule.db")
    return SqlProjectStore(factory), SqlCommitStore(factory)


def test_project_ownership_and_lookup(stores):
    projects, _ = stores
    projects.save(Project(project_id="P1", user_id="u1", sandbox_id="sbx-1"))

    assert projects.get("P1").sandbox_id == "sbx-1"
    assert projects.get_owned("P1", "u1") is not None
    assert projects.get_owned("P1", "u2") is None
    assert projects.get("missing") is None
    assert projects.find_by_sandbox("sbx-1").project_id == "P1"
    assert projects.find_by_sandbox("sbx-2") is None


def test_project_save_updates(stores):
    projects, _ = stores
    projects.save(Project(project_id="P1", user_id="u1", sandbox_id="sbx-1"))

    projects.save(
        Project(
            project_id="P1",
            user_id="u1",
            sandbox_id="sbx-1",
            status=ProjectStatus.PAUSED,
            server_status="closed",
        )
    )

    stored = projects.get("P1")
    assert stored.status == ProjectStatus.PAUSED
    assert stored.server_status == "closed"


def test_commits_are_listed_newest_first(stores):
    projects, commits = stores
    projects.save(Project(project_id="P1", user_id="u1"))
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index in range(4):
        commits.add(
            Commit(
                id=f"c{index}",
                project_id="P1",
                github_sha=f"sha{index}",
                user_message=f"m{index}",
                created_at=start + timedelta(minutes=index),
            )
        )

    listed = commits.list_for_project("P1", 3)

    assert [commit.id for commit in listed] == ["c3", "c2", "c1"]
    assert listed[0].created_at == start + timedelta(minutes=3)
    assert commits.list_for_project("P2", 10) == []


def test_bundle_url_and_delete(stores):
    projects, commits = stores
    projects.save(Project(project_id="P1", user_id="u1"))
    commits.add(Commit(id="c1", project_id="P1", github_sha="abc", user_message="m"))

    updated = commits.set_bundle_url("P1", "abc", "https://cdn/manifest.json")

    assert updated.bundle_url == "https://cdn/manifest.json"
    assert commits.get_by_sha("P1", "abc").bundle_url == "https://cdn/manifest.json"
    assert commits.set_bundle_url("P1", "zzz", "x") is None

    commits.delete("c1")
    assert commits.get_by_sha("P1", "abc") is None
