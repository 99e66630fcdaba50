from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading
import time

import pytest

from capsule.errors import ConflictError, NotFoundError, ValidationError
from capsule.models.scm import RepositoryInfo
from capsule.models.versioning import Commit, Project
from capsule.providers.vcs.memory import InMemoryVersionControl
from capsule.versioning.checkpoint import CheckpointEngine

CWD = "/home/user/app"


class FakeScm:
    def __init__(self) -> None:
        self.ensured: list[str] = []

    def validate_auth(self) -> None:
        pass

    def ensure_repository(self, name: str, private: bool = True) -> RepositoryInfo:
        self.ensured.append(name)
        return RepositoryInfo(
            full_name=f"acme/{name}",
            clone_url=f"https://github.com/acme/{name}.git",
            html_url=f"https://github.com/acme/{name}",
            default_branch="main",
        )

    def auth(self) -> dict[str, str]:
        return {"token": "secret"}


@pytest.fixture
def vcs() -> InMemoryVersionControl:
    return InMemoryVersionControl()


@pytest.fixture
def engine(vcs, commits, projects, sessions, sandbox_id) -> CheckpointEngine:
    projects.save(Project(project_id="P1", user_id="u1", sandbox_id=sandbox_id))
    return CheckpointEngine(
        vcs, commits, projects, sessions, dev_server_patterns=(), cache_dirs=()
    )


def test_commit_without_remote_is_skipped_but_recorded(engine, sessions, sandbox_id, commits):
    handle = sessions.connect(sandbox_id)

    result = engine.create_commit("P1", handle, "fix layout")

    assert result.success is True
    assert result.skipped is True
    assert result.commit is not None
    stored = commits.get_by_sha("P1", result.commit.github_sha)
    assert stored is not None
    assert stored.user_message == "fix layout"
    assert stored.bundle_url is None


def test_commit_with_remote_pushes(engine, vcs, sessions, sandbox_id):
    handle = sessions.connect(sandbox_id)
    vcs.set_remote(sandbox_id, CWD, "https://github.com/acme/p1.git")

    result = engine.create_commit("P1", handle, "add button")

    assert result.success and not result.skipped
    assert vcs.pushes(sandbox_id, CWD) == [("origin", result.commit.github_sha)]


def test_push_failure_keeps_commit(vcs, commits, projects, sessions, sandbox_id):
    failing = InMemoryVersionControl(fail_push=True)
    failing.set_remote(sandbox_id, CWD, "https://github.com/acme/p1.git")
    engine = CheckpointEngine(failing, commits, projects, sessions, dev_server_patterns=())
    handle = sessions.connect(sandbox_id)

    result = engine.create_commit("P1", handle, "add button")

    assert result.success is True
    assert "push rejected" in result.error
    assert commits.get_by_sha("P1", result.commit.github_sha) is not None


def test_scm_provider_links_remote_before_push(vcs, commits, projects, sessions, sandbox_id):
    scm = FakeScm()
    engine = CheckpointEngine(vcs, commits, projects, sessions, scm=scm, dev_server_patterns=())
    handle = sessions.connect(sandbox_id)

    result = engine.create_commit("P1", handle, "first")

    assert scm.ensured == ["P1"]
    assert result.skipped is False
    assert len(vcs.pushes(sandbox_id, CWD)) == 1


def test_commit_requires_message(engine, sessions, sandbox_id):
    with pytest.raises(ValidationError):
        engine.create_commit("P1", sessions.connect(sandbox_id), "   ")


def test_listing_is_capped_and_newest_first(engine, commits):
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    for index in range(60):
        commits.add(
            Commit(
                id=f"c{index}",
                project_id="P1",
                github_sha=f"{index:040d}",
                user_message=f"change {index}",
                created_at=start + timedelta(minutes=index),
            )
        )

    listed = engine.list_commits("P1", limit=500, user_id="u1")

    assert len(listed) == 50
    assert listed[0].id == "c59"
    assert [item.created_at for item in listed] == sorted(
        (item.created_at for item in listed), reverse=True
    )
    assert len(engine.list_commits("P1", limit=5)) == 5


def test_listing_checks_ownership(engine):
    with pytest.raises(NotFoundError):
        engine.list_commits("P1", user_id="intruder")


def test_restore_round_trip_is_byte_identical(engine, vcs, sessions, sandbox_id):
    handle = sessions.connect(sandbox_id)
    vcs.write(sandbox_id, CWD, "App.tsx", b"export default 1\n")
    vcs.write(sandbox_id, CWD, "assets/logo.png", b"\x89PNG\x00\x01")
    original = vcs.tree(sandbox_id, CWD)
    first = engine.create_commit("P1", handle, "baseline").commit

    vcs.write(sandbox_id, CWD, "App.tsx", b"export default 2\n")
    vcs.write(sandbox_id, CWD, "new.ts", b"x")
    vcs.remove(sandbox_id, CWD, "assets/logo.png")
    engine.create_commit("P1", handle, "edits")

    restored = engine.restore_commit("P1", first.github_sha, user_id="u1")
    assert restored.success
    assert vcs.tree(sandbox_id, CWD) == original

    again = engine.create_commit("P1", handle, "after restore").commit
    vcs.write(sandbox_id, CWD, "App.tsx", b"dirty")
    engine.restore_commit("P1", again.github_sha, "u1")
    assert vcs.tree(sandbox_id, CWD) == original


def test_restore_rejects_foreign_project_and_unknown_commit(engine, projects, sessions, sandbox_id):
    handle = sessions.connect(sandbox_id)
    sha = engine.create_commit("P1", handle, "baseline").commit.github_sha

    with pytest.raises(NotFoundError, match="Project not found or access denied"):
        engine.restore_commit("P1", sha, user_id="intruder")
    with pytest.raises(NotFoundError):
        engine.restore_commit("P1", "f" * 40, "u1")
    with pytest.raises(ValidationError):
        engine.restore_commit("P1", "", "u1")
    with pytest.raises(ValidationError):
        engine.restore_commit("P1", sha, "")


def test_concurrent_restores_never_interleave(engine, vcs, sessions, sandbox_id):
    handle = sessions.connect(sandbox_id)
    sha = engine.create_commit("P1", handle, "baseline").commit.github_sha
    active = 0
    peak = 0
    guard = threading.Lock()

    def slow_checkout(sandbox, path, target):
        nonlocal active, peak
        with guard:
            active += 1
            peak = max(peak, active)
        time.sleep(0.1)
        with guard:
            active -= 1

    vcs.on_checkout = slow_checkout
    threads = [
        threading.Thread(target=engine.restore_commit, args=("P1", sha, "u1")) for _ in range(3)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert peak == 1


def test_restore_without_waiting_conflicts_while_busy(engine, sessions, sandbox_id):
    sha = engine.create_commit("P1", sessions.connect(sandbox_id), "baseline").commit.github_sha

    with engine.project_lock("P1"):
        with pytest.raises(ConflictError):
            engine.restore_commit("P1", sha, "u1", wait=False)


def test_different_projects_do_not_contend(engine):
    with engine.project_lock("P1"):
        with engine.project_lock("P2", wait=False):
            pass


def test_restore_touches_existing_key_files(vcs, commits, projects, sessions, sandbox_id, provider):
    projects.save(Project(project_id="P1", user_id="u1", sandbox_id=sandbox_id))
    provider.write_file(sandbox_id, f"{CWD}/package.json", b"{}")
    engine = CheckpointEngine(
        vcs,
        commits,
        projects,
        sessions,
        dev_server_patterns=(),
        touch_files=("package.json", "App.tsx"),
        cache_dirs=(".expo",),
    )
    provider.mkdirs(sandbox_id, f"{CWD}/.expo")
    sha = engine.create_commit("P1", sessions.connect(sandbox_id), "baseline").commit.github_sha

    result = engine.restore_commit("P1", sha, "u1")

    assert result.touched_files == ("package.json",)
    assert not provider.host_path(sandbox_id, f"{CWD}/.expo").exists()


@pytest.mark.parametrize(
    "bundle_url, expected",
    [
        (
            "https://cdn/bundles/P1/abc/ios/manifest.json",
            "https://cdn/bundles/P1/abc/assets/icon.png",
        ),
        ("https://cdn/bundles/P1/abc", "https://cdn/bundles/P1/abc/assets/icon.png"),
        ("https://cdn/bundles/P1/abc/", "https://cdn/bundles/P1/abc/assets/icon.png"),
    ],
)
def test_legacy_bundle_url(engine, commits, bundle_url, expected):
    commits.add(
        Commit(id="c1", project_id="P1", github_sha="abc", user_message="m", bundle_url=bundle_url)
    )

    assert engine.legacy_bundle_url("P1", "abc", "/assets/icon.png") == expected


def test_legacy_bundle_url_missing(engine, commits):
    commits.add(Commit(id="c1", project_id="P1", github_sha="abc", user_message="m"))

    with pytest.raises(NotFoundError, match="Bundle not found"):
        engine.legacy_bundle_url("P1", "abc", "index.js")
    with pytest.raises(NotFoundError):
        engine.legacy_bundle_url("P1", "unknown", "index.js")
