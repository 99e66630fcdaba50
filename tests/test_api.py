from __future__ import annotations

import json
import shlex

from fastapi.testclient import TestClient
import pytest

from conftest import ScriptedRuntime

from capsule.api.main import create_app, stream_file_changes
from capsule.models.agent import AssistantText, RunComplete
from capsule.models.events import FileChangeEvent, FileChangeKind
from capsule.models.versioning import Project, ProjectStatus
from capsule.providers.storage.memory import InMemoryObjectStore
from capsule.providers.vcs.memory import InMemoryVersionControl
from capsule.services import build_services
from capsule.streaming.broadcaster import QueueConnection
from capsule.versioning.bundle import BundleBuilder
from capsule.versioning.checkpoint import CheckpointEngine

CWD = "/home/user/app"


@pytest.fixture
def services(settings, provider, projects, commits, sandbox_id):
    projects.save(Project(project_id="P1", user_id="u1", sandbox_id=sandbox_id))
    services = build_services(
        settings,
        provider=provider,
        runtime=ScriptedRuntime(
            [AssistantText(text="Working"), RunComplete(result="done", turns=1)]
        ),
        vcs=InMemoryVersionControl(),
        object_store=InMemoryObjectStore(base_url="https://cdn.example.com"),
        projects=projects,
        commits=commits,
    )
    services.checkpoints = CheckpointEngine(
        services.checkpoints.vcs,
        commits,
        projects,
        services.sessions,
        dev_server_patterns=(),
    )
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services)) as test_client:
        yield test_client


def _commit(client, message: str = "checkpoint") -> str:
    response = client.post(
        "/api/github-commit", json={"projectId": "P1", "userMessage": message}
    )
    assert response.status_code == 200
    return response.json()["commitId"]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_run_agent(client, sandbox_id):
    response = client.post(
        "/api/agent/run", json={"prompt": "add a button", "sandboxId": sandbox_id}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["state"] == "completed"
    assert [message["kind"] for message in body["messages"]] == [
        "assistant_text",
        "run_complete",
    ]


def test_run_agent_with_checkpoint(client, services, sandbox_id):
    response = client.post(
        "/api/agent/run",
        json={
            "prompt": "add a button",
            "sandboxId": sandbox_id,
            "projectId": "P1",
            "commitMessage": "Agent: add a button",
        },
    )

    assert response.json()["success"] is True
    recorded = services.commits.list_for_project("P1", 10)
    assert [commit.user_message for commit in recorded] == ["Agent: add a button"]


def test_run_agent_unknown_sandbox(client):
    response = client.post("/api/agent/run", json={"prompt": "add a button", "sandboxId": "nope"})

    assert response.status_code == 404
    body = response.json()
    assert body["success"] is False
    assert body["state"] == "failed"
    assert body["errorType"] == "NotFoundError"


def test_run_agent_unknown_sandbox_records_no_commit(client, services):
    response = client.post(
        "/api/agent/run",
        json={
            "prompt": "add a button",
            "sandboxId": "nope",
            "projectId": "P1",
            "commitMessage": "Agent: add a button",
        },
    )

    assert response.status_code == 404
    assert response.json()["success"] is False
    assert list(services.commits.list_for_project("P1", 10)) == []


@pytest.mark.parametrize(
    "body",
    [{"prompt": "add a button"}, {"sandboxId": "sbx"}, {"prompt": "", "sandboxId": "sbx"}],
)
def test_run_agent_rejects_incomplete_requests(client, body):
    response = client.post("/api/agent/run", json=body)

    assert response.status_code == 400
    assert response.json()["success"] is False


def test_commit_and_list(client):
    first = _commit(client, "first")
    second = _commit(client, "second")

    response = client.post("/api/git-commits", json={"projectId": "P1", "userId": "u1"})

    assert response.status_code == 200
    versions = response.json()["versions"]
    assert [version["commitId"] for version in versions] == [second, first]
    assert versions[0]["message"] == "second"
    assert versions[0]["bundleUrl"] is None


def test_commit_skipped_without_remote(client):
    response = client.post(
        "/api/github-commit", json={"projectId": "P1", "userMessage": "first"}
    )

    assert response.json()["skipped"] is True


def test_commit_list_accepts_user_id_spelling(client):
    sha = _commit(client)

    response = client.post("/api/git-commits", json={"projectId": "P1", "userID": "u1"})

    assert response.status_code == 200
    assert [version["commitId"] for version in response.json()["versions"]] == [sha]
    assert (
        client.post(
            "/api/git-commits", json={"projectId": "P1", "userID": "intruder"}
        ).status_code
        == 404
    )


def test_commit_list_errors(client):
    assert client.post("/api/git-commits", json={"projectId": "P1"}).status_code == 400
    assert (
        client.post(
            "/api/git-commits", json={"projectId": "P1", "userId": "intruder"}
        ).status_code
        == 404
    )
    assert (
        client.post(
            "/api/git-commits", json={"projectId": "P1", "userId": "u1", "limit": "many"}
        ).status_code
        == 400
    )


def test_restore(client, services, sandbox_id):
    vcs = services.checkpoints.vcs
    vcs.write(sandbox_id, CWD, "App.tsx", b"v1")
    sha = _commit(client, "v1")
    vcs.write(sandbox_id, CWD, "App.tsx", b"v2")
    _commit(client, "v2")

    response = client.post(
        "/api/git-restore", json={"projectId": "P1", "commitSHA": sha, "userId": "u1"}
    )

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert vcs.tree(sandbox_id, CWD) == {"App.tsx": b"v1"}


def test_restore_errors(client):
    sha = _commit(client)

    foreign = client.post(
        "/api/git-restore", json={"projectId": "P1", "commitSHA": sha, "userId": "u2"}
    )
    assert foreign.status_code == 404
    assert foreign.json()["error"] == "Project not found or access denied"
    unknown = client.post(
        "/api/git-restore", json={"projectId": "P1", "commitSHA": "f" * 40, "userId": "u1"}
    )
    assert unknown.status_code == 404
    missing = client.post("/api/git-restore", json={"projectId": "P1", "userId": "u1"})
    assert missing.status_code == 400


def test_restore_accepts_user_id_spelling(client, services, sandbox_id):
    vcs = services.checkpoints.vcs
    vcs.write(sandbox_id, CWD, "App.tsx", b"v1")
    sha = _commit(client, "v1")
    vcs.write(sandbox_id, CWD, "App.tsx", b"v2")
    _commit(client, "v2")

    response = client.post(
        "/api/git-restore", json={"projectId": "P1", "commitSHA": sha, "userID": "u1"}
    )

    assert response.status_code == 200
    assert vcs.tree(sandbox_id, CWD) == {"App.tsx": b"v1"}


@pytest.mark.parametrize(
    "owner",
    [{"userID": "intruder"}, {"userId": "intruder"}, {}, {"userId": ""}],
)
def test_restore_never_skips_ownership(client, services, sandbox_id, owner):
    vcs = services.checkpoints.vcs
    vcs.write(sandbox_id, CWD, "App.tsx", b"v1")
    sha = _commit(client, "v1")
    vcs.write(sandbox_id, CWD, "App.tsx", b"v2")
    _commit(client, "v2")

    response = client.post(
        "/api/git-restore", json={"projectId": "P1", "commitSHA": sha, **owner}
    )

    assert response.status_code == (404 if owner.get("userID") or owner.get("userId") else 400)
    assert response.json()["success"] is False
    assert vcs.tree(sandbox_id, CWD) == {"App.tsx": b"v2"}


def test_bundle_and_legacy_redirect(client, services):
    script = (
        "mkdir -p dist-static/_expo/static/js/ios"
        " && printf 'var a;' > dist-static/_expo/static/js/ios/index.js"
    )
    services.bundler = BundleBuilder(
        services.object_store, services.commits, export_command=f"sh -c {shlex.quote(script)}"
    )
    sha = _commit(client)

    response = client.post("/api/projects/P1/bundle", json={"userId": "u1"})

    assert response.status_code == 200
    body = response.json()
    assert body["commitId"] == sha
    assert body["manifestUrl"] == f"https://cdn.example.com/bundles/P1/{sha}/ios/manifest.json"

    redirect = client.get(
        f"/api/project/P1/{sha}/_expo/static/js/ios/index.js", follow_redirects=False
    )
    assert redirect.status_code == 307
    assert redirect.headers["location"] == (
        f"https://cdn.example.com/bundles/P1/{sha}/_expo/static/js/ios/index.js"
    )


def test_bundle_requires_commit(client):
    response = client.post("/api/projects/P1/bundle")

    assert response.status_code == 400
    assert client.post("/api/projects/P9/bundle").status_code == 404


def test_cleanup_bundles(client, services):
    shas = [_commit(client, f"change {index}") for index in range(3)]
    for sha in shas:
        services.object_store.put(f"bundles/P1/{sha}/index.js", b"x" * 10, "text/javascript")

    response = client.post("/api/projects/P1/bundles/cleanup", json={"userId": "u1", "keep": 1})

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "deletedCount": 2,
        "freedBytes": 20,
        "errors": [],
    }
    remaining = services.commits.list_for_project("P1", 10)
    assert [commit.github_sha for commit in remaining] == [shas[-1]]
    assert services.object_store.get(f"bundles/P1/{shas[-1]}/index.js") == b"x" * 10


def test_cleanup_bundles_defaults_and_ownership(client, services):
    sha = _commit(client)
    services.object_store.put(f"bundles/P1/{sha}/index.js", b"x", "text/javascript")

    kept = client.post("/api/projects/P1/bundles/cleanup", json={"userID": "u1"})
    assert kept.json()["deletedCount"] == 0
    assert services.object_store.get(f"bundles/P1/{sha}/index.js") == b"x"

    assert (
        client.post("/api/projects/P1/bundles/cleanup", json={"userId": "u2"}).status_code
        == 404
    )
    assert client.post("/api/projects/P1/bundles/cleanup", json={}).status_code == 400
    assert (
        client.post(
            "/api/projects/P1/bundles/cleanup", json={"userId": "u1", "keep": -1}
        ).status_code
        == 400
    )


def test_legacy_redirect_without_bundle(client):
    sha = _commit(client)

    assert client.get(f"/api/project/P1/{sha}/index.js").status_code == 404


def test_check_sandbox(client, provider, sandbox_id):
    assert client.post("/api/check-sandbox", json={"sandboxId": sandbox_id}).json() == {
        "isAlive": True
    }

    provider.delete_sandbox(sandbox_id)
    body = client.post("/api/check-sandbox", json={"sandboxId": sandbox_id}).json()
    assert body["isAlive"] is False
    assert "reason" in body
    assert client.post("/api/check-sandbox", json={}).status_code == 400


def test_pause(client, services, sandbox_id):
    response = client.post("/api/sandbox/pause", json={"projectId": "P1", "userID": "u1"})

    assert response.status_code == 200
    assert response.json()["pausedSandboxId"] == sandbox_id
    assert services.projects.get("P1").status == ProjectStatus.PAUSED
    assert (
        client.post("/api/sandbox/pause", json={"projectId": "P1", "userID": "u1"}).status_code
        == 404
    )


def test_assets(client, provider, sandbox_id):
    manifest = {"a.png": {"blobUrl": "https://cdn/a.png"}, "b.png": {}}
    provider.write_file(sandbox_id, f"{CWD}/assets/manifest.json", json.dumps(manifest).encode())

    response = client.get("/api/assets", params={"sandboxId": sandbox_id})

    assert response.json() == {"assets": [{"blobUrl": "https://cdn/a.png"}]}
    assert client.get("/api/assets").status_code == 400


def test_file_changes_requires_project(client):
    response = client.get("/api/file-changes")

    assert response.status_code == 400
    assert response.json()["error"] == "projectId is required"


def test_unexpected_errors_hide_details(services, monkeypatch):
    def explode(project_id, limit):
        raise RuntimeError("database password is hunter2")

    monkeypatch.setattr(services.commits, "list_for_project", explode)
    client = TestClient(create_app(services), raise_server_exceptions=False)

    response = client.post("/api/git-commits", json={"projectId": "P1", "userId": "u1"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Internal server error"
    assert "hunter2" not in response.text


def test_stream_file_changes_unregisters_on_close(services, sandbox_id):
    connection = QueueConnection()
    services.broadcaster.add_connection("P1", connection)
    services.watcher.start_watching("P1", sandbox_id, CWD, background=False)
    services.broadcaster.broadcast(
        "P1", FileChangeEvent(project_id="P1", kind=FileChangeKind.CHANGED, path="App.tsx")
    )
    connection.close()

    frames = list(stream_file_changes(services, "P1", connection, poll_s=0.01))

    payloads = [json.loads(frame.decode()[len("data: "):]) for frame in frames]
    assert [payload["type"] for payload in payloads] == ["connected", "changed"]
    assert services.broadcaster.connection_count("P1") == 0
    assert not services.watcher.is_watching("P1")
