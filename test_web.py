"""
Tests for the HTTP surface: SSE run streams, publish, diff and terminal routes.
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

import web.state as _state
from config import app_config
from conftest import WIDGET_FILES, FakeGitHub, FakeSandbox, make_llm
from sessions import SessionRegistry
from test_agent import REPO_URL, happy_replies
from test_diff import SAMPLE_DIFF
from web import app
from web.api_files import build_file_tree


@pytest.fixture
def env(monkeypatch):
    """Route collaborators replaced with fakes; yields (client, sandboxes, github)."""
    sandboxes = []
    github = FakeGitHub()

    def sandbox_factory():
        sandbox = FakeSandbox(files=WIDGET_FILES)
        sandbox.command_output["git diff HEAD~1"] = (SAMPLE_DIFF, "", 0)
        sandbox.command_output["ls"] = ("README.md\nserver\n", "", 0)
        sandboxes.append(sandbox)
        return sandbox

    monkeypatch.setattr(_state, "registry", SessionRegistry(idle_timeout=600, cleanup_interval=60))
    monkeypatch.setattr(_state, "sandbox_factory", sandbox_factory)
    monkeypatch.setattr(_state, "github_factory", lambda: github)
    monkeypatch.setattr(_state, "llm_factory", lambda: make_llm(*happy_replies()))
    monkeypatch.setattr(_state, "_llm", None)
    monkeypatch.setattr(app_config, "environment", "development")

    with TestClient(app) as client:
        yield client, sandboxes, github


def sse_events(response):
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


def test_health(env):
    client, _, _ = env
    assert client.get("/api/health").json() == {"status": "ok", "sessions": 0}


def test_code_run_streams_until_complete(env):
    client, sandboxes, github = env
    response = client.post("/api/code", json={"repositoryUrl": REPO_URL, "prompt": "Add a health check endpoint"})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")

    events = sse_events(response)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "complete"
    assert events[-1]["data"]["prUrl"].startswith("https://github.com/acme/widget/pull/")
    assert len(github.pull_requests) == 1
    assert sandboxes[0].cleanup_count == 1


@pytest.mark.parametrize("body", [{}, {"repositoryUrl": REPO_URL}, {"prompt": "x"}, {"repositoryUrl": " ", "prompt": "x"}])
def test_code_run_validation(env, body):
    client, sandboxes, _ = env
    response = client.post("/api/code", json=body)
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert sandboxes == []


def test_code_run_rejects_non_json(env):
    client, _, _ = env
    response = client.post("/api/code", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def pause(client):
    response = client.post("/api/code", json={
        "repositoryUrl": REPO_URL, "prompt": "Add a health check endpoint", "verificationMode": True,
    })
    paused = sse_events(response)[-1]
    assert paused["type"] == "pause_for_verification"
    return paused["data"]


def test_verification_flow(env):
    """Pause, inspect the diff and terminal, publish once, then the session is gone."""
    client, sandboxes, github = env
    data = pause(client)
    session_id = data["sessionId"]
    assert data["filesChanged"]
    assert client.get("/api/health").json()["sessions"] == 1

    diff = client.get("/api/diff", params={"session_id": session_id}).json()
    assert diff["diff"] == SAMPLE_DIFF
    assert diff["summary"]["files"] == 4
    assert [f["path"] for f in diff["files"]][:2] == ["server/app.py", "server/health.py"]

    cwd = client.get("/api/terminal/cwd", params={"session_id": session_id}).json()
    assert cwd == {"ok": True, "cwd": "/sandbox/repo"}
    ran = client.post("/api/terminal/run", json={"session_id": session_id, "command": "ls"}).json()
    assert ran["ok"] and ran["stdout"] == "README.md\nserver\n" and ran["returncode"] == 0
    outside = client.post("/api/terminal/run", json={"session_id": session_id, "command": "ls", "cwd": "/etc"})
    assert outside.status_code == 400

    published = client.post("/api/publish", json={"sessionId": session_id})
    tail = sse_events(published)
    assert tail[-1]["type"] == "complete"
    assert tail[-1]["data"]["branchName"] == data["branchName"]
    assert sandboxes[0].cleanup_count == 1

    again = client.post("/api/publish", json={"sessionId": session_id})
    assert again.status_code == 404
    assert again.json()["code"] == "NOT_FOUND"
    assert len(github.pull_requests) == 1
    assert client.get("/api/diff", params={"session_id": session_id}).status_code == 404


def test_file_tree_and_save(env):
    """The editor sees the paused checkout and can save into it."""
    client, sandboxes, _ = env
    session_id = pause(client)["sessionId"]

    tree = client.get("/api/files", params={"session_id": session_id}).json()
    assert tree["ok"]
    assert [n["name"] for n in tree["tree"]] == ["server", "src", "README.md", "package.json"]
    server = tree["tree"][0]
    assert server["type"] == "directory" and server["path"] == "server"
    assert [n["path"] for n in server["children"]] == ["server/app.py", "server/health.py", "server/routes.py"]
    assert tree["tree"][1]["children"][0]["children"][0]["path"] == "src/components/App.jsx"

    saved = client.put("/api/file", json={"session_id": session_id, "path": "server/health.py", "content": "OK = 1\n"})
    assert saved.json() == {"ok": True, "path": "server/health.py", "size": 7}
    assert sandboxes[0].files["server/health.py"] == "OK = 1\n"
    read = client.get("/api/file", params={"session_id": session_id, "path": "server/health.py"}).json()
    assert read["content"] == "OK = 1\n"
    assert client.post("/api/file", json={"session_id": session_id, "path": "notes.md", "content": ""}).json()["ok"]

    tail = sse_events(client.post("/api/publish", json={"sessionId": session_id}))
    assert tail[-1]["type"] == "complete"
    assert tail[-1]["data"]["filesChanged"] == 2
    assert len(sandboxes[0].commits) == 2
    assert sandboxes[0].pushes == [tail[-1]["data"]["branchName"]]


def test_file_routes_reject_bad_requests(env):
    client, sandboxes, _ = env
    session_id = pause(client)["sessionId"]

    escaped = client.put("/api/file", json={"session_id": session_id, "path": "../outside.txt", "content": "x"})
    assert escaped.status_code == 400
    assert not escaped.json()["ok"]
    assert "../outside.txt" not in sandboxes[0].files
    assert client.put("/api/file", json={"session_id": session_id, "content": "x"}).status_code == 400
    assert client.put("/api/file", json={"session_id": session_id, "path": "a.txt", "content": 3}).status_code == 400
    assert client.get("/api/file", params={"session_id": session_id, "path": "missing.py"}).status_code == 404
    assert client.get("/api/file", params={"session_id": session_id}).status_code == 400


def test_build_file_tree_from_real_listing():
    tree = build_file_tree([
        {"path": "src", "type": "directory"},
        {"path": "src/app.py", "type": "file", "size": 3},
        {"path": "docs", "type": "directory"},
        {"path": "README.md", "type": "file", "size": 9},
    ])
    assert tree == [
        {"name": "docs", "path": "docs", "type": "directory", "children": []},
        {"name": "src", "path": "src", "type": "directory",
         "children": [{"name": "app.py", "path": "src/app.py", "type": "file", "size": 3}]},
        {"name": "README.md", "path": "README.md", "type": "file", "size": 9},
    ]


def test_unknown_sessions(env):
    client, _, _ = env
    assert client.get("/api/diff", params={"session_id": "nope"}).status_code == 404
    assert client.get("/api/terminal/cwd", params={"session_id": "nope"}).status_code == 404
    assert client.post("/api/terminal/run", json={"session_id": "nope", "command": "ls"}).status_code == 404
    assert client.get("/api/files", params={"session_id": "nope"}).status_code == 404
    assert client.put("/api/file", json={"session_id": "nope", "path": "a.txt", "content": ""}).status_code == 404
    assert client.post("/api/publish", json={}).status_code == 400


def test_terminal_disabled_in_production(env, monkeypatch):
    client, _, _ = env
    session_id = pause(client)["sessionId"]
    monkeypatch.setattr(app_config, "environment", "production")
    assert client.get("/api/terminal/cwd", params={"session_id": session_id}).status_code == 403
    response = client.post("/api/terminal/run", json={"session_id": session_id, "command": "ls"})
    assert response.status_code == 403


def test_shutdown_tears_down_paused_sessions(monkeypatch):
    sandboxes = []

    def sandbox_factory():
        sandboxes.append(FakeSandbox(files=WIDGET_FILES))
        return sandboxes[-1]

    monkeypatch.setattr(_state, "registry", SessionRegistry(idle_timeout=600))
    monkeypatch.setattr(_state, "sandbox_factory", sandbox_factory)
    monkeypatch.setattr(_state, "github_factory", FakeGitHub)
    monkeypatch.setattr(_state, "llm_factory", lambda: make_llm(*happy_replies()))
    monkeypatch.setattr(_state, "_llm", None)

    with TestClient(app) as client:
        pause(client)
        assert sandboxes[0].cleanup_count == 0
    assert sandboxes[0].cleanup_count == 1
    assert len(_state.registry) == 0


def test_disconnected_client_stream_is_drained():
    """A client leaving mid-run does not block the producer on a full queue."""
    from agent.events import EventStream, StreamEvent
    from web import sse

    async def main():
        events = EventStream(maxsize=2)
        await events.emit(StreamEvent(type="start", progress=0))
        source = sse.event_source(events)
        first = await source.__anext__()
        await source.aclose()
        assert len(sse._draining) == 1
        drain = next(iter(sse._draining))

        for n in range(5):
            await asyncio.wait_for(events.emit(StreamEvent(type="progress", message=str(n))), timeout=1)
        await events.close()
        await asyncio.wait_for(drain, timeout=1)
        await asyncio.sleep(0)
        return first

    first = asyncio.run(main())
    assert json.loads(first[len("data: "):])["type"] == "start"
    assert not sse._draining
