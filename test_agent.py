"""
End-to-end tests for the coding agent state machine, driven with fakes.
"""

import asyncio
import json

import pytest

from agent import CodingAgent, claim_session
from agent.diff import get_current_diff
from agent.executor import Executor
from agent.plan import ImplementationPlan
from conftest import WIDGET_FILES, FakeGitHub, FakeSandbox, HAS_GIT, make_llm, text_reply, tool_reply
from errors import ImplementationError, NotFoundError
from sandbox import LocalSandbox
from sessions import SessionRegistry

REPO_URL = "https://github.com/acme/widget"
PROMPT = "Add a health check endpoint"

PHASE_MARKERS = ("start", "sandbox_create", "analyze", "plan", "implement", "pr_create", "pr_created", "complete")


def happy_replies(plan_reply=None):
    """Layout, plan, one write, final answer, PR details."""
    return [
        text_reply("not json"),
        plan_reply or text_reply(json.dumps({
            "approach": "Add a /health route",
            "filesToModify": ["server/app.py"],
            "newFiles": ["server/health.py"],
        })),
        tool_reply(("write_file", {"path": "server/health.py", "content": "def health():\n    return 'ok'\n"})),
        text_reply("Added the health check."),
        text_reply('{"title": "Add health check endpoint", "body": "Adds /health."}'),
    ]


async def drain(stream):
    return [event async for event in stream]


def run_agent(sandbox, llm, github=None, verification_mode=False, registry=None, prompt=PROMPT):
    github = github or FakeGitHub()

    async def main():
        agent = CodingAgent(REPO_URL, prompt, verification_mode=verification_mode, sandbox=sandbox,
                            llm=llm, github=github, registry=registry)
        return agent, await drain(agent.start())
    return asyncio.run(main())


def phases(events):
    out = []
    for e in events:
        if e.type in PHASE_MARKERS and (not out or out[-1] != e.type):
            out.append(e.type)
    return out


def test_successful_run_phase_order():
    """A non-verification run emits the phase markers in order and ends with complete."""
    sandbox = FakeSandbox(files=WIDGET_FILES)
    github = FakeGitHub()
    agent, events = run_agent(sandbox, make_llm(*happy_replies()), github)

    assert phases(events) == list(PHASE_MARKERS)
    assert events[-1].type == "complete"
    assert [e.type for e in events].count("error") == 0

    data = events[-1].data
    assert data["prUrl"] == "https://github.com/acme/widget/pull/1"
    assert data["filesChanged"] == 1
    assert data["branchName"].startswith("pilot/")

    pr = github.pull_requests[0]
    assert pr["title"] == "Add health check endpoint"
    assert pr["head"] == data["branchName"]
    assert pr["base"] == "main"
    assert sandbox.files["server/health.py"].startswith("def health")
    assert sandbox.commits and sandbox.pushes == [data["branchName"]]
    assert sandbox.cleanup_count == 1


def test_progress_is_monotonic():
    _, events = run_agent(FakeSandbox(files=WIDGET_FILES), make_llm(*happy_replies()))
    progress = [e.progress for e in events if e.progress is not None]
    assert progress == sorted(progress)
    assert progress[0] == 0 and progress[-1] == 100


def test_pr_base_uses_upstream_default_branch():
    github = FakeGitHub(authenticated=True, default_branch="trunk")
    run_agent(FakeSandbox(files=WIDGET_FILES), make_llm(*happy_replies()), github)
    assert github.pull_requests[0]["base"] == "trunk"


def test_pr_details_fall_back_when_generation_fails():
    replies = happy_replies()
    replies[-1] = text_reply("I'd call it 'health check'")
    github = FakeGitHub()
    run_agent(FakeSandbox(files=WIDGET_FILES), make_llm(*replies), github)
    pr = github.pull_requests[0]
    assert pr["title"] == f"Feat: Apply AI-generated changes for task: {PROMPT[:50]}"
    assert "> Add a health check endpoint" in pr["body"]
    assert "Add a /health route" in pr["body"]


def test_clone_failure_ends_with_single_error():
    """An unreachable repository stops the run before any git mutation."""
    sandbox = FakeSandbox(files=WIDGET_FILES, fail_tools={"clone_repository"})
    github = FakeGitHub()
    _, events = run_agent(sandbox, make_llm(*happy_replies()), github)

    errors = [e for e in events if e.type == "error"]
    assert len(errors) == 1
    assert events[-1] is errors[0]
    assert "clone" in errors[0].message.lower()
    assert not {"git_branch", "git_commit", "git_push"} & set(sandbox.tool_names())
    assert github.pull_requests == []
    assert sandbox.cleanup_count == 1


def test_garbage_plan_falls_back_and_implements():
    """A non-JSON plan answer falls back to heuristic files and still implements them."""
    sandbox = FakeSandbox(files=WIDGET_FILES)
    llm = make_llm(*happy_replies(plan_reply=text_reply("Let me think about it... no JSON, sorry.")))
    _, events = run_agent(sandbox, llm, prompt="Add a health check to the api server")

    plan_event = [e for e in events if e.type == "plan" and e.data][0]
    assert plan_event.data["filesToModify"] == ["server/app.py", "server/routes.py"]
    assert any(e.type == "implement" for e in events)
    assert events[-1].type == "complete"
    executor_call = llm.service.calls[2]
    assert "write_file" in executor_call["tools"]


def test_empty_plan_aborts_before_branch():
    sandbox = FakeSandbox(files={"LICENSE": "MIT"})
    llm = make_llm(text_reply("not json"), text_reply('{"filesToModify": [], "newFiles": []}'))
    _, events = run_agent(sandbox, llm)

    assert events[-1].type == "error"
    assert "plan" in events[-1].message.lower()
    assert "git_branch" not in sandbox.tool_names()
    assert not any(e.type == "implement" for e in events)


def test_push_failure_is_fatal():
    sandbox = FakeSandbox(files=WIDGET_FILES, fail_tools={"git_push"})
    github = FakeGitHub()
    _, events = run_agent(sandbox, make_llm(*happy_replies()), github)
    assert events[-1].type == "error"
    assert "push" in events[-1].message.lower()
    assert github.pull_requests == []
    assert sandbox.cleanup_count == 1


def test_implementation_without_changes_is_fatal():
    """An executor that writes nothing ends the run before anything is pushed."""
    replies = happy_replies()
    del replies[2]
    sandbox = FakeSandbox(files=WIDGET_FILES)
    github = FakeGitHub()
    _, events = run_agent(sandbox, make_llm(*replies), github)

    assert events[-1].type == "error"
    assert "no changes" in events[-1].message.lower()
    assert sandbox.commits == [] and sandbox.pushes == []
    assert github.pull_requests == []
    assert sandbox.cleanup_count == 1


def test_files_changed_counts_committed_executor_work():
    """Files the executor committed itself still count as changed."""
    replies = happy_replies()
    replies[3:3] = [tool_reply(("git_add", {"repo_path": ".", "files": ["."]}),
                               ("git_commit", {"repo_path": ".", "message": "Add health"}))]
    _, events = run_agent(FakeSandbox(files=WIDGET_FILES), make_llm(*replies))
    assert events[-1].data["filesChanged"] == 1


def test_commit_step_skips_when_executor_committed():
    replies = happy_replies()
    replies[3:3] = [tool_reply(("git_add", {"repo_path": ".", "files": ["."]}),
                               ("git_commit", {"repo_path": ".", "message": "Add health"}))]
    sandbox = FakeSandbox(files=WIDGET_FILES)
    _, events = run_agent(sandbox, make_llm(*replies))
    assert sandbox.commits == ["Add health"]
    assert any(e.type == "debug" and e.data.get("skipped") for e in events)
    assert events[-1].type == "complete"


def test_verification_pause_and_resume():
    """Pausing keeps the sandbox alive; resuming publishes exactly once."""
    sandbox = FakeSandbox(files=WIDGET_FILES)
    github = FakeGitHub()
    llm = make_llm(*happy_replies())

    async def main():
        registry = SessionRegistry(idle_timeout=600)
        agent = CodingAgent(REPO_URL, PROMPT, verification_mode=True, sandbox=sandbox,
                            llm=llm, github=github, registry=registry)
        events = await drain(agent.start())

        paused = events[-1]
        assert paused.type == "pause_for_verification"
        assert not any(e.type == "complete" for e in events)
        session_id = paused.data["sessionId"]
        assert session_id in registry
        assert paused.data["filesChanged"] == ["server/health.py"]
        assert sandbox.cleanup_count == 0
        assert (await sandbox.call_tool("read_file", {"path": "server/health.py"})).success
        assert sandbox.pushes == []

        resumed = await claim_session(registry, session_id, llm=llm, github=github)
        tail = await drain(resumed.start_resume())
        assert tail[-1].type == "complete"
        assert tail[-1].data["prUrl"].startswith("https://github.com/acme/widget/pull/")
        assert tail[-1].data["branchName"] == paused.data["branchName"]
        assert session_id not in registry

        with pytest.raises(NotFoundError):
            await claim_session(registry, session_id, llm=llm, github=github)

    asyncio.run(main())
    assert len(github.pull_requests) == 1
    assert sandbox.cleanup_count == 1


def test_concurrent_resumes_create_one_pr():
    sandbox = FakeSandbox(files=WIDGET_FILES)
    github = FakeGitHub()
    llm = make_llm(*happy_replies())

    async def main():
        registry = SessionRegistry(idle_timeout=600)
        agent = CodingAgent(REPO_URL, PROMPT, verification_mode=True, sandbox=sandbox,
                            llm=llm, github=github, registry=registry)
        events = await drain(agent.start())
        session_id = events[-1].data["sessionId"]

        claims = await asyncio.gather(
            claim_session(registry, session_id, llm=llm, github=github),
            claim_session(registry, session_id, llm=llm, github=github),
            return_exceptions=True,
        )
        agents = [c for c in claims if isinstance(c, CodingAgent)]
        assert len(agents) == 1
        assert sum(isinstance(c, NotFoundError) for c in claims) == 1
        await drain(agents[0].start_resume())

    asyncio.run(main())
    assert len(github.pull_requests) == 1


def test_resume_failure_still_tears_down():
    sandbox = FakeSandbox(files=WIDGET_FILES)
    llm = make_llm(*happy_replies())

    async def main():
        registry = SessionRegistry(idle_timeout=600)
        agent = CodingAgent(REPO_URL, PROMPT, verification_mode=True, sandbox=sandbox,
                            llm=llm, github=FakeGitHub(), registry=registry)
        session_id = (await drain(agent.start()))[-1].data["sessionId"]
        sandbox.fail_tools.add("git_push")
        resumed = await claim_session(registry, session_id, llm=llm, github=FakeGitHub())
        return await drain(resumed.start_resume())

    tail = asyncio.run(main())
    assert tail[-1].type == "error"
    assert tail[-1].message.startswith("Failed to continue after verification")
    assert sandbox.cleanup_count == 1


def test_verification_mode_requires_registry():
    with pytest.raises(ValueError):
        CodingAgent(REPO_URL, PROMPT, verification_mode=True, sandbox=FakeSandbox(), llm=make_llm())


# ============================================================
# Executor
# ============================================================

def execute(strategy, replies, files=None, plan=None):
    sandbox = FakeSandbox(files=files if files is not None else WIDGET_FILES)
    llm = make_llm(*replies)
    emitted = []

    async def emit(kind, message, data=None):
        emitted.append((kind, message, data))

    async def main():
        await sandbox.initialize()
        executor = Executor(llm, sandbox, emit=emit, strategy=strategy)
        return await executor.execute(plan or ImplementationPlan(approach="Add /health",
                                                                 files_to_modify=["server/app.py"]),
                                      PROMPT, "pilot/1")
    return sandbox, llm, emitted, asyncio.run(main())


def test_direct_strategy_rewrites_files():
    code = "from flask import Flask\napp = Flask(__name__)\n\n@app.get('/health')\ndef health():\n    return 'ok'\n"
    sandbox, llm, emitted, result = execute("direct", [text_reply(f"Here is the updated code:\n```python\n{code}```")])
    assert result.files_written == ["server/app.py"]
    assert sandbox.files["server/app.py"] == code.rstrip("\n")
    assert ("file_change", "File modified: server/app.py", {"path": "server/app.py"}) in emitted
    assert "from flask import Flask" in llm.service.calls[0]["messages"][0]["content"]


def test_direct_strategy_retries_invalid_output():
    sandbox, llm, _, _ = execute("direct", [
        text_reply("Sure thing, I changed it."),
        text_reply("def health():\n    return 'ok'\n"),
    ])
    assert len(llm.service.calls) == 2
    assert "IMPORTANT" in llm.service.calls[1]["messages"][0]["content"]
    assert sandbox.files["server/app.py"] == "def health():\n    return 'ok'\n"


def test_direct_strategy_writes_after_retry_cap():
    sandbox, llm, _, result = execute("direct", [text_reply("Sure thing.")] * 5)
    assert len(llm.service.calls) == 3
    assert result.files_written == ["server/app.py"]
    assert sandbox.files["server/app.py"] == "Sure thing.\n"


def test_autonomous_strategy_reports_tool_activity():
    sandbox, llm, emitted, result = execute("autonomous", [
        tool_reply(("read_file", {"path": "nope.py"}),
                   ("write_file", {"path": "server/app.py", "content": "x = 1\n"})),
        text_reply("done"),
    ])
    kinds = [k for k, _, _ in emitted]
    assert "tool_error" in kinds and "tool_call" in kinds and "file_change" in kinds
    assert result.files_written == ["server/app.py"]
    assert result.summary == "done"
    written = [d for k, _, d in emitted if k == "tool_call" and d["tool"] == "write_file"][0]
    assert written["params"]["content"] == "<6 chars>"


def test_empty_plan_cannot_be_executed():
    with pytest.raises(ImplementationError):
        execute("autonomous", [], plan=ImplementationPlan())


@pytest.mark.skipif(not HAS_GIT, reason="git binary not available")
def test_local_sandbox_end_to_end(origin_repo, tmp_path):
    """Real clone through to the verification pause; the diff shows the committed change."""
    llm = make_llm(*happy_replies())

    async def main():
        registry = SessionRegistry(idle_timeout=600)
        sandbox = LocalSandbox(base_dir=str(tmp_path))
        agent = CodingAgent(origin_repo.as_uri(), PROMPT, verification_mode=True,
                            sandbox=sandbox, llm=llm, github=FakeGitHub(), registry=registry)
        events = await drain(agent.start())
        assert events[-1].type == "pause_for_verification", [e.message for e in events]
        assert events[-1].data["filesChanged"] == ["server/health.py"]
        session_id = events[-1].data["sessionId"]
        root = sandbox.working_directory

        async with registry.use(session_id) as session:
            assert session.base_commit
            diff = await get_current_diff(session.sandbox, session.base_commit)
        assert await registry.remove(session_id)
        return root, diff

    root, diff = asyncio.run(main())
    assert "server/health.py" in diff
    assert "+def health():" in diff
    assert not (tmp_path / root).exists()
