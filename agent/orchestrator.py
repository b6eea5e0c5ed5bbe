"""
CodingAgent: the phase state machine for one run.

start -> sandbox -> clone -> analyze -> plan -> branch -> implement -> commit,
then either push -> PR -> complete, or a pause for human verification. A paused
run is registered in the SessionRegistry and finished later by resume(), which
runs only the push/PR tail on the same sandbox.

Events go onto an EventStream in program order. The run always ends with
complete or error, or suspends at pause_for_verification.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from config import app_config
from errors import GitHubError, ImplementationError, PilotError, PlanningError, SandboxError, error_payload
from github_api import GitHubClient, parse_repo_url
from sandbox import Sandbox, create_sandbox
from sessions import Session, SessionRegistry
from tools import parse_current_branch

from .analyzer import RepositoryAnalysis, RepositoryAnalyzer
from .diff import files_changed_since, head_commit
from .events import EventStream, StreamEvent
from .executor import Executor
from .llm import ToolCallingClient
from .plan import ImplementationPlan, extract_json_object
from .planner import Planner, fallback_plan
from .prompts import format_pr_prompt

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "pilot"


def make_branch_name(prefix: str = BRANCH_PREFIX) -> str:
    return f"{prefix}/{int(time.time() * 1000)}"


def fallback_pr_details(prompt: str, plan: Optional[ImplementationPlan]) -> Dict[str, str]:
    approach = plan.approach if plan and plan.approach else "The AI agent's plan was not available."
    return {
        "title": f"Feat: Apply AI-generated changes for task: {prompt[:50]}",
        "body": (
            "This pull request was generated by an AI agent based on the following prompt:\n\n"
            f"> {prompt}\n\n**Implementation Approach:**\n{approach}"
        ),
    }


class CodingAgent:
    """Drives one coding run against a sandbox and reports progress as events."""

    def __init__(
        self,
        repository_url: str,
        prompt: str,
        verification_mode: bool = False,
        sandbox: Optional[Sandbox] = None,
        llm: Optional[ToolCallingClient] = None,
        github: Optional[GitHubClient] = None,
        registry: Optional[SessionRegistry] = None,
        session: Optional[Session] = None,
        strategy: Optional[str] = None,
    ):
        if verification_mode and registry is None:
            raise ValueError("verification mode needs a session registry")
        self.session = session or Session(
            repository_url=repository_url,
            prompt=prompt,
            verification_mode=verification_mode,
        )
        self.repository_url = repository_url
        self.prompt = prompt
        self.verification_mode = verification_mode
        self.sandbox = sandbox if sandbox is not None else self.session.sandbox
        self.llm = llm or ToolCallingClient()
        self.github = github or GitHubClient()
        self.registry = registry
        self.strategy = strategy or app_config.execution_strategy

        self.analysis: Optional[RepositoryAnalysis] = None
        self.plan: Optional[ImplementationPlan] = self.session.plan
        self.default_branch: str = self.session.default_branch
        self.branch_name: Optional[str] = self.session.branch_name
        self.base_commit: Optional[str] = self.session.base_commit
        self.files_changed: List[str] = list(self.session.files_changed)

        self._events: Optional[EventStream] = None
        self._paused = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_session(cls, session: Session, **kwargs) -> "CodingAgent":
        """Rebind a paused session to a new agent for publishing."""
        return cls(
            repository_url=session.repository_url,
            prompt=session.prompt,
            verification_mode=False,
            session=session,
            **kwargs,
        )

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def paused(self) -> bool:
        return self._paused

    async def _emit(self, kind: str, message: str, progress: Optional[int] = None,
                    data: Optional[Dict[str, Any]] = None) -> None:
        event = StreamEvent(type=kind, message=message, progress=progress, data=data)
        logger.debug(f"[{self.session_id[:8]}] {kind}: {message}")
        if self._events is not None:
            await self._events.emit(event)

    async def _tool(self, name: str, params: Dict[str, Any]):
        result = await self.sandbox.call_tool(name, params)
        if not result.success:
            logger.warning(f"{name} failed: {result.error}")
        return result

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self) -> EventStream:
        """Run the full flow on its own task; returns the stream to drain."""
        return self._launch(self.run)

    def start_resume(self, branch_name: Optional[str] = None) -> EventStream:
        """Run the publish tail of a paused session on its own task."""
        return self._launch(lambda events: self.resume(events, branch_name))

    def _launch(self, runner) -> EventStream:
        events = EventStream()
        self._task = asyncio.get_running_loop().create_task(runner(events))
        return events

    async def run(self, events: EventStream) -> None:
        self._events = events
        try:
            await self._emit("start", "Code Pilot agent starting...", progress=0,
                             data={"sessionId": self.session_id})
            await self._run_phases()
        except Exception as e:
            logger.exception(f"Agent run {self.session_id} failed")
            await self._emit("error", f"Agent failed: {e}", data=error_payload(e))
        finally:
            if not self._paused and self.sandbox is not None:
                logger.info("Cleaning up sandbox...")
                await self.sandbox.cleanup()
            elif self._paused:
                logger.info("Keeping sandbox alive for verification...")
            await events.close()

    async def resume(self, events: EventStream, branch_name: Optional[str] = None) -> None:
        """Push and open the PR for a session claimed from the registry.

        The sandbox is always torn down afterwards, whatever the outcome.
        """
        self._events = events
        try:
            async with self.session.lock:
                branch = branch_name or self.session.branch_name
                if not branch:
                    raise PilotError("No branch name recorded for this session")
                if self.sandbox is None or not self.sandbox.is_initialized:
                    raise SandboxError("Session sandbox is no longer available")
                self.branch_name = branch
                await self._commit_pending()
                self.files_changed = await self._collect_changes(self.files_changed)
                await self._publish(branch)
        except Exception as e:
            logger.exception(f"Publishing session {self.session_id} failed")
            await self._emit("error", f"Failed to continue after verification: {e}", data=error_payload(e))
        finally:
            logger.info("Cleaning up sandbox after verification...")
            await self.session.close()
            await events.close()

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _run_phases(self) -> None:
        if self.sandbox is None:
            self.sandbox = create_sandbox()
        self.session.sandbox = self.sandbox
        await self.sandbox.initialize()
        await self._emit("sandbox_create", "Secure sandbox environment created", progress=5)

        await self._clone()

        await self._emit("progress", "Repository cloned, analyzing structure...", progress=20)
        analyzer = RepositoryAnalyzer(self.sandbox, self.llm)
        self.analysis, _ = await analyzer.analyze(emit=self._emit)
        self.default_branch = self.analysis.default_branch
        await self._emit(
            "progress",
            f"Repository analysis complete: {self.analysis.total_files} files found",
            progress=40,
            data=self.analysis.to_dict(),
        )

        self.plan = await self._create_plan()
        await self._emit(
            "progress",
            f"Implementation plan created: {len(self.plan.files_to_modify)} files to modify, "
            f"{len(self.plan.new_files)} new files",
            progress=50,
        )

        self.branch_name = make_branch_name()
        await self._create_branch(self.branch_name)
        self.base_commit = await head_commit(self.sandbox)

        await self._emit("progress", "Implementing changes...", progress=60)
        executor = Executor(self.llm, self.sandbox, emit=self._emit, strategy=self.strategy)
        execution = await executor.execute(self.plan, self.prompt, self.branch_name)
        await self._emit("progress", "Changes implemented, checking for uncommitted changes...", progress=85)
        await self._commit_pending()
        self.files_changed = await self._collect_changes(execution.files_written)

        if self.verification_mode:
            await self._pause()
            return

        await self._publish(self.branch_name)

    async def _clone(self) -> None:
        await self._emit("progress", "Cloning repository...", progress=10)
        result = await self._tool("clone_repository", {
            "url": self.repository_url,
            "destination": ".",
            "depth": 1,
        })
        if not result.success:
            raise SandboxError(f"Failed to clone repository: {result.error}")

    async def _create_plan(self) -> ImplementationPlan:
        await self._emit("plan", "Creating implementation plan...")
        planner = Planner(self.llm, self.sandbox)
        try:
            plan = await planner.create_plan(self.prompt, self.analysis)
            message = "Implementation plan created."
        except PlanningError:
            raise
        except Exception as e:
            logger.error(f"Planning failed: {e}")
            plan = fallback_plan(self.prompt, self.analysis)
            message = "Created fallback plan due to planning error."
            if plan.is_empty():
                raise PlanningError(f"Planning failed and no fallback files were found: {e}")
        logger.info(f"Plan: modify={plan.files_to_modify} new={plan.new_files}")
        await self._emit("plan", message, data=plan.to_dict())
        return plan

    async def _create_branch(self, branch_name: str) -> None:
        await self._emit("progress", "Creating feature branch...", progress=55, data={"branchName": branch_name})
        result = await self._tool("git_branch", {"repo_path": ".", "branch_name": branch_name})
        if not result.success:
            raise PilotError(f"Failed to create branch: {result.error}")
        detected = parse_current_branch(result.stdout or "")
        if detected:
            self.default_branch = detected
            logger.info(f"Detected default branch from git operation: {detected}")

    async def _has_changes(self) -> bool:
        result = await self._tool("git_status", {"repo_path": "."})
        if not result.success:
            await self._emit("debug", "Could not reliably check for changes, assuming changes were made",
                             data={"hasChanges": True, "error": result.error})
            return True
        has_changes = bool((result.data or {}).get("has_changes"))
        await self._emit("debug", f"Working tree has {'uncommitted' if has_changes else 'no uncommitted'} changes",
                         data={"hasChanges": has_changes})
        return has_changes

    async def _commit_pending(self) -> None:
        if not await self._has_changes():
            logger.info("All changes already committed by the executor")
            await self._emit("debug", "Changes were already committed", data={"skipped": True})
            return

        await self._emit("tool_call", "Staging changes...", data={"tool": "git_add"})
        added = await self._tool("git_add", {"repo_path": ".", "files": ["."]})
        if not added.success:
            raise ImplementationError(f"Failed to stage changes: {added.error}")

        await self._emit("tool_call", "Committing changes...", data={"tool": "git_commit"})
        committed = await self._tool("git_commit", {"repo_path": ".", "message": self._commit_message()})
        if not committed.success:
            raise ImplementationError(f"Failed to commit changes: {committed.error}")

    async def _collect_changes(self, files_written: List[str]) -> List[str]:
        """Files that differ from the branch point. Raises ImplementationError when there are none."""
        if self.base_commit:
            changed = await files_changed_since(self.sandbox, self.base_commit)
        else:
            logger.warning("Branch point unknown, reporting the files the executor wrote")
            changed = _dedupe(files_written)
        if not changed:
            raise ImplementationError("Implementation produced no changes to publish")
        logger.info(f"Files changed: {changed}")
        return changed

    def _commit_message(self) -> str:
        subject = self.prompt.strip().splitlines()[0] if self.prompt.strip() else "Apply requested changes"
        if len(subject) > 72:
            subject = subject[:69] + "..."
        body = self.plan.approach if self.plan else ""
        return f"{subject}\n\n{body}".strip()

    async def _pause(self) -> None:
        self.session.sandbox = self.sandbox
        self.session.default_branch = self.default_branch
        self.session.branch_name = self.branch_name
        self.session.base_commit = self.base_commit
        self.session.plan = self.plan
        self.session.files_changed = list(self.files_changed)
        await self.registry.register(self.session)
        self._paused = True
        await self._emit(
            "pause_for_verification",
            "Changes implemented and committed. Pausing for user verification...",
            progress=85,
            data={
                "sessionId": self.session_id,
                "branchName": self.branch_name,
                "filesChanged": list(self.files_changed),
                "repoPath": self.sandbox.working_directory,
            },
        )

    async def _publish(self, branch_name: str) -> None:
        await self._emit("progress", "Pushing changes to GitHub...", progress=90)
        pushed = await self._tool("git_push", {"repo_path": ".", "branch_name": branch_name})
        if not pushed.success:
            raise PilotError(f"Failed to push changes: {pushed.error}")

        await self._emit("progress", "Creating pull request...", progress=95)
        await self._emit("pr_create", "Creating pull request...")
        details = await self._generate_pr_details()
        pr = await self._create_pull_request(branch_name, details["title"], details["body"])

        await self._emit("pr_created", f"Pull request created: {pr.url}", data=pr.to_dict())
        await self._emit(
            "complete",
            "Task completed successfully!",
            progress=100,
            data={
                "prUrl": pr.url,
                "prNumber": pr.number,
                "branchName": branch_name,
                "filesChanged": len(self.files_changed),
                "summary": self.plan.approach if self.plan else "Changes verified and published by user",
            },
        )

    async def _generate_pr_details(self) -> Dict[str, str]:
        if self.plan is None:
            return fallback_pr_details(self.prompt, None)
        try:
            text = await self.llm.generate_text(format_pr_prompt(self.prompt, self.plan))
            data = extract_json_object(text)
            if not data or not isinstance(data.get("title"), str) or not isinstance(data.get("body"), str):
                raise ValueError("no title/body in PR details response")
            if not data["title"].strip():
                raise ValueError("empty PR title")
            return {"title": data["title"].strip(), "body": data["body"]}
        except Exception as e:
            logger.warning(f"Failed to generate PR details, using fallback: {e}")
            return fallback_pr_details(self.prompt, self.plan)

    async def _create_pull_request(self, head: str, title: str, body: str):
        owner, repo = parse_repo_url(self.repository_url)
        loop = asyncio.get_running_loop()
        base = self.default_branch
        if self.github.is_authenticated():
            try:
                info = await loop.run_in_executor(None, self.github.get_repository, owner, repo)
                if info.get("default_branch"):
                    base = info["default_branch"]
                    logger.info(f"Using repository's default branch: {base}")
            except PilotError as e:
                logger.warning(f"Could not get repository info, using base branch {base}: {e}")
        try:
            return await loop.run_in_executor(
                None, lambda: self.github.create_pull_request(owner, repo, title, body, head, base)
            )
        except PilotError as e:
            raise GitHubError(f"Failed to create PR: {e}", status_code=e.status_code)


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


async def claim_session(registry: SessionRegistry, session_id: str, **kwargs) -> CodingAgent:
    """Take a paused session out of the registry and bind it to a new agent.

    Raises NotFoundError when the session is unknown, expired or already claimed.
    """
    session = await registry.pop(session_id)
    return CodingAgent.from_session(session, registry=registry, **kwargs)
