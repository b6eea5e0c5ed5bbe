"""
GitHub REST collaborator: repository lookup, branch and pull request creation.
Synchronous (urllib); async callers run it in an executor.
"""

import json
import logging
import random
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from config import github_config
from errors import GitHubError, UnauthorizedError, ValidationError

logger = logging.getLogger(__name__)

USER_AGENT = "CodePilot/1.0"

_SSH_URL_RE = re.compile(r"^git@([^:]+):([^/]+)/(.+?)(?:\.git)?/?$")


def parse_repo_url(url: str) -> Tuple[str, str]:
    """Return (owner, repo) for an https or scp-style git URL."""
    url = (url or "").strip()
    m = _SSH_URL_RE.match(url)
    if m:
        return m.group(2), m.group(3)
    parsed = urllib.parse.urlparse(url)
    parts = [p for p in parsed.path.split("/") if p]
    if parsed.scheme not in ("http", "https", "ssh") or len(parts) < 2:
        raise ValidationError(f"Invalid GitHub repository URL: {url}")
    owner, repo = parts[0], parts[1]
    if repo.endswith(".git"):
        repo = repo[:-4]
    return owner, repo


@dataclass
class PullRequestResult:
    url: str
    number: int
    title: str = ""
    head: str = ""
    base: str = ""
    mocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "number": self.number,
            "title": self.title,
            "head": self.head,
            "base": self.base,
            "mocked": self.mocked,
        }


class GitHubClient:
    """Minimal GitHub REST v3 client authenticated with a personal access token."""

    def __init__(self, token: Optional[str] = None, api_url: Optional[str] = None,
                 timeout: Optional[int] = None):
        self.token = github_config.token if token is None else token
        self.api_url = (api_url or github_config.api_url).rstrip("/")
        self.timeout = timeout or github_config.timeout

    def is_authenticated(self) -> bool:
        return bool(self.token)

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        if not self.is_authenticated():
            raise UnauthorizedError("GitHub API not authenticated")
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        req = urllib.request.Request(
            f"{self.api_url}{path}",
            data=data,
            method=method,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self.token}",
                "User-Agent": USER_AGENT,
                "X-GitHub-Api-Version": "2022-11-28",
                **({"Content-Type": "application/json"} if data is not None else {}),
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            detail = ""
            try:
                detail = json.loads(e.read() or b"{}").get("message", "")
            except ValueError:
                pass
            logger.error(f"GitHub {method} {path} failed: {e.code} {detail}")
            raise GitHubError(f"GitHub API error {e.code}: {detail or e.reason}", status_code=e.code)
        except urllib.error.URLError as e:
            logger.error(f"GitHub {method} {path} unreachable: {e.reason}")
            raise GitHubError(f"GitHub API unreachable: {e.reason}")
        return json.loads(body) if body else None

    def get_repository(self, owner: str, repo: str) -> Dict[str, Any]:
        data = self._request("GET", f"/repos/{owner}/{repo}")
        return {
            "name": data.get("name"),
            "full_name": data.get("full_name"),
            "default_branch": data.get("default_branch"),
            "html_url": data.get("html_url"),
            "private": data.get("private", False),
        }

    def create_branch(self, owner: str, repo: str, branch_name: str, from_branch: str = "main") -> None:
        ref = self._request("GET", f"/repos/{owner}/{repo}/git/ref/heads/{urllib.parse.quote(from_branch)}")
        sha = ref["object"]["sha"]
        self._request("POST", f"/repos/{owner}/{repo}/git/refs",
                      {"ref": f"refs/heads/{branch_name}", "sha": sha})
        logger.info(f"Created branch {branch_name} from {from_branch} in {owner}/{repo}")

    def create_pull_request(self, owner: str, repo: str, title: str, body: str,
                            head: str, base: str = "main") -> PullRequestResult:
        if not self.is_authenticated():
            number = random.randint(1, 1000)
            logger.warning("GitHub API not authenticated - returning mock PR result")
            return PullRequestResult(
                url=f"https://github.com/{owner}/{repo}/pull/{number}",
                number=number,
                title=title,
                head=head,
                base=base,
                mocked=True,
            )
        data = self._request("POST", f"/repos/{owner}/{repo}/pulls",
                             {"title": title, "body": body, "head": head, "base": base})
        result = PullRequestResult(
            url=data["html_url"],
            number=data["number"],
            title=data.get("title", title),
            head=head,
            base=base,
        )
        logger.info(f"Created PR #{result.number}: {result.url}")
        return result
