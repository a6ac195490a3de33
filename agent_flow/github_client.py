"""
GitHub API Client
─────────────────
Handles the pipeline's interactions with the GitHub API:
  - Posting the early "agent starting" status comment on a pull request
  - Resolving a pull request's base branch and head commit for manual runs
  - Rate limit handling with exponential backoff for read calls
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests
from github import Auth, Github, GithubException, RateLimitExceededException
from github.PullRequest import PullRequest

from .events import EventKind, PullRequestEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of a best-effort notification; never raised into the pipeline."""
    ok: bool
    status_code: Optional[int] = None
    error: str = ""

    @classmethod
    def success(cls, status_code: int) -> "NotificationResult":
        return cls(ok=True, status_code=status_code)

    @classmethod
    def failure(cls, error: str, status_code: Optional[int] = None) -> "NotificationResult":
        return cls(ok=False, status_code=status_code, error=error)


class GitHubClient:
    """Thin GitHub client for the pull request automation trigger."""

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.github.com",
        timeout: float = 10.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        """Initialise the client with a bearer token and the API base URL."""
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self._owns_session = session is None
        self.session = session or requests.Session()
        self._github: Optional[Github] = None

    @property
    def github(self) -> Github:
        """Lazily constructed PyGithub handle for read calls."""
        if self._github is None:
            auth = Auth.Token(self.token) if self.token else None
            self._github = Github(auth=auth, base_url=self.api_url)
        return self._github

    def close(self) -> None:
        """Release the HTTP connection pool if this client created it."""
        if self._owns_session:
            self.session.close()

    # ── Status Comment ────────────────────────────────────────────────────

    def comment_url(self, repository: str, number: int) -> str:
        return f"{self.api_url}/repos/{repository}/issues/{number}/comments"

    def post_status_comment(
        self, repository: str, number: int, body: str
    ) -> NotificationResult:
        """
        Post one issue comment on the pull request.

        Exactly one request is made; the response body is not read. Any
        failure is returned as an error result instead of being raised.
        """
        if not self.token:
            return NotificationResult.failure("no token available")

        url = self.comment_url(repository, number)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/vnd.github+json",
        }
        try:
            response = self.session.post(
                url, json={"body": body}, headers=headers, timeout=self.timeout
            )
        except requests.RequestException as exc:
            return NotificationResult.failure(f"request failed: {exc}")

        if 200 <= response.status_code < 300:
            logger.info("Posted status comment on %s#%d.", repository, number)
            return NotificationResult.success(response.status_code)
        return NotificationResult.failure(
            f"unexpected status {response.status_code}", response.status_code
        )

    # ── Pull Request Lookup ───────────────────────────────────────────────

    def get_pull_request(self, repo_full_name: str, pr_number: int) -> PullRequest:
        """Fetch a pull request by number."""
        repo = self._with_retry(lambda: self.github.get_repo(repo_full_name))
        return self._with_retry(lambda: repo.get_pull(pr_number))

    def resolve_event(
        self,
        repo_full_name: str,
        pr_number: int,
        kind: EventKind = EventKind.SYNCHRONIZE,
    ) -> PullRequestEvent:
        """Build an event for a manual run from the live pull request."""
        pr = self.get_pull_request(repo_full_name, pr_number)
        return PullRequestEvent(
            repository=repo_full_name,
            number=pr.number,
            base_branch=pr.base.ref,
            kind=kind,
            action=kind.value,
            head_sha=pr.head.sha,
            head_ref=pr.head.ref,
        )

    # ── Internal Helpers ──────────────────────────────────────────────────

    def _with_retry(self, func, retries: Optional[int] = None):
        """Execute a GitHub API call with exponential backoff on rate limits."""
        retries = retries or self.max_retries
        for attempt in range(retries):
            try:
                return func()
            except RateLimitExceededException as exc:
                wait_seconds = _rate_limit_wait(exc, attempt)
                logger.warning(
                    "Rate limited. Waiting %.0f seconds (attempt %d/%d).",
                    wait_seconds, attempt + 1, retries,
                )
                time.sleep(min(wait_seconds, 60))
            except GithubException as exc:
                if exc.status >= 500 and attempt < retries - 1:
                    wait = 2 ** attempt
                    logger.warning(
                        "Server error %d. Retrying in %ds.", exc.status, wait
                    )
                    time.sleep(wait)
                else:
                    raise
        raise RuntimeError("Max retries exceeded for GitHub API call.")


def _rate_limit_wait(exc: RateLimitExceededException, attempt: int) -> float:
    """Seconds until the rate limit resets, from the response headers if present."""
    headers = exc.headers or {}
    reset = headers.get("x-ratelimit-reset") or headers.get("X-RateLimit-Reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 1)
        except ValueError:
            pass
    return float(2 ** attempt)
