"""
Pipeline Steps
───────────────
The ordered units of work a run executes:
  - AcknowledgeStep  best-effort status comment on the pull request
  - CheckoutStep     exact checkout of the event's head commit
  - SetupStep        runtime presence and version check
  - InstallStep      lock-file driven dependency install
  - DelegateStep     the external analysis/generation engine

Steps report failure by raising ``StepError``. The pipeline stops on a
fail-fast step's error and records a best-effort step's error and moves on.
"""

import base64
import logging
import os
import re
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from .config import (
    CheckoutConfig,
    DelegateConfig,
    InstallConfig,
    NotifyConfig,
    SetupConfig,
)
from .credentials import CredentialSet
from .errors import StepError
from .events import PullRequestEvent
from .github_client import GitHubClient, NotificationResult

logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RunContext:
    """Everything a step may read. Built once per run."""
    event: PullRequestEvent
    workdir: Path
    credentials: CredentialSet
    base_env: dict = field(default_factory=lambda: dict(os.environ))


@dataclass
class StepResult:
    """Outcome of a single step."""
    name: str
    status: StepStatus = StepStatus.PENDING
    fail_fast: bool = True
    exit_code: Optional[int] = None
    message: str = ""
    started_at: float = 0.0
    completed_at: float = 0.0

    @property
    def duration_seconds(self) -> float:
        return self.completed_at - self.started_at if self.completed_at else 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "fail_fast": self.fail_fast,
            "exit_code": self.exit_code,
            "message": self.message,
            "duration_seconds": round(self.duration_seconds, 3),
        }


Runner = Callable[..., subprocess.CompletedProcess]


def run_command(
    argv: Sequence[str],
    cwd: Path,
    env: Optional[dict] = None,
    timeout: Optional[float] = None,
    runner: Runner = subprocess.run,
    capture: bool = False,
) -> subprocess.CompletedProcess:
    """
    Run a command to completion without a shell.

    Output is inherited unless ``capture`` is set. A missing executable is
    reported as a ``StepError`` with exit code 127; a timeout as one with
    exit code 124.
    """
    logger.debug("Running %s in %s", " ".join(argv), cwd)
    try:
        return runner(
            list(argv),
            cwd=str(cwd),
            env=env,
            timeout=timeout,
            check=False,
            capture_output=capture,
            text=capture,
        )
    except FileNotFoundError as exc:
        raise StepError(f"Command not found: {argv[0]}", COMMAND_NOT_FOUND) from exc
    except subprocess.TimeoutExpired as exc:
        raise StepError(f"Command timed out after {timeout}s: {argv[0]}", 124) from exc
    except OSError as exc:
        raise StepError(f"Could not start {argv[0]}: {exc}", COMMAND_NOT_FOUND) from exc


class Step:
    """Base class for a pipeline step."""

    name = "step"
    fail_fast = True

    def __init__(self, runner: Runner = subprocess.run):
        self.runner = runner

    def run(self, ctx: RunContext) -> Optional[int]:
        """Execute the step. Return an exit code or raise ``StepError``."""
        raise NotImplementedError

    def describe(self, ctx: RunContext) -> str:
        """One-line description for dry-run plans."""
        return self.name


class AcknowledgeStep(Step):
    """Post the fixed status comment. A failure is recorded, never fatal."""

    name = "acknowledge"
    fail_fast = False

    def __init__(
        self,
        config: NotifyConfig,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
    ):
        super().__init__()
        self.config = config
        self.client_factory = client_factory

    def notify(self, ctx: RunContext) -> NotificationResult:
        if not self.config.enabled:
            return NotificationResult.failure("status comment disabled")
        token = ctx.credentials.get(self.config.token_name, "")
        client = self.client_factory(
            token, api_url=self.config.api_url, timeout=self.config.timeout_seconds
        )
        try:
            return client.post_status_comment(
                ctx.event.repository, ctx.event.number, self.config.message
            )
        finally:
            client.close()

    def run(self, ctx: RunContext) -> Optional[int]:
        logger.info("Creating an immediate placeholder comment on %s.", ctx.event.label)
        result = self.notify(ctx)
        if not result.ok:
            logger.warning(
                "Status comment on %s not posted (%s); continuing.",
                ctx.event.label, result.error,
            )
            raise StepError(f"Status comment not posted: {result.error}")
        return 0

    def describe(self, ctx: RunContext) -> str:
        return (
            f"POST {self.config.api_url}/repos/{ctx.event.repository}"
            f"/issues/{ctx.event.number}/comments"
        )


class CheckoutStep(Step):
    """Fetch and check out the event's head commit into the working directory."""

    name = "checkout"

    def __init__(self, config: CheckoutConfig, runner: Runner = subprocess.run):
        super().__init__(runner)
        self.config = config

    def ref_for(self, event: PullRequestEvent) -> str:
        return event.head_sha or f"refs/pull/{event.number}/head"

    def git_env(self, ctx: RunContext) -> dict:
        """Environment for git; the token travels as an extra header, never in argv."""
        env = dict(ctx.base_env)
        env["GIT_TERMINAL_PROMPT"] = "0"
        token = ctx.credentials.get(self.config.token_name, "")
        if token:
            basic = base64.b64encode(f"x-access-token:{token}".encode()).decode()
            env["GIT_CONFIG_COUNT"] = "1"
            env["GIT_CONFIG_KEY_0"] = "http.extraheader"
            env["GIT_CONFIG_VALUE_0"] = f"AUTHORIZATION: basic {basic}"
        return env

    def clone_url(self, event: PullRequestEvent) -> str:
        try:
            return self.config.clone_url.format(repository=event.repository)
        except (KeyError, IndexError, ValueError) as exc:
            raise StepError(
                f"Invalid clone_url template {self.config.clone_url!r}: {exc!r}"
            ) from exc

    def commands(self, ctx: RunContext) -> list[list[str]]:
        url = self.clone_url(ctx.event)
        commands = []
        if not (ctx.workdir / ".git").exists():
            commands.append(["git", "init", "--quiet"])
            commands.append(["git", "remote", "add", "origin", url])
        else:
            commands.append(["git", "remote", "set-url", "origin", url])
        fetch = ["git", "fetch", "--no-tags", "--quiet"]
        if self.config.depth > 0:
            fetch.append(f"--depth={self.config.depth}")
        fetch += ["origin", self.ref_for(ctx.event)]
        commands.append(fetch)
        commands.append(["git", "checkout", "--force", "--detach", "--quiet", "FETCH_HEAD"])
        return commands

    def run(self, ctx: RunContext) -> Optional[int]:
        try:
            ctx.workdir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StepError(f"Cannot create working directory {ctx.workdir}: {exc}") from exc
        env = self.git_env(ctx)
        for argv in self.commands(ctx):
            proc = run_command(argv, ctx.workdir, env=env, runner=self.runner)
            if proc.returncode != 0:
                raise StepError(
                    f"'{' '.join(argv[:2])}' exited with {proc.returncode}",
                    proc.returncode,
                )
        logger.info(
            "Checked out %s at %s into %s.",
            ctx.event.label, self.ref_for(ctx.event), ctx.workdir,
        )
        return 0

    def describe(self, ctx: RunContext) -> str:
        return f"git checkout {self.ref_for(ctx.event)} into {ctx.workdir}"


_VERSION_RE = re.compile(r"v?(\d+)(?:\.\d+)*")


def parse_major_version(output: str) -> Optional[int]:
    """Extract the major version from ``--version`` output like ``v18.19.0``."""
    match = _VERSION_RE.search(output or "")
    return int(match.group(1)) if match else None


class SetupStep(Step):
    """Verify the runtime the delegated script needs is installed."""

    name = "setup"

    def __init__(
        self,
        config: SetupConfig,
        runner: Runner = subprocess.run,
        which: Callable[[str], Optional[str]] = shutil.which,
    ):
        super().__init__(runner)
        self.config = config
        self.which = which

    def run(self, ctx: RunContext) -> Optional[int]:
        runtime = self.config.runtime
        if self.which(runtime) is None:
            raise StepError(f"Runtime '{runtime}' not found on PATH", COMMAND_NOT_FOUND)

        proc = run_command(
            [runtime, "--version"], ctx.workdir, env=ctx.base_env,
            runner=self.runner, capture=True,
        )
        if proc.returncode != 0:
            raise StepError(f"'{runtime} --version' exited with {proc.returncode}", proc.returncode)

        major = parse_major_version(proc.stdout)
        if major is None or major < self.config.min_major_version:
            raise StepError(
                f"{runtime} {(proc.stdout or '').strip() or 'unknown'} is older than "
                f"required major version {self.config.min_major_version}"
            )
        logger.info("Using %s %s.", runtime, proc.stdout.strip())
        return 0

    def describe(self, ctx: RunContext) -> str:
        return f"{self.config.runtime} >= {self.config.min_major_version}"


class InstallStep(Step):
    """Install dependencies exactly as pinned by the lock file."""

    name = "install"

    def __init__(self, config: InstallConfig, runner: Runner = subprocess.run):
        super().__init__(runner)
        self.config = config

    def run(self, ctx: RunContext) -> Optional[int]:
        lock_path = ctx.workdir / self.config.lock_file
        if not lock_path.is_file():
            raise StepError(f"Lock file {self.config.lock_file} is missing")

        proc = run_command(self.config.command, ctx.workdir, env=ctx.base_env, runner=self.runner)
        if proc.returncode != 0:
            raise StepError(
                f"'{' '.join(self.config.command)}' exited with {proc.returncode}",
                proc.returncode,
            )
        return 0

    def describe(self, ctx: RunContext) -> str:
        return " ".join(self.config.command)


class DelegateStep(Step):
    """Run the external engine with the credential set in its environment."""

    name = "delegate"

    def __init__(self, config: DelegateConfig, runner: Runner = subprocess.run):
        super().__init__(runner)
        self.config = config

    def environment(self, ctx: RunContext) -> dict:
        env = dict(ctx.base_env)
        forwarded = {k: v for k, v in ctx.credentials.as_env().items()
                     if k in self.config.credentials}
        env.update(forwarded)
        return env

    def run(self, ctx: RunContext) -> Optional[int]:
        logger.info("Running %s.", " ".join(self.config.command))
        start = time.time()
        proc = run_command(
            self.config.command,
            ctx.workdir,
            env=self.environment(ctx),
            timeout=self.config.timeout_seconds,
            runner=self.runner,
        )
        logger.info(
            "Delegated step exited with %d after %.1fs.",
            proc.returncode, time.time() - start,
        )
        if proc.returncode != 0:
            raise StepError(f"Delegated step exited with {proc.returncode}", proc.returncode)
        return 0

    def describe(self, ctx: RunContext) -> str:
        names = ", ".join(self.config.credentials)
        return f"{' '.join(self.config.command)} (env: {names})"
