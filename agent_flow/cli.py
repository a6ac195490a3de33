"""
Agent Flow CLI
───────────────
Command-line entry point. Inside GitHub Actions it reads the triggering
event from ``GITHUB_EVENT_NAME`` / ``GITHUB_EVENT_PATH``; outside it a run
can be started manually for a repository and pull request number.

The process exit status is the pipeline exit code.
"""

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, Optional

from github import GithubException

from .config import PipelineConfig, load_config
from .credentials import CredentialSet, SecretRedactingFilter
from .errors import ConfigError, EventError
from .events import EventKind, PullRequestEvent
from .github_client import GitHubClient
from .pipeline import Pipeline

logger = logging.getLogger(__name__)

USAGE_ERROR = 2

# ── Logging Setup ─────────────────────────────────────────────────────────

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-7s | %(message)s"


def setup_logging(
    level: str = "INFO",
    secrets: Iterable[str] = (),
    log_dir: Optional[Path] = None,
) -> None:
    """Configure root logger with console and file handlers that mask secrets."""
    log_level = getattr(logging, level.upper(), logging.INFO)
    redactor = SecretRedactingFilter(secrets)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_dir / "agent_flow.log"))
        except OSError as exc:
            print(f"Cannot write log file in {log_dir}: {exc}", file=sys.stderr)

    for handler in handlers:
        handler.addFilter(redactor)

    logging.basicConfig(
        level=log_level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


# ── Event Resolution ──────────────────────────────────────────────────────

def resolve_event(
    args: argparse.Namespace,
    config: PipelineConfig,
    credentials: CredentialSet,
) -> Optional[PullRequestEvent]:
    """Build the triggering event from the arguments or the Actions environment."""
    kind = EventKind.from_action(args.kind)

    if args.repo and args.pr:
        if args.branch:
            return PullRequestEvent(
                repository=args.repo,
                number=args.pr,
                base_branch=args.branch,
                kind=kind,
                action=args.kind,
                head_sha=args.sha or "",
            )
        client = GitHubClient(
            credentials.get(config.notify.token_name, ""),
            api_url=config.notify.api_url,
        )
        return client.resolve_event(args.repo, args.pr, kind)

    event_path = args.event_path or os.getenv("GITHUB_EVENT_PATH")
    if not event_path:
        return None
    event_name = args.event_name or os.getenv("GITHUB_EVENT_NAME") or "pull_request"
    return PullRequestEvent.from_event_file(event_path, event_name)


# ── CLI Entry Point ───────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-flow",
        description="Pull request automation trigger for the AI agent flow",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Inside GitHub Actions (event read from GITHUB_EVENT_PATH):
  agent-flow

  # Manual run against a pull request:
  agent-flow --repo owner/repo --pr 42

  # Show the plan without running anything:
  agent-flow --repo owner/repo --pr 42 --branch main --dry-run
        """,
    )
    parser.add_argument("--event-path", help="Path to a pull_request event JSON file")
    parser.add_argument("--event-name", help="Event name (default: $GITHUB_EVENT_NAME)")
    parser.add_argument("--repo", help="GitHub repo (owner/repo)")
    parser.add_argument("--pr", type=int, help="PR number")
    parser.add_argument("--branch", help="Target branch of the PR (skips the API lookup)")
    parser.add_argument("--sha", help="Head commit to check out")
    parser.add_argument(
        "--kind", default="synchronize",
        help="Pull request action for manual runs (default: synchronize)",
    )
    parser.add_argument("--workdir", help="Working directory for the checkout")
    parser.add_argument(
        "--config", default=None,
        help="Path to the pipeline YAML config",
    )
    parser.add_argument(
        "--dry-run", action="store_true",
        help="Print the step plan without running it",
    )
    parser.add_argument(
        "--log-level", default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point: resolve the event, run the pipeline, return its exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        setup_logging(args.log_level)
        logger.error("Invalid configuration: %s", exc)
        return USAGE_ERROR

    credentials = CredentialSet.from_env(config.forwarded_credentials)
    setup_logging(args.log_level, credentials.secret_values(), config.log_dir)

    try:
        event = resolve_event(args, config, credentials)
    except EventError as exc:
        logger.error("Cannot read triggering event: %s", exc)
        return USAGE_ERROR
    except GithubException as exc:
        logger.error("Cannot look up %s#%s: %s", args.repo, args.pr, exc)
        return 1

    if event is None:
        parser.print_help()
        return USAGE_ERROR

    pipeline = Pipeline(config, save_results=not args.dry_run)
    workdir = Path(args.workdir) if args.workdir else None

    if args.dry_run:
        reason = pipeline.trigger.reject_reason(event)
        print(f"Event: {event.label} ({event.kind.value} -> {event.base_branch})")
        if reason:
            print(f"Would be ignored: {reason}")
            return 0
        for line in pipeline.plan(event, workdir):
            print(f"  {line}")
        return 0

    outcome = pipeline.run(event, credentials, workdir)
    return outcome.exit_code


if __name__ == "__main__":
    sys.exit(main())
