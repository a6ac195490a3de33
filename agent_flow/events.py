"""
Pull Request Events
────────────────────
Parses GitHub pull request event payloads (webhook deliveries or the
Actions event file) and decides whether an event should start a run.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import TriggerConfig
from .errors import EventError

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    OPENED = "opened"
    SYNCHRONIZE = "synchronize"
    REOPENED = "reopened"
    OTHER = "other"

    @classmethod
    def from_action(cls, action: str) -> "EventKind":
        """Map a GitHub ``action`` string to an event kind."""
        try:
            return cls(action)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class PullRequestEvent:
    """An immutable pull request lifecycle event."""
    repository: str
    number: int
    base_branch: str
    kind: EventKind
    action: str = ""
    head_sha: str = ""
    head_ref: str = ""
    event_name: str = "pull_request"

    @classmethod
    def from_payload(cls, payload: dict, event_name: str = "pull_request") -> "PullRequestEvent":
        """Build an event from a GitHub ``pull_request`` payload."""
        if not isinstance(payload, dict):
            raise EventError("Event payload must be a JSON object.")

        try:
            pr = payload["pull_request"]
            repository = payload["repository"]["full_name"]
            number = int(pr["number"])
            base_branch = pr["base"]["ref"]
        except (KeyError, TypeError, ValueError) as exc:
            raise EventError(f"Not a pull request payload: missing {exc}") from exc

        head = pr.get("head") or {}
        action = payload.get("action", "") or ""
        return cls(
            repository=repository,
            number=number,
            base_branch=base_branch,
            kind=EventKind.from_action(action),
            action=action,
            head_sha=head.get("sha", "") or "",
            head_ref=head.get("ref", "") or "",
            event_name=event_name,
        )

    @classmethod
    def from_event_file(cls, path: str, event_name: str = "pull_request") -> "PullRequestEvent":
        """Read the JSON event file GitHub Actions exposes as ``GITHUB_EVENT_PATH``."""
        event_path = Path(path)
        try:
            with open(event_path, "r", encoding="utf-8") as f:
                payload = json.load(f)
        except OSError as exc:
            raise EventError(f"Cannot read event file {event_path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise EventError(f"Event file {event_path} is not valid JSON: {exc}") from exc
        return cls.from_payload(payload, event_name)

    @property
    def label(self) -> str:
        return f"{self.repository}#{self.number}"

    def to_dict(self) -> dict:
        """Serialise the event for the run record."""
        return {
            "repository": self.repository,
            "number": self.number,
            "base_branch": self.base_branch,
            "kind": self.kind.value,
            "action": self.action,
            "head_sha": self.head_sha,
            "head_ref": self.head_ref,
            "event_name": self.event_name,
        }


class TriggerFilter:
    """Accept only pull request events of the configured kinds on the target branch."""

    def __init__(self, config: Optional[TriggerConfig] = None):
        self.config = config or TriggerConfig()

    def accepts(self, event: PullRequestEvent) -> bool:
        return self.reject_reason(event) is None

    def reject_reason(self, event: PullRequestEvent) -> Optional[str]:
        """Return why the event is ignored, or None when it should run."""
        if event.event_name != "pull_request":
            return f"event '{event.event_name}' is not a pull request event"
        if event.kind.value not in self.config.kinds:
            return f"action '{event.action or event.kind.value}' does not trigger a run"
        if event.base_branch != self.config.branch:
            return (
                f"target branch '{event.base_branch}' is not "
                f"'{self.config.branch}'"
            )
        return None
