"""
Pipeline Orchestrator
─────────────────────
End-to-end run for one pull request event:
filter → acknowledge → checkout → setup → install → delegate.

Steps run strictly in order. The first fail-fast failure ends the run;
the acknowledgment is best-effort and its failure is only recorded. Each
run writes a JSON record (without credential values) to the log directory.
"""

import json
import logging
import subprocess
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import PipelineConfig
from .credentials import CredentialSet
from .errors import StepError
from .events import PullRequestEvent, TriggerFilter
from .steps import (
    AcknowledgeStep,
    CheckoutStep,
    DelegateStep,
    InstallStep,
    RunContext,
    SetupStep,
    Step,
    StepResult,
    StepStatus,
)

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RunOutcome:
    """Final state of one run."""
    event: PullRequestEvent
    state: RunState = RunState.PENDING
    steps: list[StepResult] = field(default_factory=list)
    failed_step: str = ""
    exit_code: int = 0
    reason: str = ""
    started_at: str = ""
    completed_at: str = ""

    def step(self, name: str) -> Optional[StepResult]:
        for result in self.steps:
            if result.name == name:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "event": self.event.to_dict(),
            "state": self.state.value,
            "exit_code": self.exit_code,
            "failed_step": self.failed_step,
            "reason": self.reason,
            "steps": [s.to_dict() for s in self.steps],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


def default_steps(config: PipelineConfig, runner=subprocess.run) -> list[Step]:
    """The fixed step sequence of the pull request automation trigger."""
    return [
        AcknowledgeStep(config.notify),
        CheckoutStep(config.checkout, runner=runner),
        SetupStep(config.setup, runner=runner),
        InstallStep(config.install, runner=runner),
        DelegateStep(config.delegate, runner=runner),
    ]


class Pipeline:
    """Runs the step sequence for events accepted by the trigger filter."""

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        steps: Optional[list[Step]] = None,
        save_results: bool = True,
    ):
        self.config = config or PipelineConfig()
        self.trigger = TriggerFilter(self.config.trigger)
        self.steps = steps if steps is not None else default_steps(self.config)
        self.save_results = save_results

    def workdir_for(self, event: PullRequestEvent) -> Path:
        """A fresh working directory per run so concurrent runs never share state."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        slug = event.repository.replace("/", "__")
        return self.config.workspace / f"{slug}-pr{event.number}-{timestamp}"

    def plan(self, event: PullRequestEvent, workdir: Optional[Path] = None) -> list[str]:
        """Describe what a run would do, without doing it."""
        ctx = RunContext(
            event=event,
            workdir=workdir or self.workdir_for(event),
            credentials=CredentialSet(),
        )
        return [f"{step.name}: {step.describe(ctx)}" for step in self.steps]

    def run(
        self,
        event: PullRequestEvent,
        credentials: CredentialSet,
        workdir: Optional[Path] = None,
    ) -> RunOutcome:
        """Run the pipeline for one event and return its outcome."""
        outcome = RunOutcome(
            event=event,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

        reason = self.trigger.reject_reason(event)
        if reason:
            logger.info("Ignoring %s: %s.", event.label, reason)
            outcome.state = RunState.SKIPPED
            outcome.reason = reason
            outcome.completed_at = datetime.now(timezone.utc).isoformat()
            return outcome

        ctx = RunContext(
            event=event,
            workdir=Path(workdir) if workdir else self.workdir_for(event),
            credentials=credentials,
        )
        logger.info("Starting run for %s (%s) in %s.", event.label, event.kind.value, ctx.workdir)
        outcome.state = RunState.RUNNING
        start_time = time.time()

        for step in self.steps:
            result = self._run_step(step, ctx)
            outcome.steps.append(result)
            if result.status == StepStatus.FAILED and step.fail_fast:
                outcome.state = RunState.FAILED
                outcome.failed_step = step.name
                outcome.reason = result.message
                outcome.exit_code = result.exit_code or 1
                break
        else:
            outcome.state = RunState.SUCCEEDED

        outcome.completed_at = datetime.now(timezone.utc).isoformat()
        elapsed = time.time() - start_time

        if outcome.state == RunState.SUCCEEDED:
            logger.info("Run for %s succeeded in %.1fs.", event.label, elapsed)
        else:
            logger.error(
                "Run for %s failed at step '%s' after %.1fs: %s",
                event.label, outcome.failed_step, elapsed, outcome.reason,
            )

        if self.save_results:
            self._save_results(outcome)
        return outcome

    def _run_step(self, step: Step, ctx: RunContext) -> StepResult:
        result = StepResult(name=step.name, fail_fast=step.fail_fast)
        result.status = StepStatus.RUNNING
        result.started_at = time.time()
        logger.info("Step '%s' started.", step.name)
        try:
            exit_code = step.run(ctx)
        except StepError as exc:
            result.status = StepStatus.FAILED
            result.exit_code = exc.exit_code
            result.message = str(exc)
        except OSError as exc:
            result.status = StepStatus.FAILED
            result.message = f"{type(exc).__name__}: {exc}"
        else:
            result.exit_code = exit_code
            if step.fail_fast or exit_code == 0:
                result.status = StepStatus.SUCCEEDED
            else:
                result.status = StepStatus.FAILED
                result.message = "best-effort step did not succeed"
        result.completed_at = time.time()
        logger.info(
            "Step '%s' %s in %.1fs.",
            step.name, result.status.value, result.duration_seconds,
        )
        return result

    # ── Output & Logging ──────────────────────────────────────────────────

    def _save_results(self, outcome: RunOutcome) -> Optional[Path]:
        """Save the run record as JSON in the log directory."""
        log_dir = self.config.log_dir
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
            json_path = log_dir / f"run_pr{outcome.event.number}_{timestamp}.json"
            with open(json_path, "w") as f:
                json.dump(outcome.to_dict(), f, indent=2, default=str)
        except OSError as exc:
            logger.warning("Could not save run record to %s: %s", log_dir, exc)
            return None
        logger.info("Saved run record to %s.", json_path)
        return json_path
