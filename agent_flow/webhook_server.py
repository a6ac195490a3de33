"""
Webhook Server (FastAPI)
─────────────────────────
FastAPI application that listens for GitHub webhook events
and starts a pipeline run for accepted pull request events.

Features:
  - HMAC webhook signature verification
  - Trigger filtering before anything is scheduled
  - Each run executes as a background task in its own working directory
"""

import hashlib
import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from .cli import setup_logging
from .config import load_config
from .credentials import CredentialSet
from .errors import EventError
from .events import EventKind, PullRequestEvent
from .pipeline import Pipeline

logger = logging.getLogger(__name__)

# ── Pydantic Models ───────────────────────────────────────────────────────


class ManualRunRequest(BaseModel):
    """Request body for the manual run endpoint."""
    repo: str
    pr: int
    branch: Optional[str] = None
    sha: str = ""
    kind: str = "synchronize"


class RunResponse(BaseModel):
    """Response body for run trigger endpoints."""
    message: str
    repo: str
    pr: int


class HealthResponse(BaseModel):
    """Response body for the health check endpoint."""
    status: str
    service: str


# ── App Lifespan & State ──────────────────────────────────────────────────

_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """Return (and lazily initialise) the shared, read-only pipeline definition."""
    global _pipeline
    if _pipeline is None:
        _pipeline = Pipeline(load_config(os.getenv("AGENT_FLOW_CONFIG")))
    return _pipeline


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the pipeline configuration on startup."""
    pipeline = get_pipeline()
    credentials = CredentialSet.from_env(pipeline.config.forwarded_credentials)
    setup_logging(
        os.getenv("LOG_LEVEL", "INFO"),
        credentials.secret_values(),
        pipeline.config.log_dir,
    )
    logger.info("Agent flow webhook server starting up.")
    yield
    logger.info("Webhook server shutting down.")


app = FastAPI(
    title="AI Agent Flow",
    description=(
        "Pull request automation trigger that runs the AI agent flow "
        "for pull requests against the target branch."
    ),
    version="1.0.0",
    lifespan=lifespan,
)


# ── Webhook Signature Verification ───────────────────────────────────────

def verify_signature(payload_body: bytes, signature: str) -> bool:
    """Verify GitHub webhook HMAC-SHA256 signature."""
    secret = os.getenv("WEBHOOK_SECRET", "")
    if not secret:
        logger.warning("WEBHOOK_SECRET not set; skipping verification.")
        return True

    expected = "sha256=" + hmac.new(
        secret.encode("utf-8"),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected, signature)


# ── Background Task ──────────────────────────────────────────────────────

def run_pipeline(event: PullRequestEvent) -> None:
    """Run the pipeline for one event (executed as a background task)."""
    try:
        pipeline = get_pipeline()
        credentials = CredentialSet.from_env(pipeline.config.forwarded_credentials)
        outcome = pipeline.run(event, credentials)
        logger.info(
            "Run for %s finished: %s (exit code %d).",
            event.label, outcome.state.value, outcome.exit_code,
        )
    except Exception as exc:
        logger.error("Run for %s failed: %s", event.label, exc)


# ── Routes ────────────────────────────────────────────────────────────────

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health():
    """Health check endpoint."""
    return HealthResponse(status="ok", service="ai-agent-flow")


@app.post("/webhook", tags=["GitHub"])
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Handle GitHub webhook events.

    Configure your GitHub repo webhook to send `pull_request` events to this endpoint.
    Accepted events run the pipeline asynchronously in the background.
    """
    body = await request.body()

    if not verify_signature(body, x_hub_signature_256 or ""):
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")

    payload = await request.json()

    if x_github_event == "ping":
        logger.info("Received ping event.")
        return {"message": "pong"}

    if x_github_event != "pull_request":
        logger.debug("Ignoring event: %s", x_github_event)
        return {"message": f"Ignored event: {x_github_event}"}

    try:
        event = PullRequestEvent.from_payload(payload, x_github_event)
    except EventError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    reason = get_pipeline().trigger.reject_reason(event)
    if reason:
        logger.debug("Ignoring %s: %s", event.label, reason)
        return {"message": f"Ignored: {reason}"}

    logger.info(
        "PR event: %s (%s), scheduling run.", event.label, event.kind.value,
    )
    background_tasks.add_task(run_pipeline, event)
    return RunResponse(message="Run scheduled", repo=event.repository, pr=event.number)


@app.post(
    "/run",
    response_model=RunResponse,
    tags=["Manual"],
    summary="Trigger a run manually",
)
async def manual_run(body: ManualRunRequest, background_tasks: BackgroundTasks):
    """
    Trigger a pipeline run manually via API.

    The same trigger filter applies: a run against a branch other than the
    configured one is rejected. Without a branch, the configured one is used.
    """
    pipeline = get_pipeline()
    event = PullRequestEvent(
        repository=body.repo,
        number=body.pr,
        base_branch=body.branch or pipeline.config.trigger.branch,
        kind=EventKind.from_action(body.kind),
        action=body.kind,
        head_sha=body.sha,
    )
    reason = pipeline.trigger.reject_reason(event)
    if reason:
        raise HTTPException(status_code=422, detail=reason)

    background_tasks.add_task(run_pipeline, event)
    return RunResponse(message="Run scheduled", repo=body.repo, pr=body.pr)


# ── Entry Point ───────────────────────────────────────────────────────────

def main():
    """Start the FastAPI webhook server with uvicorn."""
    import uvicorn

    host = os.getenv("WEBHOOK_HOST", "0.0.0.0")
    port = int(os.getenv("WEBHOOK_PORT", "3000"))

    logger.info("Starting FastAPI webhook server on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
