"""Exception types raised across the agent flow pipeline."""

from typing import Optional


class AgentFlowError(Exception):
    """Base class for all agent flow errors."""


class ConfigError(AgentFlowError):
    """The pipeline configuration is missing, malformed or inconsistent."""


class EventError(AgentFlowError):
    """The triggering event payload could not be interpreted."""


class StepError(AgentFlowError):
    """A fail-fast pipeline step did not complete successfully."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code
