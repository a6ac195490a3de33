"""
Pipeline Configuration
───────────────────────
Loads the pipeline configuration from YAML and layers environment
overrides on top of the built-in defaults:
  - Trigger filter (target branch, accepted pull request actions)
  - Status comment endpoint and message
  - Checkout, runtime setup, dependency install and delegate commands
  - Names of the credentials forwarded to the delegated script
"""

import logging
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "agent_flow.yaml"

DEFAULT_STATUS_MESSAGE = (
    "⚙️ AI Agent is starting up. Be back soon with a code review and test generation!"
)

DEFAULT_CREDENTIAL_NAMES = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "LLM_PROVIDER",
    "GITHUB_TOKEN",
)


@dataclass(frozen=True)
class TriggerConfig:
    """Which pull request events start a run."""
    branch: str = "main"
    kinds: tuple[str, ...] = ("opened", "synchronize", "reopened")


@dataclass(frozen=True)
class NotifyConfig:
    """Early acknowledgment comment settings."""
    enabled: bool = True
    api_url: str = "https://api.github.com"
    message: str = DEFAULT_STATUS_MESSAGE
    token_name: str = "GITHUB_TOKEN"
    timeout_seconds: float = 10.0


@dataclass(frozen=True)
class CheckoutConfig:
    """How the event's head commit is fetched into the working directory."""
    clone_url: str = "https://github.com/{repository}.git"
    depth: int = 1
    token_name: str = "GITHUB_TOKEN"


@dataclass(frozen=True)
class SetupConfig:
    """Runtime the delegated script requires."""
    runtime: str = "node"
    min_major_version: int = 18


@dataclass(frozen=True)
class InstallConfig:
    """Lock-file driven dependency install."""
    lock_file: str = "package-lock.json"
    command: tuple[str, ...] = ("npm", "ci")


@dataclass(frozen=True)
class DelegateConfig:
    """The external analysis/generation engine."""
    command: tuple[str, ...] = ("npx", "tsx", "scripts/ai-flow.ts")
    credentials: tuple[str, ...] = DEFAULT_CREDENTIAL_NAMES
    timeout_seconds: Optional[float] = None


@dataclass(frozen=True)
class PipelineConfig:
    """Complete, read-only configuration for one pipeline run."""
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    checkout: CheckoutConfig = field(default_factory=CheckoutConfig)
    setup: SetupConfig = field(default_factory=SetupConfig)
    install: InstallConfig = field(default_factory=InstallConfig)
    delegate: DelegateConfig = field(default_factory=DelegateConfig)
    workspace: Path = Path("workspace")
    log_dir: Path = Path("logs")

    @property
    def forwarded_credentials(self) -> tuple[str, ...]:
        """Every credential name the run needs to read from the environment."""
        names = list(self.delegate.credentials)
        for extra in (self.notify.token_name, self.checkout.token_name):
            if extra not in names:
                names.append(extra)
        return tuple(names)


_SECTIONS = {
    "trigger": TriggerConfig,
    "notify": NotifyConfig,
    "checkout": CheckoutConfig,
    "setup": SetupConfig,
    "install": InstallConfig,
    "delegate": DelegateConfig,
}

_COMMAND_KEYS = {"command"}
_LIST_KEYS = {"kinds", "credentials"}


def load_config(config_path: Optional[str] = None) -> PipelineConfig:
    """
    Build the pipeline configuration.

    Reads the YAML file at ``config_path`` (or the default location when it
    exists), then applies environment overrides. A missing default file is
    not an error; a missing explicit file is.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    data: dict = {}
    if path.exists():
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.debug("Loaded pipeline config from %s.", path)
    elif config_path:
        raise ConfigError(f"Config file not found: {path}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping.")

    config = _build_config(data)
    return _apply_env_overrides(config)


def _build_config(data: dict) -> PipelineConfig:
    unknown = set(data) - set(_SECTIONS) - {"workspace", "log_dir"}
    if unknown:
        raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    sections: dict[str, Any] = {}
    for name, section_cls in _SECTIONS.items():
        sections[name] = _build_section(name, section_cls, data.get(name) or {})

    kwargs: dict[str, Any] = dict(sections)
    if data.get("workspace"):
        kwargs["workspace"] = Path(str(data["workspace"]))
    if data.get("log_dir"):
        kwargs["log_dir"] = Path(str(data["log_dir"]))
    return PipelineConfig(**kwargs)


def _build_section(name: str, section_cls: type, raw: Any):
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping.")

    allowed = set(section_cls.__dataclass_fields__)
    unknown = set(raw) - allowed
    if unknown:
        raise ConfigError(
            f"Unknown keys in '{name}': {', '.join(sorted(unknown))}"
        )

    values = {}
    for key, value in raw.items():
        if key in _COMMAND_KEYS:
            values[key] = _as_command(f"{name}.{key}", value)
        elif key in _LIST_KEYS:
            if isinstance(value, str) or not isinstance(value, list):
                raise ConfigError(f"'{name}.{key}' must be a list.")
            values[key] = tuple(str(v) for v in value)
        else:
            values[key] = value

    try:
        section = section_cls(**values)
    except TypeError as exc:
        raise ConfigError(f"Invalid config section '{name}': {exc}") from exc
    _validate_types(name, section)
    return section


def _validate_types(name: str, section) -> None:
    defaults = _field_defaults(type(section))
    for key, default in defaults.items():
        value = getattr(section, key)
        if default is None or value is None:
            continue
        if isinstance(default, bool):
            ok = isinstance(value, bool)
        elif isinstance(default, (int, float)):
            ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        else:
            ok = isinstance(value, type(default))
        if not ok:
            raise ConfigError(
                f"'{name}.{key}' must be of type {type(default).__name__}, "
                f"got {type(value).__name__}."
            )


def _field_defaults(section_cls: type) -> dict:
    """Return the default value of every field of a config section."""
    return {key: f.default for key, f in section_cls.__dataclass_fields__.items()}


def _as_command(key: str, value: Any) -> tuple[str, ...]:
    """Accept a command as a shell-style string or an argv list."""
    if isinstance(value, str):
        argv = shlex.split(value)
    elif isinstance(value, list):
        argv = [str(v) for v in value]
    else:
        raise ConfigError(f"'{key}' must be a string or a list.")
    if not argv:
        raise ConfigError(f"'{key}' must not be empty.")
    return tuple(argv)


def _apply_env_overrides(config: PipelineConfig) -> PipelineConfig:
    """Apply the documented environment variable overrides."""
    branch = os.getenv("AGENT_FLOW_TARGET_BRANCH")
    if branch:
        config = replace(config, trigger=replace(config.trigger, branch=branch))

    api_url = os.getenv("GITHUB_API_URL")
    if api_url:
        config = replace(config, notify=replace(config.notify, api_url=api_url))

    workspace = os.getenv("AGENT_FLOW_WORKSPACE")
    if workspace:
        config = replace(config, workspace=Path(workspace))

    log_dir = os.getenv("AGENT_FLOW_LOG_DIR")
    if log_dir:
        config = replace(config, log_dir=Path(log_dir))

    return config
