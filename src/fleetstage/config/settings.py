"""Engine settings loaded from YAML with environment overrides."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from fleetstage.utils.retry import BackoffPolicy

SETTINGS_FILE = "settings.yaml"
ENV_PREFIX = "FLEETSTAGE_"


class ConfigValidationError(Exception):
    """Exception raised when engine settings are invalid."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class EngineSettings(BaseModel):
    """Timeouts, backoff and safety switches for one engine invocation."""

    state_dir: Path = Field(Path(".fleetflow"), description="Project-scoped state directory")

    provision_timeout: float = Field(600.0, gt=0)
    power_timeout: float = Field(300.0, gt=0)
    reachability_timeout: float = Field(300.0, gt=0)

    poll_initial_delay: float = Field(2.0, gt=0)
    poll_multiplier: float = Field(1.5, ge=1.0)
    poll_max_delay: float = Field(15.0, gt=0)

    lock_timeout: float = Field(0.0, ge=0, description="Seconds to wait for a live lock")
    stale_lock_max_age: float = Field(3600.0, gt=0)

    max_workers: int = Field(8, ge=1, le=64)
    unattended: bool = False
    parallel_dns: bool = False
    command_timeout: Optional[float] = Field(None, gt=0)

    @model_validator(mode="after")
    def validate_backoff(self):
        """The first poll interval cannot exceed the ceiling."""
        if self.poll_initial_delay > self.poll_max_delay:
            raise ValueError("poll_initial_delay must not exceed poll_max_delay")
        return self

    @property
    def state_path(self) -> Path:
        return self.state_dir / "state.json"

    @property
    def lock_path(self) -> Path:
        return self.state_dir / "lock.json"

    @property
    def log_dir(self) -> Path:
        return self.state_dir / "logs"

    def backoff(self, timeout: float) -> BackoffPolicy:
        """Poll policy with the configured backoff and the given deadline."""
        return BackoffPolicy(
            initial_delay=self.poll_initial_delay,
            multiplier=self.poll_multiplier,
            max_delay=self.poll_max_delay,
            timeout=timeout,
        )


def _env_overrides(environ) -> Dict[str, str]:
    overrides = {}
    for field_name in EngineSettings.model_fields:
        value = environ.get(f"{ENV_PREFIX}{field_name.upper()}")
        if value is not None and value != "":
            overrides[field_name] = value
    if "unattended" not in overrides and environ.get("CI", "").lower() in ("1", "true", "yes"):
        overrides["unattended"] = "true"
    return overrides


def load_settings(project_root: Optional[Path] = None, environ=None) -> EngineSettings:
    """Load engine settings.

    Precedence, lowest first: defaults, ``<state_dir>/settings.yaml``,
    ``FLEETSTAGE_<FIELD>`` environment variables (``CI=true`` implies
    unattended). A relative ``state_dir`` is resolved against the project root.

    Args:
        project_root: Directory holding the project (defaults to cwd)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated EngineSettings

    Raises:
        ConfigValidationError: If the file or an override is invalid
    """
    root = Path(project_root) if project_root is not None else Path.cwd()
    environ = os.environ if environ is None else environ
    overrides = _env_overrides(environ)

    state_dir = Path(overrides.get("state_dir", ".fleetflow"))
    if not state_dir.is_absolute():
        state_dir = root / state_dir

    data: Dict = {}
    settings_path = state_dir / SETTINGS_FILE
    if settings_path.exists():
        try:
            with open(settings_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse {settings_path}: {e}")
        if not isinstance(data, dict):
            raise ConfigValidationError(f"{settings_path} must contain a mapping")

    data.update(overrides)
    data["state_dir"] = state_dir

    try:
        return EngineSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError("Invalid engine settings", errors=e.errors())
