"""
Pipeline Configuration

Loads `.tfpipelines.yaml` into a validated PipelineSettings model.

Example file:

    environment: staging
    terraform_version: 1.6.6
    region: eu-west-1
    flags:
      enable_cost_estimation: false
    timeouts:
      plan_seconds: 900
    reviewers:
      production: [alice, bob, carol]
    gate_timeout_seconds: 7200
    oidc_role_arn: arn:aws:iam::123456789012:role/terraform

A missing default file means built-in defaults. A file named explicitly must
exist.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from tfpipelines.schemas import FeatureFlags, PipelineInvocation, TimeoutBudget
from tfpipelines.subprocess_security import DEFAULT_ALLOWED_COMMANDS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = Path(".tfpipelines.yaml")


class ConfigError(ValueError):
    """Configuration file missing, unreadable or invalid."""


class PipelineSettings(BaseModel):
    """Project-level settings. CLI flags override these per invocation."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    working_directory: str = "."
    environment: Optional[str] = None
    terraform_version: str = "1.6.6"
    region: str = "us-east-1"
    flags: FeatureFlags = Field(default_factory=FeatureFlags)
    tool_config_paths: Dict[str, str] = Field(default_factory=dict)
    timeouts: TimeoutBudget = Field(default_factory=TimeoutBudget)
    var_file: Optional[str] = None
    backend_config: Optional[str] = None

    reviewers: Dict[str, List[str]] = Field(
        default_factory=dict,
        description="Environment -> reviewer identities allowed to approve",
    )
    gate_timeout_seconds: int = Field(3600, ge=1)
    confirmation_word: str = "DESTROY"

    audit_dir: str = ".tfpipelines/audit"
    artifact_dir: str = ".tfpipelines/plans"
    allowed_commands: List[str] = Field(default_factory=lambda: sorted(DEFAULT_ALLOWED_COMMANDS))

    oidc_role_arn: Optional[str] = None
    oidc_session_name: str = "tfpipelines"

    @field_validator("confirmation_word")
    @classmethod
    def validate_confirmation_word(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("confirmation_word cannot be empty")
        return v.strip()

    def to_invocation(self, **overrides: Any) -> PipelineInvocation:
        """
        Build an invocation from these settings.

        Overrides whose value is None are ignored, so unset CLI flags fall back
        to the file.
        """
        values: Dict[str, Any] = {
            "working_directory": self.working_directory,
            "environment": self.environment,
            "terraform_version": self.terraform_version,
            "region": self.region,
            "flags": self.flags,
            "tool_config_paths": self.tool_config_paths,
            "timeouts": self.timeouts,
            "var_file": self.var_file,
            "backend_config": self.backend_config,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        if values["environment"] is None:
            raise ConfigError("No environment given (use --environment or set 'environment' in the config file)")
        return PipelineInvocation(**values)


def load_settings(path: Optional[Path] = None) -> PipelineSettings:
    """
    Load settings from YAML.

    Args:
        path: Explicit config file; None means the default file if present

    Raises:
        ConfigError: Explicit file missing, invalid YAML, or invalid settings
    """
    config_path = path or DEFAULT_CONFIG_FILE
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        logger.debug("No %s found; using built-in defaults", config_path)
        return PipelineSettings()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping at the top level")

    try:
        settings = PipelineSettings(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings in {config_path}:\n{e}")

    logger.debug("Loaded settings from %s", config_path)
    return settings
