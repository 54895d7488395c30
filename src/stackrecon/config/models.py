"""Pydantic models for configuration schema."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class ReconcilerSettings(BaseModel):
    """Polling, retry and execution settings for the reconciliation engine."""

    poll_interval: float = Field(5.0, gt=0, description="Initial wait between status polls (seconds)")
    max_poll_interval: float = Field(60.0, gt=0, description="Upper bound for the poll wait (seconds)")
    backoff_multiplier: float = Field(2.0, ge=1.0, description="Growth factor of the poll wait")
    operation_timeout: float = Field(
        3600.0, ge=0, description="Deadline for a stack operation to finish (seconds)"
    )
    drift_timeout: float = Field(300.0, ge=0, description="Deadline for a drift detection scan (seconds)")
    query_retries: int = Field(3, ge=0, le=10, description="Retries of transient read-only call failures")
    query_retry_base_delay: float = Field(1.0, ge=0, description="First backoff for read-only retries")
    detect_drift: bool = Field(False, description="Run a drift scan before planning existing stacks")
    validate_templates: bool = Field(True, description="Validate templates before create/update")
    max_workers: int = Field(4, ge=1, le=32, description="Stacks reconciled in parallel")

    @model_validator(mode="after")
    def validate_intervals(self):
        """The poll interval cap must not be below the initial interval."""
        if self.max_poll_interval < self.poll_interval:
            raise ValueError("max_poll_interval must be greater than or equal to poll_interval")
        return self


def _validate_tag_mapping(v: Dict[str, str]) -> Dict[str, str]:
    for key, value in v.items():
        if not key or not isinstance(key, str):
            raise ValueError(f"Tag key must be a non-empty string: {key}")
        if not isinstance(value, str):
            raise ValueError(f"Tag value must be a string for key '{key}': {value}")
        if key.startswith("aws:"):
            raise ValueError(f"Tag key uses the reserved 'aws:' prefix: {key}")
        if len(key) > 128:
            raise ValueError(f"Tag key exceeds 128 characters: {key}")
        if len(value) > 256:
            raise ValueError(f"Tag value exceeds 256 characters for key '{key}'")
    return v


class StackConfig(BaseModel):
    """Declared stack in the configuration file."""

    name: str = Field(..., min_length=1, max_length=128, pattern="^[a-zA-Z][-a-zA-Z0-9]*$")
    template_body: Optional[str] = Field(None, description="Inline template body")
    template_file: Optional[str] = Field(None, description="Template path, relative to the config file")
    template_url: Optional[str] = Field(None, description="S3 URL of the template")
    parameters: Dict[str, str] = Field(default_factory=dict)
    tags: Dict[str, str] = Field(default_factory=dict)
    capabilities: List[str] = Field(default_factory=list)

    @field_validator("parameters", mode="before")
    @classmethod
    def stringify_parameters(cls, v):
        """YAML numbers and booleans become the strings CloudFormation expects."""
        if not isinstance(v, dict):
            return v
        return {
            str(key): str(value).lower() if isinstance(value, bool) else str(value)
            for key, value in v.items()
        }

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate tag keys and values."""
        return _validate_tag_mapping(v)

    @field_validator("capabilities")
    @classmethod
    def validate_capabilities(cls, v: List[str]) -> List[str]:
        """Only the capabilities CloudFormation knows are accepted."""
        allowed = {"CAPABILITY_IAM", "CAPABILITY_NAMED_IAM", "CAPABILITY_AUTO_EXPAND"}
        for capability in v:
            if capability not in allowed:
                raise ValueError(f"Unknown capability '{capability}'. Allowed: {', '.join(sorted(allowed))}")
        return v

    @model_validator(mode="after")
    def validate_template_source(self):
        """Exactly one template source must be given."""
        sources = [s for s in (self.template_body, self.template_file, self.template_url) if s]
        if not sources:
            raise ValueError(
                "One of 'template_body', 'template_file' or 'template_url' must be provided"
            )
        if len(sources) > 1:
            raise ValueError(
                "Only one of 'template_body', 'template_file' or 'template_url' may be provided"
            )
        return self


class ProjectConfig(BaseModel):
    """Top-level configuration file."""

    region: Optional[str] = Field(None, description="Default AWS region")
    account: Optional[str] = Field(None, pattern="^[0-9]{12}$", description="AWS account ID")
    profile: Optional[str] = Field(None, description="AWS profile name")
    tags: Dict[str, str] = Field(default_factory=dict, description="Tags applied to every stack")
    settings: ReconcilerSettings = Field(default_factory=ReconcilerSettings)
    stacks: List[StackConfig] = Field(..., min_length=1)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: Dict[str, str]) -> Dict[str, str]:
        """Validate tag keys and values."""
        return _validate_tag_mapping(v)

    @model_validator(mode="after")
    def validate_unique_stacks(self):
        """Stack names must be unique."""
        seen = set()
        for stack in self.stacks:
            if stack.name in seen:
                raise ValueError(f"Stack '{stack.name}' is declared more than once")
            seen.add(stack.name)
        return self
