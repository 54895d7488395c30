"""Data models for desired and observed CloudFormation stack state."""

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StackStatus(str, Enum):
    """Stack status as reported by CloudFormation, plus local pseudo-statuses."""

    CREATE_IN_PROGRESS = "CREATE_IN_PROGRESS"
    CREATE_COMPLETE = "CREATE_COMPLETE"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_IN_PROGRESS = "UPDATE_IN_PROGRESS"
    UPDATE_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_COMPLETE = "UPDATE_COMPLETE"
    UPDATE_FAILED = "UPDATE_FAILED"
    UPDATE_ROLLBACK_IN_PROGRESS = "UPDATE_ROLLBACK_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS = "UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS"
    UPDATE_ROLLBACK_COMPLETE = "UPDATE_ROLLBACK_COMPLETE"
    UPDATE_ROLLBACK_FAILED = "UPDATE_ROLLBACK_FAILED"
    DELETE_IN_PROGRESS = "DELETE_IN_PROGRESS"
    DELETE_COMPLETE = "DELETE_COMPLETE"
    DELETE_FAILED = "DELETE_FAILED"
    ROLLBACK_IN_PROGRESS = "ROLLBACK_IN_PROGRESS"
    ROLLBACK_COMPLETE = "ROLLBACK_COMPLETE"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    REVIEW_IN_PROGRESS = "REVIEW_IN_PROGRESS"
    IMPORT_IN_PROGRESS = "IMPORT_IN_PROGRESS"
    IMPORT_COMPLETE = "IMPORT_COMPLETE"
    IMPORT_ROLLBACK_IN_PROGRESS = "IMPORT_ROLLBACK_IN_PROGRESS"
    IMPORT_ROLLBACK_COMPLETE = "IMPORT_ROLLBACK_COMPLETE"
    IMPORT_ROLLBACK_FAILED = "IMPORT_ROLLBACK_FAILED"
    FAILED = "FAILED"
    DRIFTED = "DRIFTED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "StackStatus":
        """Map a provider status string to a StackStatus, UNKNOWN if unrecognised."""
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN

    @property
    def in_progress(self) -> bool:
        # REVIEW_IN_PROGRESS waits for a change set to be executed; nothing is moving
        return self.value.endswith("_IN_PROGRESS") and self is not StackStatus.REVIEW_IN_PROGRESS

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES

    @property
    def requires_replacement(self) -> bool:
        return self in REPLACEMENT_STATUSES


# Statuses that end an operation unsuccessfully
FAILURE_STATUSES = frozenset({
    StackStatus.ROLLBACK_COMPLETE,
    StackStatus.ROLLBACK_FAILED,
    StackStatus.CREATE_FAILED,
    StackStatus.UPDATE_FAILED,
    StackStatus.DELETE_FAILED,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_FAILED,
    StackStatus.IMPORT_ROLLBACK_COMPLETE,
    StackStatus.IMPORT_ROLLBACK_FAILED,
    StackStatus.FAILED,
})

# Existing stacks that CloudFormation will not update; they must be deleted and recreated
REPLACEMENT_STATUSES = frozenset({
    StackStatus.ROLLBACK_COMPLETE,
    StackStatus.REVIEW_IN_PROGRESS,
    StackStatus.ROLLBACK_FAILED,
    StackStatus.CREATE_FAILED,
    StackStatus.DELETE_FAILED,
    StackStatus.UPDATE_ROLLBACK_FAILED,
    StackStatus.IMPORT_ROLLBACK_FAILED,
    StackStatus.FAILED,
})

# Healthy resting statuses an existing stack can be updated from
HEALTHY_STATUSES = frozenset({
    StackStatus.CREATE_COMPLETE,
    StackStatus.UPDATE_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
    StackStatus.IMPORT_COMPLETE,
    StackStatus.IMPORT_ROLLBACK_COMPLETE,
    StackStatus.DRIFTED,
})

# Every status after which the stack stops changing on its own
STABLE_STATUSES = frozenset(s for s in StackStatus if not s.in_progress)


class DriftStatus(str, Enum):
    """Stack-level drift status."""

    IN_SYNC = "IN_SYNC"
    DRIFTED = "DRIFTED"
    UNKNOWN = "UNKNOWN"
    DETECTION_IN_PROGRESS = "DETECTION_IN_PROGRESS"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "DriftStatus":
        """Map a provider drift status; NOT_CHECKED and anything unrecognised become UNKNOWN."""
        try:
            return cls(raw)
        except ValueError:
            return cls.UNKNOWN


class DetectionStatus(str, Enum):
    """Status of a drift detection scan."""

    DETECTION_IN_PROGRESS = "DETECTION_IN_PROGRESS"
    DETECTION_COMPLETE = "DETECTION_COMPLETE"
    DETECTION_FAILED = "DETECTION_FAILED"


def fingerprint_template(body: Union[str, Dict[str, Any], None]) -> Optional[str]:
    """Return a sha256 fingerprint of a template body.

    JSON templates are canonicalised (sorted keys, compact separators) so that
    formatting differences do not count as changes. YAML bodies are compared
    as text with surrounding whitespace stripped.
    """
    if body is None:
        return None

    if isinstance(body, str):
        try:
            body = json.loads(body)
        except ValueError:
            return hashlib.sha256(body.strip().encode("utf-8")).hexdigest()

    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class StackDescriptor(BaseModel):
    """Desired configuration of one stack."""

    name: str = Field(
        ..., min_length=1, max_length=128, pattern="^[a-zA-Z][-a-zA-Z0-9]*$",
        description="Stack name"
    )
    region: Optional[str] = Field(None, description="AWS region the stack lives in")
    account: Optional[str] = Field(None, description="AWS account ID the stack lives in")
    template_body: Optional[str] = Field(None, description="Inline template body")
    template_url: Optional[str] = Field(None, description="S3 URL of the template")
    parameters: Dict[str, str] = Field(default_factory=dict, description="Stack parameters")
    tags: Dict[str, str] = Field(default_factory=dict, description="Stack tags")
    capabilities: List[str] = Field(
        default_factory=list, description="Capabilities acknowledged on create/update"
    )

    @model_validator(mode="after")
    def validate_template_source(self):
        """Exactly one of template_body or template_url must be set."""
        if not self.template_body and not self.template_url:
            raise ValueError("Either 'template_body' or 'template_url' must be provided")
        if self.template_body and self.template_url:
            raise ValueError(
                "Cannot specify both 'template_body' and 'template_url' - choose one template source"
            )
        return self

    @property
    def identity(self) -> str:
        """Account/region scoped identity used to serialise reconciliations."""
        return "/".join(part for part in (self.account, self.region, self.name) if part)

    def template_fingerprint(self) -> Optional[str]:
        """Fingerprint of the inline template, None for URL templates."""
        return fingerprint_template(self.template_body)


class ObservedStack(BaseModel):
    """Remote state of a stack as read during one reconciliation cycle."""

    name: str = Field(..., description="Stack name")
    stack_id: Optional[str] = Field(None, description="Stack ARN")
    status: StackStatus = Field(StackStatus.UNKNOWN, description="Current stack status")
    status_reason: Optional[str] = Field(None, description="Provider status reason")
    parameters: Dict[str, str] = Field(default_factory=dict, description="Observed parameters")
    tags: Dict[str, str] = Field(default_factory=dict, description="Observed tags")
    drift_status: DriftStatus = Field(DriftStatus.UNKNOWN, description="Stack drift status")
    template_fingerprint: Optional[str] = Field(None, description="Fingerprint of deployed template")
    outputs: Dict[str, str] = Field(default_factory=dict, description="Stack outputs")
    observed_at: datetime = Field(default_factory=_utcnow, description="When the stack was read")
    found: bool = Field(True, description="False when CloudFormation reported no such stack")

    @classmethod
    def absent(cls, name: str) -> "ObservedStack":
        """Observed value for a stack that does not exist."""
        return cls(name=name, status=StackStatus.UNKNOWN, found=False)

    @property
    def exists(self) -> bool:
        """Whether the stack is live. A found stack with an unrecognised status still exists."""
        return self.found and self.status != StackStatus.DELETE_COMPLETE


class ObservedStackSummary(BaseModel):
    """Stack summary as returned by ListStacks."""

    name: str
    stack_id: Optional[str] = None
    status: StackStatus = StackStatus.UNKNOWN
    status_reason: Optional[str] = None
    drift_status: DriftStatus = DriftStatus.UNKNOWN
    created_at: Optional[datetime] = None


class StackEvent(BaseModel):
    """One entry of a stack's event history."""

    event_id: str
    stack_name: str
    stack_id: Optional[str] = None
    logical_resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_status: Optional[str] = None
    status_reason: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def is_failure(self) -> bool:
        return bool(self.resource_status) and self.resource_status.endswith("_FAILED")


class ResourceDrift(BaseModel):
    """Drift information for a single stack resource."""

    stack_id: str
    logical_resource_id: Optional[str] = None
    physical_resource_id: Optional[str] = None
    resource_type: Optional[str] = None
    drift_status: str = "NOT_CHECKED"
    property_differences: List[Dict[str, Any]] = Field(default_factory=list)
    timestamp: Optional[datetime] = None


class DriftDetectionStatus(BaseModel):
    """Progress and outcome of a drift detection scan."""

    detection_id: str
    stack_id: Optional[str] = None
    detection_status: DetectionStatus
    stack_drift_status: DriftStatus = DriftStatus.UNKNOWN
    reason: Optional[str] = None
    drifted_resource_count: int = 0
    timestamp: Optional[datetime] = None


class OperationKind(str, Enum):
    """Kind of long-running remote operation."""

    STACK = "stack"
    DRIFT_DETECTION = "drift_detection"


def _status_value(status: Union[str, Enum]) -> str:
    return status.value if isinstance(status, Enum) else str(status)


class OperationHandle(BaseModel):
    """Reference to a submitted long-running remote operation."""

    operation_id: str = Field(..., description="Stack ID or drift detection ID")
    stack_name: str = Field(..., description="Stack the operation targets")
    stack_id: Optional[str] = Field(None, description="Stack ARN, when known")
    kind: OperationKind = Field(OperationKind.STACK, description="Operation kind")
    action: str = Field(..., description="Submitted action (create, update, delete, detect_drift)")
    submitted_at: datetime = Field(default_factory=_utcnow, description="Submission time")
    expected_terminal_statuses: FrozenSet[str] = Field(
        ..., description="Statuses that mean the operation succeeded"
    )
    no_changes: bool = Field(False, description="Provider reported nothing to change")

    @field_validator("expected_terminal_statuses", mode="before")
    @classmethod
    def normalise_statuses(cls, v: Iterable[Union[str, Enum]]) -> FrozenSet[str]:
        """Store raw status strings so stack and detection statuses share one field."""
        return frozenset(_status_value(s) for s in v)

    def is_expected(self, status: Union[str, Enum]) -> bool:
        """Check whether a status counts as success for this operation."""
        return _status_value(status) in self.expected_terminal_statuses
