"""Desired and observed stack state models."""

from .models import (
    DetectionStatus,
    DriftDetectionStatus,
    DriftStatus,
    FAILURE_STATUSES,
    HEALTHY_STATUSES,
    ObservedStack,
    ObservedStackSummary,
    OperationHandle,
    OperationKind,
    REPLACEMENT_STATUSES,
    ResourceDrift,
    STABLE_STATUSES,
    StackDescriptor,
    StackEvent,
    StackStatus,
    fingerprint_template,
)

__all__ = [
    "DetectionStatus",
    "DriftDetectionStatus",
    "DriftStatus",
    "FAILURE_STATUSES",
    "HEALTHY_STATUSES",
    "ObservedStack",
    "ObservedStackSummary",
    "OperationHandle",
    "OperationKind",
    "REPLACEMENT_STATUSES",
    "ResourceDrift",
    "STABLE_STATUSES",
    "StackDescriptor",
    "StackEvent",
    "StackStatus",
    "fingerprint_template",
]
