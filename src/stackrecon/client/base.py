"""Capability interface the reconciliation core uses to talk to CloudFormation."""

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional, Tuple

from stackrecon.state.models import (
    DetectionStatus,
    DriftDetectionStatus,
    ObservedStack,
    ObservedStackSummary,
    OperationHandle,
    OperationKind,
    ResourceDrift,
    StackDescriptor,
    StackEvent,
    StackStatus,
)
from stackrecon.utils.errors import NotFoundError


# Expected terminal statuses per submitted action
CREATE_TERMINAL_STATUSES = frozenset({StackStatus.CREATE_COMPLETE})
UPDATE_TERMINAL_STATUSES = frozenset({StackStatus.UPDATE_COMPLETE})
DELETE_TERMINAL_STATUSES = frozenset({StackStatus.DELETE_COMPLETE})
NO_CHANGE_TERMINAL_STATUSES = frozenset({
    StackStatus.CREATE_COMPLETE,
    StackStatus.UPDATE_COMPLETE,
    StackStatus.UPDATE_ROLLBACK_COMPLETE,
    StackStatus.IMPORT_COMPLETE,
})


class RemoteStackClient(ABC):
    """Narrow set of CloudFormation operations the core depends on.

    Implementations are stateless and safe to share between threads. Errors
    are raised as :mod:`stackrecon.utils.errors` types: ``NotFoundError`` for
    missing stacks, ``InvalidTemplateError`` for rejected templates and
    ``RemoteCallFailedError`` for everything else the provider returns.
    """

    @abstractmethod
    def list_stacks(self, status_filter: Optional[Iterable[str]] = None) -> List[ObservedStackSummary]:
        """List stack summaries, optionally restricted to the given statuses."""
        pass

    @abstractmethod
    def describe_stack(self, name: str) -> ObservedStack:
        """Read the current state of one stack.

        Raises:
            InvalidRequestError: If ``name`` is empty (no call is made)
            NotFoundError: If the stack does not exist
        """
        pass

    @abstractmethod
    def validate_template(self, template_body: Optional[str] = None,
                          template_url: Optional[str] = None) -> str:
        """Validate a template and return its description.

        Raises:
            InvalidTemplateError: If neither body nor URL is given (no call is
                made) or the provider rejects the template
        """
        pass

    @abstractmethod
    def create_stack(self, desired: StackDescriptor) -> OperationHandle:
        """Submit stack creation."""
        pass

    @abstractmethod
    def update_stack(self, desired: StackDescriptor) -> OperationHandle:
        """Submit a stack update."""
        pass

    @abstractmethod
    def delete_stack(self, name: str, stack_id: Optional[str] = None) -> OperationHandle:
        """Submit stack deletion."""
        pass

    @abstractmethod
    def describe_stack_events(self, name: str, limit: Optional[int] = None) -> List[StackEvent]:
        """Return the stack's events, newest first, at most ``limit`` of them."""
        pass

    @abstractmethod
    def detect_stack_drift(self, name: str) -> str:
        """Start a drift detection scan and return its detection ID."""
        pass

    @abstractmethod
    def describe_stack_resource_drifts(
        self,
        name: str,
        status_filter: Optional[Iterable[str]] = None
    ) -> List[ResourceDrift]:
        """Return per-resource drift results of the last scan."""
        pass

    @abstractmethod
    def describe_stack_drift_detection_status(self, detection_id: str) -> DriftDetectionStatus:
        """Return the progress and outcome of a drift detection scan."""
        pass

    def describe_stacks(self) -> List[ObservedStack]:
        """Return full detail for every stack that has not been deleted.

        Reads each listed stack in turn; adapters with a bulk call override
        this. Stacks deleted between the listing and the read are skipped.
        """
        stacks = []
        for summary in self.list_stacks():
            if summary.status == StackStatus.DELETE_COMPLETE:
                continue
            try:
                stacks.append(self.describe_stack(summary.name))
            except NotFoundError:
                continue
        return stacks

    def get_stack_status(self, name: str, stack_id: Optional[str] = None) -> Tuple[StackStatus, Optional[str]]:
        """Return ``(status, reason)`` for a stack.

        Used by the operation tracker; ``stack_id`` lets implementations read
        deleted stacks, which are no longer visible by name.
        """
        observed = self.describe_stack(stack_id or name)
        return observed.status, observed.status_reason


def drift_detection_handle(stack_name: str, detection_id: str) -> OperationHandle:
    """Handle for tracking a drift detection scan to completion."""
    return OperationHandle(
        operation_id=detection_id,
        stack_name=stack_name,
        kind=OperationKind.DRIFT_DETECTION,
        action='detect_drift',
        expected_terminal_statuses={DetectionStatus.DETECTION_COMPLETE},
    )
