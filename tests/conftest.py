"""Shared fixtures and an in-memory RemoteStackClient."""

import threading
from typing import Dict, Iterable, List, Optional

import pytest

from stackrecon.client.base import (
    CREATE_TERMINAL_STATUSES,
    DELETE_TERMINAL_STATUSES,
    NO_CHANGE_TERMINAL_STATUSES,
    UPDATE_TERMINAL_STATUSES,
    RemoteStackClient,
)
from stackrecon.config.models import ReconcilerSettings
from stackrecon.state.models import (
    DetectionStatus,
    DriftDetectionStatus,
    DriftStatus,
    ObservedStack,
    ObservedStackSummary,
    OperationHandle,
    ResourceDrift,
    StackDescriptor,
    StackEvent,
    StackStatus,
    fingerprint_template,
)
from stackrecon.utils.errors import (
    InvalidRequestError,
    InvalidTemplateError,
    NotFoundError,
    RemoteCallFailedError,
)

TEMPLATE = '{"Resources": {"Queue": {"Type": "AWS::SQS::Queue"}}}'


class FakeStackClient(RemoteStackClient):
    """In-memory CloudFormation that applies mutations immediately.

    Knobs:
        outcomes: final status per action ('create', 'update')
        progress: statuses returned by get_stack_status before the real one
        errors: exceptions raised by the next calls of a method
        drift_results: stack drift status reported by drift scans
        ignore_tags: apply updates without touching tags
        block / entered: make describe_stack wait until ``block`` is set
    """

    def __init__(self):
        self.stacks: Dict[str, ObservedStack] = {}
        self.deleted: Dict[str, ObservedStack] = {}
        self.calls: List[tuple] = []
        self.outcomes: Dict[str, StackStatus] = {}
        self.progress: Dict[str, List[StackStatus]] = {}
        self.errors: Dict[str, List[Exception]] = {}
        self.events: Dict[str, List[StackEvent]] = {}
        self.drift_results: Dict[str, DriftStatus] = {}
        self.resource_drifts: Dict[str, List[ResourceDrift]] = {}
        self.ignore_tags = False
        self.block: Optional[threading.Event] = None
        self.entered = threading.Event()
        self._counter = 0
        self._lock = threading.Lock()

    # Test helpers

    def add_stack(self, desired: StackDescriptor, status: StackStatus = StackStatus.CREATE_COMPLETE,
                  **overrides) -> ObservedStack:
        observed = ObservedStack(
            name=desired.name,
            stack_id=self._new_stack_id(desired.name),
            status=status,
            parameters=dict(desired.parameters),
            tags=dict(desired.tags),
            drift_status=DriftStatus.IN_SYNC,
            template_fingerprint=desired.template_fingerprint(),
        )
        observed = observed.model_copy(update=overrides)
        self.stacks[desired.name] = observed
        return observed

    def fail_next(self, method: str, *errors: Exception) -> None:
        self.errors.setdefault(method, []).extend(errors)

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def mutations(self) -> List[str]:
        return [name for name in self.call_names()
                if name in ('create_stack', 'update_stack', 'delete_stack')]

    def _new_stack_id(self, name: str) -> str:
        self._counter += 1
        return f"arn:aws:cloudformation:us-east-1:123456789012:stack/{name}/{self._counter:04d}"

    def _record(self, method: str, *args) -> None:
        with self._lock:
            self.calls.append((method,) + args)
            queued = self.errors.get(method)
            error = queued.pop(0) if queued else None
        if error is not None:
            raise error

    def _get(self, name: str) -> ObservedStack:
        if name not in self.stacks:
            raise NotFoundError(f"Stack with id {name} does not exist")
        return self.stacks[name]

    # RemoteStackClient

    def list_stacks(self, status_filter: Optional[Iterable[str]] = None) -> List[ObservedStackSummary]:
        self._record('list_stacks', status_filter)
        wanted = {getattr(s, 'value', s) for s in status_filter or []}
        return [
            ObservedStackSummary(name=s.name, stack_id=s.stack_id, status=s.status,
                                 drift_status=s.drift_status)
            for s in self.stacks.values()
            if not wanted or s.status.value in wanted
        ]

    def describe_stack(self, name: str) -> ObservedStack:
        if not name:
            raise InvalidRequestError("stack name must not be empty")
        self.entered.set()
        if self.block is not None:
            self.block.wait(5)
        self._record('describe_stack', name)
        return self._get(name)

    def get_stack_status(self, name: str, stack_id: Optional[str] = None):
        self._record('get_stack_status', name)
        queue = self.progress.get(name)
        if queue:
            return queue.pop(0), None
        if stack_id and stack_id in self.deleted:
            return StackStatus.DELETE_COMPLETE, None
        observed = self._get(name)
        return observed.status, observed.status_reason

    def validate_template(self, template_body: Optional[str] = None,
                          template_url: Optional[str] = None) -> str:
        if not template_body and not template_url:
            raise InvalidTemplateError("Either a template body or a template URL is required")
        self._record('validate_template', template_body or template_url)
        if template_body and 'INVALID' in template_body:
            raise InvalidTemplateError("Template format error: unsupported structure")
        return "fake template"

    def create_stack(self, desired: StackDescriptor) -> OperationHandle:
        self._record('create_stack', desired.name)
        if desired.name in self.stacks:
            raise RemoteCallFailedError(f"AWS Error (AlreadyExistsException): Stack [{desired.name}] already exists")
        observed = self.add_stack(desired, status=self.outcomes.get('create', StackStatus.CREATE_COMPLETE))
        return OperationHandle(
            operation_id=observed.stack_id,
            stack_name=desired.name,
            stack_id=observed.stack_id,
            action='create',
            expected_terminal_statuses=CREATE_TERMINAL_STATUSES,
        )

    def update_stack(self, desired: StackDescriptor) -> OperationHandle:
        self._record('update_stack', desired.name)
        current = self._get(desired.name)
        unchanged = (
            current.parameters == desired.parameters
            and current.tags == desired.tags
            and current.template_fingerprint == desired.template_fingerprint()
        )
        if unchanged:
            return OperationHandle(
                operation_id=desired.name,
                stack_name=desired.name,
                action='update',
                expected_terminal_statuses=NO_CHANGE_TERMINAL_STATUSES,
                no_changes=True,
            )

        self.stacks[desired.name] = current.model_copy(update={
            'status': self.outcomes.get('update', StackStatus.UPDATE_COMPLETE),
            'parameters': dict(desired.parameters),
            'tags': current.tags if self.ignore_tags else dict(desired.tags),
            'template_fingerprint': desired.template_fingerprint(),
        })
        return OperationHandle(
            operation_id=current.stack_id,
            stack_name=desired.name,
            stack_id=current.stack_id,
            action='update',
            expected_terminal_statuses=UPDATE_TERMINAL_STATUSES,
        )

    def delete_stack(self, name: str, stack_id: Optional[str] = None) -> OperationHandle:
        self._record('delete_stack', name, stack_id)
        observed = self.stacks.pop(name, None)
        if observed is not None:
            self.deleted[observed.stack_id] = observed
        return OperationHandle(
            operation_id=stack_id or name,
            stack_name=name,
            stack_id=stack_id,
            action='delete',
            expected_terminal_statuses=DELETE_TERMINAL_STATUSES,
        )

    def describe_stack_events(self, name: str, limit: Optional[int] = None) -> List[StackEvent]:
        self._record('describe_stack_events', name)
        # Events may be requested by stack ARN
        if name.startswith('arn:'):
            name = name.split('/')[1]
        events = self.events.get(name, [])
        return events[:limit] if limit else list(events)

    def detect_stack_drift(self, name: str) -> str:
        self._record('detect_stack_drift', name)
        self._get(name)
        return f"drift-{name}"

    def describe_stack_resource_drifts(self, name: str, status_filter=None) -> List[ResourceDrift]:
        self._record('describe_stack_resource_drifts', name)
        return list(self.resource_drifts.get(name, []))

    def describe_stack_drift_detection_status(self, detection_id: str) -> DriftDetectionStatus:
        self._record('describe_stack_drift_detection_status', detection_id)
        name = detection_id[len("drift-"):]
        drift_status = self.drift_results.get(name, DriftStatus.IN_SYNC)
        return DriftDetectionStatus(
            detection_id=detection_id,
            stack_id=self.stacks[name].stack_id if name in self.stacks else None,
            detection_status=DetectionStatus.DETECTION_COMPLETE,
            stack_drift_status=drift_status,
            drifted_resource_count=len(self.resource_drifts.get(name, [])),
        )


@pytest.fixture
def fake_client():
    """In-memory stack client."""
    return FakeStackClient()


@pytest.fixture
def descriptor():
    """Desired stack with an inline template."""
    return StackDescriptor(
        name="network",
        region="us-east-1",
        template_body=TEMPLATE,
        parameters={"Environment": "test"},
        tags={"Name": "testing"},
    )


@pytest.fixture
def fast_settings():
    """Settings that keep polls and retries short."""
    return ReconcilerSettings(
        poll_interval=0.01,
        max_poll_interval=0.01,
        operation_timeout=5.0,
        drift_timeout=5.0,
        query_retry_base_delay=0.0,
    )


@pytest.fixture
def template_fingerprint():
    return fingerprint_template(TEMPLATE)
