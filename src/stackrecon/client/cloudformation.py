"""boto3-backed RemoteStackClient for AWS CloudFormation."""

from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from stackrecon.client.base import (
    CREATE_TERMINAL_STATUSES,
    DELETE_TERMINAL_STATUSES,
    NO_CHANGE_TERMINAL_STATUSES,
    UPDATE_TERMINAL_STATUSES,
    RemoteStackClient,
)
from stackrecon.client.codec import (
    decode_parameters,
    decode_tags,
    encode_parameters,
    encode_tags,
)
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
from stackrecon.utils.aws_client import AWSClientManager
from stackrecon.utils.errors import (
    ErrorContext,
    InvalidRequestError,
    InvalidTemplateError,
    NotFoundError,
    RemoteCallFailedError,
    error_handler,
)
from stackrecon.utils.logging import get_logger

logger = get_logger(__name__)

NO_UPDATES_MESSAGE = "No updates are to be performed"


class CloudFormationStackClient(RemoteStackClient):
    """RemoteStackClient implementation on top of a boto3 ``cloudformation`` client."""

    def __init__(self, cloudformation, fetch_templates: bool = True):
        """Initialize the adapter.

        Args:
            cloudformation: boto3 CloudFormation client
            fetch_templates: Whether describe_stack also reads the deployed
                template to fingerprint it
        """
        self.cloudformation = cloudformation
        self.fetch_templates = fetch_templates

    @classmethod
    def from_manager(cls, manager: AWSClientManager, **kwargs) -> "CloudFormationStackClient":
        """Build the adapter from an AWS client manager's session."""
        return cls(manager.get_client('cloudformation'), **kwargs)

    def _call(self, operation: str, func: Callable[..., Any], stack_name: Optional[str] = None,
              **kwargs) -> Any:
        """Invoke a boto3 operation, translating provider errors into the taxonomy."""
        try:
            return func(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise error_handler.handle_exception(
                e, ErrorContext(stack_name=stack_name, aws_operation=operation)
            ) from e

    @staticmethod
    def _require_name(name: Optional[str], what: str = "stack name") -> None:
        if not name:
            raise InvalidRequestError(f"{what} must not be empty")

    def list_stacks(self, status_filter: Optional[Iterable[str]] = None) -> List[ObservedStackSummary]:
        kwargs: Dict[str, Any] = {}
        statuses = [getattr(s, 'value', s) for s in status_filter or []]
        if statuses:
            kwargs['StackStatusFilter'] = statuses

        def collect(**call_kwargs):
            paginator = self.cloudformation.get_paginator('list_stacks')
            summaries = []
            for page in paginator.paginate(**call_kwargs):
                summaries.extend(page.get('StackSummaries', []))
            return summaries

        summaries = self._call('ListStacks', collect, **kwargs)

        return [
            ObservedStackSummary(
                name=summary['StackName'],
                stack_id=summary.get('StackId'),
                status=StackStatus.parse(summary.get('StackStatus')),
                status_reason=summary.get('StackStatusReason'),
                drift_status=DriftStatus.parse(
                    summary.get('DriftInformation', {}).get('StackDriftStatus')
                ),
                created_at=summary.get('CreationTime'),
            )
            for summary in summaries
        ]

    def _describe_raw(self, name: str) -> Dict[str, Any]:
        response = self._call(
            'DescribeStacks', self.cloudformation.describe_stacks,
            stack_name=name, StackName=name
        )
        stacks = response.get('Stacks', [])
        if not stacks:
            raise NotFoundError(
                f"Stack with id {name} does not exist",
                context=ErrorContext(stack_name=name, aws_operation='DescribeStacks')
            )
        return stacks[0]

    def describe_stack(self, name: str) -> ObservedStack:
        self._require_name(name)
        stack = self._describe_raw(name)
        status = StackStatus.parse(stack.get('StackStatus'))

        fingerprint = None
        if self.fetch_templates and status != StackStatus.DELETE_COMPLETE:
            template = self._call(
                'GetTemplate', self.cloudformation.get_template,
                stack_name=name, StackName=stack.get('StackId', name), TemplateStage='Original'
            )
            fingerprint = fingerprint_template(template.get('TemplateBody'))

        return self._to_observed(stack, fingerprint)

    def describe_stacks(self) -> List[ObservedStack]:
        """Describe every live stack in one paginated call.

        Templates are not fetched, so ``template_fingerprint`` is None.
        """
        def collect():
            paginator = self.cloudformation.get_paginator('describe_stacks')
            stacks = []
            for page in paginator.paginate():
                stacks.extend(page.get('Stacks', []))
            return stacks

        return [self._to_observed(stack) for stack in self._call('DescribeStacks', collect)]

    @staticmethod
    def _to_observed(stack: Dict[str, Any], fingerprint: Optional[str] = None) -> ObservedStack:
        return ObservedStack(
            name=stack['StackName'],
            stack_id=stack.get('StackId'),
            status=StackStatus.parse(stack.get('StackStatus')),
            status_reason=stack.get('StackStatusReason'),
            parameters=decode_parameters(stack.get('Parameters')),
            tags=decode_tags(stack.get('Tags')),
            drift_status=DriftStatus.parse(
                stack.get('DriftInformation', {}).get('StackDriftStatus')
            ),
            template_fingerprint=fingerprint,
            outputs={
                output['OutputKey']: output.get('OutputValue', '')
                for output in stack.get('Outputs', [])
            },
        )

    def get_stack_status(self, name: str, stack_id: Optional[str] = None) -> Tuple[StackStatus, Optional[str]]:
        target = stack_id or name
        self._require_name(target)
        stack = self._describe_raw(target)
        return StackStatus.parse(stack.get('StackStatus')), stack.get('StackStatusReason')

    def validate_template(self, template_body: Optional[str] = None,
                          template_url: Optional[str] = None) -> str:
        if not template_body and not template_url:
            raise InvalidTemplateError("Either a template body or a template URL is required")

        kwargs = {'TemplateBody': template_body} if template_body else {'TemplateURL': template_url}
        try:
            response = self._call('ValidateTemplate', self.cloudformation.validate_template, **kwargs)
        except RemoteCallFailedError as e:
            if e.transient:
                raise
            raise InvalidTemplateError(
                f"Template rejected: {e.message}",
                context=e.context,
                cause=e.cause
            ) from e

        return response.get('Description', '')

    def _mutation_kwargs(self, desired: StackDescriptor) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            'StackName': desired.name,
            'Parameters': encode_parameters(desired.parameters),
            'Tags': encode_tags(desired.tags),
        }
        if desired.template_body:
            kwargs['TemplateBody'] = desired.template_body
        else:
            kwargs['TemplateURL'] = desired.template_url
        if desired.capabilities:
            kwargs['Capabilities'] = list(desired.capabilities)
        return kwargs

    def create_stack(self, desired: StackDescriptor) -> OperationHandle:
        response = self._call(
            'CreateStack', self.cloudformation.create_stack,
            stack_name=desired.name, **self._mutation_kwargs(desired)
        )
        stack_id = response['StackId']
        logger.info(f"Submitted create for stack {desired.name} ({stack_id})")

        return OperationHandle(
            operation_id=stack_id,
            stack_name=desired.name,
            stack_id=stack_id,
            action='create',
            expected_terminal_statuses=CREATE_TERMINAL_STATUSES,
        )

    def update_stack(self, desired: StackDescriptor) -> OperationHandle:
        try:
            response = self._call(
                'UpdateStack', self.cloudformation.update_stack,
                stack_name=desired.name, **self._mutation_kwargs(desired)
            )
        except RemoteCallFailedError as e:
            if NO_UPDATES_MESSAGE not in e.message:
                raise
            logger.info(f"Stack {desired.name} already matches the submitted template and parameters")
            return OperationHandle(
                operation_id=desired.name,
                stack_name=desired.name,
                action='update',
                expected_terminal_statuses=NO_CHANGE_TERMINAL_STATUSES,
                no_changes=True,
            )

        stack_id = response['StackId']
        logger.info(f"Submitted update for stack {desired.name} ({stack_id})")

        return OperationHandle(
            operation_id=stack_id,
            stack_name=desired.name,
            stack_id=stack_id,
            action='update',
            expected_terminal_statuses=UPDATE_TERMINAL_STATUSES,
        )

    def delete_stack(self, name: str, stack_id: Optional[str] = None) -> OperationHandle:
        self._require_name(name)
        # Deleting by ARN keeps the target unambiguous if a new stack reuses the name
        self._call(
            'DeleteStack', self.cloudformation.delete_stack,
            stack_name=name, StackName=stack_id or name
        )
        logger.info(f"Submitted delete for stack {name}")

        return OperationHandle(
            operation_id=stack_id or name,
            stack_name=name,
            stack_id=stack_id,
            action='delete',
            expected_terminal_statuses=DELETE_TERMINAL_STATUSES,
        )

    def describe_stack_events(self, name: str, limit: Optional[int] = None) -> List[StackEvent]:
        self._require_name(name)

        def collect(**call_kwargs):
            paginator = self.cloudformation.get_paginator('describe_stack_events')
            pagination = {'MaxItems': limit} if limit else {}
            events = []
            for page in paginator.paginate(PaginationConfig=pagination, **call_kwargs):
                events.extend(page.get('StackEvents', []))
            return events

        events = self._call('DescribeStackEvents', collect, stack_name=name, StackName=name)

        if limit:
            events = events[:limit]

        return [
            StackEvent(
                event_id=event['EventId'],
                stack_name=event['StackName'],
                stack_id=event.get('StackId'),
                logical_resource_id=event.get('LogicalResourceId'),
                resource_type=event.get('ResourceType'),
                resource_status=event.get('ResourceStatus'),
                status_reason=event.get('ResourceStatusReason'),
                timestamp=event.get('Timestamp'),
            )
            for event in events
        ]

    def detect_stack_drift(self, name: str) -> str:
        self._require_name(name)
        response = self._call(
            'DetectStackDrift', self.cloudformation.detect_stack_drift,
            stack_name=name, StackName=name
        )
        detection_id = response['StackDriftDetectionId']
        logger.info(f"Started drift detection for stack {name} ({detection_id})")
        return detection_id

    def describe_stack_resource_drifts(
        self,
        name: str,
        status_filter: Optional[Iterable[str]] = None
    ) -> List[ResourceDrift]:
        self._require_name(name)
        kwargs: Dict[str, Any] = {'StackName': name}
        statuses = [getattr(s, 'value', s) for s in status_filter or []]
        if statuses:
            kwargs['StackResourceDriftStatusFilters'] = statuses

        drifts: List[ResourceDrift] = []
        while True:
            response = self._call(
                'DescribeStackResourceDrifts', self.cloudformation.describe_stack_resource_drifts,
                stack_name=name, **kwargs
            )
            for drift in response.get('StackResourceDrifts', []):
                drifts.append(ResourceDrift(
                    stack_id=drift['StackId'],
                    logical_resource_id=drift.get('LogicalResourceId'),
                    physical_resource_id=drift.get('PhysicalResourceId'),
                    resource_type=drift.get('ResourceType'),
                    drift_status=drift.get('StackResourceDriftStatus', 'NOT_CHECKED'),
                    property_differences=drift.get('PropertyDifferences', []),
                    timestamp=drift.get('Timestamp'),
                ))

            next_token = response.get('NextToken')
            if not next_token:
                return drifts
            kwargs['NextToken'] = next_token

    def describe_stack_drift_detection_status(self, detection_id: str) -> DriftDetectionStatus:
        self._require_name(detection_id, "drift detection id")
        response = self._call(
            'DescribeStackDriftDetectionStatus',
            self.cloudformation.describe_stack_drift_detection_status,
            StackDriftDetectionId=detection_id
        )

        return DriftDetectionStatus(
            detection_id=response.get('StackDriftDetectionId', detection_id),
            stack_id=response.get('StackId'),
            detection_status=DetectionStatus(response['DetectionStatus']),
            stack_drift_status=DriftStatus.parse(response.get('StackDriftStatus')),
            reason=response.get('DetectionStatusReason'),
            drifted_resource_count=response.get('DriftedStackResourceCount', 0),
            timestamp=response.get('Timestamp'),
        )
