"""State differ that turns desired vs observed stack state into an action plan."""

from typing import Dict, Iterator, List, Optional
from dataclasses import dataclass, field
from enum import Enum
from datetime import datetime, timezone

from stackrecon.state.models import (
    DriftStatus,
    HEALTHY_STATUSES,
    ObservedStack,
    StackDescriptor,
    StackStatus,
)
from stackrecon.utils.errors import DriftUnresolvedError, ErrorContext, InvalidRequestError
from stackrecon.utils.logging import get_logger

logger = get_logger(__name__)


class ActionType(Enum):
    """Type of action taken on a stack."""
    NO_OP = "no_op"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class PlannedAction:
    """One step of an action plan."""

    action_type: ActionType
    descriptor: StackDescriptor
    reason: str
    stack_id: Optional[str] = None  # Set for DELETE so the exact stack is targeted
    resolves_drift: bool = False  # UPDATE planned because resources drifted

    @property
    def is_mutating(self) -> bool:
        return self.action_type != ActionType.NO_OP


@dataclass
class ActionPlan:
    """Ordered actions that bring one stack to its desired state.

    An empty plan is the no-op plan.
    """

    stack_identity: str
    actions: List[PlannedAction] = field(default_factory=list)
    observed: Optional[ObservedStack] = None
    differences: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __len__(self) -> int:
        return len(self.actions)

    def __iter__(self) -> Iterator[PlannedAction]:
        return iter(self.actions)

    def is_noop(self) -> bool:
        """Check if the stack already matches its desired state."""
        return not self.actions

    def action_types(self) -> List[ActionType]:
        return [action.action_type for action in self.actions]

    def needs_template(self) -> bool:
        """Check if any step submits the template (create or update)."""
        return any(
            action.action_type in (ActionType.CREATE, ActionType.UPDATE)
            for action in self.actions
        )

    def get_summary(self) -> Dict[str, int]:
        """Get a summary of actions by type."""
        summary = {action_type.value: 0 for action_type in ActionType}
        for action in self.actions:
            summary[action.action_type.value] += 1
        return summary


class StateDiffer:
    """Compares a StackDescriptor with an ObservedStack and plans the actions."""

    # CloudFormation masks NoEcho parameter values with this placeholder
    MASKED_VALUE = "****"

    # Tags with this prefix are added by AWS and cannot be set by users
    RESERVED_TAG_PREFIX = "aws:"

    def __init__(self):
        """Initialize state differ."""
        self.logger = get_logger(__name__)

    def plan(self, desired: StackDescriptor, observed: ObservedStack) -> ActionPlan:
        """Create an action plan for one stack.

        Args:
            desired: Desired stack configuration
            observed: Stack state read from CloudFormation

        Returns:
            ActionPlan, empty when nothing needs to change

        Raises:
            InvalidRequestError: If the stack is still changing or in a status
                that cannot be planned from
            DriftUnresolvedError: If the stack otherwise matches but its drift
                status was never confirmed IN_SYNC
        """
        plan = ActionPlan(stack_identity=desired.identity, observed=observed)

        if not observed.exists:
            plan.actions.append(PlannedAction(
                action_type=ActionType.CREATE,
                descriptor=desired,
                reason="Stack does not exist"
            ))
            self._log_plan(plan)
            return plan

        if observed.status.in_progress:
            raise InvalidRequestError(
                f"Stack is {observed.status.value}; it must settle before it can be planned",
                context=ErrorContext(stack_identity=desired.identity, stack_name=desired.name)
            )

        if observed.status.requires_replacement:
            # CloudFormation cannot update a stack out of these states
            plan.actions.append(PlannedAction(
                action_type=ActionType.DELETE,
                descriptor=desired,
                reason=f"Stack is in {observed.status.value} and must be replaced",
                stack_id=observed.stack_id
            ))
            plan.actions.append(PlannedAction(
                action_type=ActionType.CREATE,
                descriptor=desired,
                reason=f"Recreate stack after {observed.status.value}"
            ))
            self._log_plan(plan)
            return plan

        if observed.status == StackStatus.UNKNOWN:
            raise InvalidRequestError(
                "Stack exists but reports an unrecognised status; refusing to plan",
                context=ErrorContext(stack_identity=desired.identity, stack_name=desired.name)
            )

        if observed.status not in HEALTHY_STATUSES:
            raise InvalidRequestError(
                f"Cannot plan from stack status {observed.status.value}",
                context=ErrorContext(stack_identity=desired.identity, stack_name=desired.name)
            )

        plan.differences = self.find_differences(desired, observed)
        drifted = (
            observed.drift_status == DriftStatus.DRIFTED
            or observed.status == StackStatus.DRIFTED
        )

        reasons = []
        if plan.differences:
            reasons.append("Stack configuration has changed")
        if drifted:
            reasons.append("Stack resources have drifted from the template")

        if reasons:
            plan.actions.append(PlannedAction(
                action_type=ActionType.UPDATE,
                descriptor=desired,
                reason="; ".join(reasons),
                resolves_drift=drifted
            ))
        elif observed.drift_status != DriftStatus.IN_SYNC:
            # An empty plan asserts the stack is in sync
            raise DriftUnresolvedError(
                f"Stack matches its configuration but drift is {observed.drift_status.value}; "
                "run a drift scan before planning",
                context=ErrorContext(stack_identity=desired.identity, stack_name=desired.name)
            )

        self._log_plan(plan)
        return plan

    def find_differences(
        self,
        desired: StackDescriptor,
        observed: ObservedStack,
        compare_template: bool = True
    ) -> List[str]:
        """List human-readable differences between desired and observed config.

        Args:
            desired: Desired stack configuration
            observed: Observed stack
            compare_template: Whether to compare template fingerprints

        Returns:
            List of differences, empty if the stack matches
        """
        differences = []

        # Only declared parameters are compared; the rest are template defaults
        for key, value in sorted(desired.parameters.items()):
            if key not in observed.parameters:
                differences.append(f"parameter {key}: missing, want {value!r}")
                continue
            current = observed.parameters[key]
            if current == self.MASKED_VALUE:
                continue
            if current != value:
                differences.append(f"parameter {key}: {current!r} -> {value!r}")

        observed_tags = {
            k: v for k, v in observed.tags.items()
            if not k.startswith(self.RESERVED_TAG_PREFIX)
        }
        for key in sorted(set(desired.tags) | set(observed_tags)):
            want = desired.tags.get(key)
            have = observed_tags.get(key)
            if want != have:
                differences.append(f"tag {key}: {have!r} -> {want!r}")

        if compare_template:
            desired_fingerprint = desired.template_fingerprint()
            if (desired_fingerprint and observed.template_fingerprint
                    and desired_fingerprint != observed.template_fingerprint):
                differences.append("template body has changed")

        return differences

    def _log_plan(self, plan: ActionPlan) -> None:
        if plan.is_noop():
            self.logger.info(
                "No changes detected",
                extra={'stack': plan.stack_identity}
            )
            return

        steps = ", ".join(action.action_type.value for action in plan.actions)
        self.logger.info(
            f"Plan created: [{steps}] ({plan.actions[0].reason})",
            extra={'stack': plan.stack_identity}
        )
        for difference in plan.differences:
            self.logger.debug(f"  {difference}", extra={'stack': plan.stack_identity})
