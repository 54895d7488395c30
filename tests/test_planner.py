"""Tests for the state differ."""

import pytest

from stackrecon.orchestrator.planner import ActionType, StateDiffer
from stackrecon.state.models import DriftStatus, ObservedStack, StackDescriptor, StackStatus
from stackrecon.utils.errors import DriftUnresolvedError, InvalidRequestError


def observed_from(desired: StackDescriptor, **overrides) -> ObservedStack:
    """Observed stack that matches the descriptor."""
    fields = dict(
        name=desired.name,
        stack_id=f"arn:aws:cloudformation:us-east-1:123456789012:stack/{desired.name}/1",
        status=StackStatus.CREATE_COMPLETE,
        parameters=dict(desired.parameters),
        tags=dict(desired.tags),
        drift_status=DriftStatus.IN_SYNC,
        template_fingerprint=desired.template_fingerprint(),
    )
    fields.update(overrides)
    return ObservedStack(**fields)


class TestStateDiffer:
    """Test action planning."""

    @pytest.fixture
    def differ(self):
        return StateDiffer()

    def test_matching_stack_gives_empty_plan(self, differ, descriptor):
        """Test a stack that matches its declaration plans nothing."""
        plan = differ.plan(descriptor, observed_from(descriptor))

        assert plan.is_noop()
        assert len(plan) == 0
        assert plan.differences == []

    def test_plan_is_idempotent(self, differ, descriptor):
        """Test planning twice against the same state gives the same empty plan."""
        observed = observed_from(descriptor, status=StackStatus.UPDATE_COMPLETE)

        assert differ.plan(descriptor, observed).is_noop()
        assert differ.plan(descriptor, observed).is_noop()

    def test_absent_stack_is_created(self, differ, descriptor):
        """Test a missing stack plans a single create."""
        plan = differ.plan(descriptor, ObservedStack.absent(descriptor.name))

        assert plan.action_types() == [ActionType.CREATE]
        assert plan.needs_template()

    def test_deleted_stack_is_created(self, differ, descriptor):
        """Test a DELETE_COMPLETE stack counts as absent."""
        plan = differ.plan(descriptor, observed_from(descriptor, status=StackStatus.DELETE_COMPLETE))

        assert plan.action_types() == [ActionType.CREATE]

    @pytest.mark.parametrize("status", [
        StackStatus.FAILED,
        StackStatus.ROLLBACK_COMPLETE,
        StackStatus.ROLLBACK_FAILED,
        StackStatus.CREATE_FAILED,
        StackStatus.DELETE_FAILED,
        StackStatus.UPDATE_ROLLBACK_FAILED,
        StackStatus.REVIEW_IN_PROGRESS,
    ])
    def test_failed_stack_is_replaced(self, differ, descriptor, status):
        """Test stacks that cannot be updated are deleted and recreated."""
        observed = observed_from(descriptor, status=status)
        plan = differ.plan(descriptor, observed)

        assert plan.action_types() == [ActionType.DELETE, ActionType.CREATE]
        assert ActionType.UPDATE not in plan.action_types()
        assert plan.actions[0].stack_id == observed.stack_id

    def test_update_rollback_complete_is_updated_in_place(self, differ, descriptor):
        """Test UPDATE_ROLLBACK_COMPLETE is healthy enough to update."""
        observed = observed_from(
            descriptor, status=StackStatus.UPDATE_ROLLBACK_COMPLETE, parameters={"Environment": "old"}
        )

        assert differ.plan(descriptor, observed).action_types() == [ActionType.UPDATE]

    def test_parameter_change_plans_update(self, differ, descriptor):
        """Test a changed parameter plans an update and lists the difference."""
        plan = differ.plan(descriptor, observed_from(descriptor, parameters={"Environment": "prod"}))

        assert plan.action_types() == [ActionType.UPDATE]
        assert plan.differences == ["parameter Environment: 'prod' -> 'test'"]

    def test_masked_parameter_is_not_compared(self, differ, descriptor):
        """Test NoEcho parameters masked by CloudFormation are skipped."""
        observed = observed_from(descriptor, parameters={"Environment": StateDiffer.MASKED_VALUE})

        assert differ.plan(descriptor, observed).is_noop()

    def test_undeclared_parameters_are_ignored(self, differ, descriptor):
        """Test parameters left to template defaults do not cause updates."""
        observed = observed_from(descriptor, parameters={"Environment": "test", "Size": "small"})

        assert differ.plan(descriptor, observed).is_noop()

    def test_tag_change_plans_update(self, differ, descriptor):
        """Test added or removed tags plan an update."""
        plan = differ.plan(descriptor, observed_from(descriptor, tags={"Name": "testing", "Team": "ops"}))

        assert plan.action_types() == [ActionType.UPDATE]
        assert "tag Team: 'ops' -> None" in plan.differences

    def test_aws_tags_are_ignored(self, differ, descriptor):
        """Test tags added by AWS do not cause updates."""
        observed = observed_from(
            descriptor, tags={"Name": "testing", "aws:cloudformation:stack-name": "network"}
        )

        assert differ.plan(descriptor, observed).is_noop()

    def test_template_change_plans_update(self, differ, descriptor):
        """Test a different deployed template plans an update."""
        plan = differ.plan(descriptor, observed_from(descriptor, template_fingerprint="0" * 64))

        assert plan.action_types() == [ActionType.UPDATE]
        assert "template body has changed" in plan.differences

    def test_unknown_template_fingerprint_is_not_compared(self, differ, descriptor):
        """Test a stack whose template was not read is compared on parameters and tags only."""
        assert differ.plan(descriptor, observed_from(descriptor, template_fingerprint=None)).is_noop()

    def test_drifted_stack_plans_update(self, differ, descriptor):
        """Test drift forces an update even when configuration matches."""
        plan = differ.plan(descriptor, observed_from(descriptor, drift_status=DriftStatus.DRIFTED))

        assert plan.action_types() == [ActionType.UPDATE]
        assert "drifted" in plan.actions[0].reason
        assert plan.differences == []
        assert plan.actions[0].resolves_drift

    def test_configuration_change_does_not_resolve_drift(self, differ, descriptor):
        plan = differ.plan(descriptor, observed_from(descriptor, parameters={"Environment": "prod"}))

        assert not plan.actions[0].resolves_drift

    @pytest.mark.parametrize("drift_status", [DriftStatus.UNKNOWN, DriftStatus.DETECTION_IN_PROGRESS])
    def test_unconfirmed_drift_is_not_an_empty_plan(self, differ, descriptor, drift_status):
        """Test a matching stack is only reported unchanged once drift is IN_SYNC."""
        with pytest.raises(DriftUnresolvedError) as exc_info:
            differ.plan(descriptor, observed_from(descriptor, drift_status=drift_status))

        assert drift_status.value in exc_info.value.message

    def test_unconfirmed_drift_with_changes_plans_update(self, differ, descriptor):
        """Test configuration changes are planned without waiting for a drift scan."""
        observed = observed_from(descriptor, parameters={"Environment": "prod"}, drift_status=DriftStatus.UNKNOWN)

        assert differ.plan(descriptor, observed).action_types() == [ActionType.UPDATE]

    def test_found_stack_with_unrecognised_status_is_not_created(self, differ, descriptor):
        """Test a live stack whose status is not recognised is rejected instead of created again."""
        with pytest.raises(InvalidRequestError) as exc_info:
            differ.plan(descriptor, observed_from(descriptor, status=StackStatus.UNKNOWN))

        assert "unrecognised" in exc_info.value.message

    @pytest.mark.parametrize("status", [
        StackStatus.CREATE_IN_PROGRESS,
        StackStatus.UPDATE_IN_PROGRESS,
        StackStatus.UPDATE_ROLLBACK_COMPLETE_CLEANUP_IN_PROGRESS,
        StackStatus.DELETE_IN_PROGRESS,
    ])
    def test_in_progress_stack_is_rejected(self, differ, descriptor, status):
        """Test a stack that is still changing cannot be planned."""
        with pytest.raises(InvalidRequestError):
            differ.plan(descriptor, observed_from(descriptor, status=status))

    def test_get_summary(self, differ, descriptor):
        """Test the plan summary counts actions by type."""
        plan = differ.plan(descriptor, observed_from(descriptor, status=StackStatus.ROLLBACK_COMPLETE))

        summary = plan.get_summary()
        assert summary["delete"] == 1
        assert summary["create"] == 1
        assert summary["update"] == 0
