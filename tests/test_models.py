"""Tests for state models."""

import pytest
from pydantic import ValidationError

from stackrecon.state.models import (
    DriftStatus,
    ObservedStack,
    OperationHandle,
    StackDescriptor,
    StackStatus,
    fingerprint_template,
)


class TestStackDescriptor:
    """Test desired stack validation."""

    def test_requires_a_template_source(self):
        with pytest.raises(ValidationError, match="template_body"):
            StackDescriptor(name="network")

    def test_rejects_two_template_sources(self):
        with pytest.raises(ValidationError, match="choose one"):
            StackDescriptor(
                name="network",
                template_body="{}",
                template_url="https://bucket.s3.amazonaws.com/network.json",
            )

    @pytest.mark.parametrize("name", ["", "1network", "network_stack", "a" * 129])
    def test_rejects_invalid_names(self, name):
        with pytest.raises(ValidationError):
            StackDescriptor(name=name, template_body="{}")

    def test_identity_includes_account_and_region(self):
        desired = StackDescriptor(
            name="network", account="123456789012", region="eu-west-1", template_body="{}"
        )

        assert desired.identity == "123456789012/eu-west-1/network"

    def test_identity_omits_missing_parts(self):
        assert StackDescriptor(name="network", template_body="{}").identity == "network"

    def test_url_template_has_no_fingerprint(self):
        desired = StackDescriptor(name="network", template_url="https://bucket.s3.amazonaws.com/t.json")

        assert desired.template_fingerprint() is None


class TestFingerprint:
    """Test template fingerprinting."""

    def test_json_key_order_does_not_matter(self):
        assert fingerprint_template('{"b": 1, "a": 2}') == fingerprint_template('{"a": 2,  "b": 1}')

    def test_dict_and_json_text_match(self, template_fingerprint):
        body = {"Resources": {"Queue": {"Type": "AWS::SQS::Queue"}}}

        assert fingerprint_template(body) == template_fingerprint

    def test_yaml_text_ignores_surrounding_whitespace(self):
        yaml_body = "Resources:\n  Queue:\n    Type: AWS::SQS::Queue\n"

        assert fingerprint_template(yaml_body) == fingerprint_template("\n" + yaml_body + "\n\n")

    def test_different_templates_differ(self):
        assert fingerprint_template('{"a": 1}') != fingerprint_template('{"a": 2}')

    def test_none(self):
        assert fingerprint_template(None) is None


class TestStatuses:
    """Test status parsing and classification."""

    def test_parse_unknown_status(self):
        assert StackStatus.parse("SOMETHING_NEW") == StackStatus.UNKNOWN
        assert StackStatus.parse(None) == StackStatus.UNKNOWN

    def test_in_progress(self):
        assert StackStatus.UPDATE_COMPLETE_CLEANUP_IN_PROGRESS.in_progress
        assert not StackStatus.UPDATE_COMPLETE.in_progress

    def test_review_in_progress_is_stable_and_replaced(self):
        """Test a stack awaiting change set execution is not waited on."""
        assert not StackStatus.REVIEW_IN_PROGRESS.in_progress
        assert StackStatus.REVIEW_IN_PROGRESS.requires_replacement

    def test_failure_and_replacement(self):
        assert StackStatus.UPDATE_ROLLBACK_COMPLETE.is_failure
        assert not StackStatus.UPDATE_ROLLBACK_COMPLETE.requires_replacement
        assert StackStatus.ROLLBACK_COMPLETE.requires_replacement
        assert StackStatus.FAILED.requires_replacement

    def test_drift_not_checked_is_unknown(self):
        assert DriftStatus.parse("NOT_CHECKED") == DriftStatus.UNKNOWN

    def test_absent_stack_does_not_exist(self):
        assert not ObservedStack.absent("network").exists
        assert not ObservedStack(name="network", status=StackStatus.DELETE_COMPLETE).exists
        assert ObservedStack(name="network", status=StackStatus.ROLLBACK_COMPLETE).exists

    def test_found_stack_with_unrecognised_status_exists(self):
        observed = ObservedStack(name="network", status=StackStatus.parse("IMPORT_SOMETHING_NEW"))

        assert observed.status == StackStatus.UNKNOWN
        assert observed.exists


class TestOperationHandle:
    """Test operation handles."""

    def test_expected_statuses_accept_enums_and_strings(self):
        handle = OperationHandle(
            operation_id="stack-id",
            stack_name="network",
            action="create",
            expected_terminal_statuses={StackStatus.CREATE_COMPLETE},
        )

        assert handle.is_expected(StackStatus.CREATE_COMPLETE)
        assert handle.is_expected("CREATE_COMPLETE")
        assert not handle.is_expected(StackStatus.ROLLBACK_COMPLETE)
        assert handle.submitted_at.tzinfo is not None
