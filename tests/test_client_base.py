"""Tests for the default RemoteStackClient behaviour."""

from stackrecon.state.models import StackDescriptor, StackStatus
from stackrecon.utils.errors import NotFoundError


class TestDescribeStacks:
    """Test describing every stack through list and describe calls."""

    def test_describes_each_live_stack(self, fake_client, descriptor):
        database = StackDescriptor(name="database", region="us-east-1", template_body=descriptor.template_body)
        fake_client.add_stack(descriptor)
        fake_client.add_stack(database, status=StackStatus.DELETE_COMPLETE)

        stacks = fake_client.describe_stacks()

        assert [s.name for s in stacks] == ["network"]
        assert stacks[0].parameters == {"Environment": "test"}

    def test_stack_deleted_after_listing_is_skipped(self, fake_client, descriptor):
        fake_client.add_stack(descriptor)
        fake_client.fail_next('describe_stack', NotFoundError("Stack with id network does not exist"))

        assert fake_client.describe_stacks() == []
