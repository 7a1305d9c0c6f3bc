"""
Tests for the apply executor and teardown, driven by an in-memory provider.
"""

import threading

from vpcplan.errors import (
    AmbiguousResourceError,
    ApplyCancelled,
    FatalProviderError,
    TransientProviderError,
)
from vpcplan.events import EventTypes, get_status_from_events, read_events
from vpcplan.executor import ApplyExecutor
from vpcplan.ids import new_run_id
from vpcplan.planner import plan_from_config
from vpcplan.report import build_report, summarize_ids
from vpcplan.state import create_run_dir


def _throttled():
    return TransientProviderError("CreateNatGateway: RequestLimitExceeded", code="RequestLimitExceeded")


class TestApply:
    """Test applying plans."""

    def test_example_apply(self, example_config, fake_provider, no_sleep_retry):
        """Test the two-subnet example provisions one VPC, one gateway and two subnets."""
        plan = plan_from_config(example_config)
        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.ok
        assert result.created == len(plan)
        assert [r.descriptor.key for r in result.provisioned] == plan.keys

        ids = summarize_ids(result)
        assert len(ids["vpc"]) == 1
        assert len(ids["gateway"]) == 1
        assert len(ids["subnet"]) == 2
        assert ids["gateway"][0].startswith("igw-")

    def test_rerun_is_idempotent(self, full_config, fake_provider, no_sleep_retry):
        """Test a second apply reuses everything and creates nothing."""
        plan = plan_from_config(full_config)
        first = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)
        creates_after_first = len(fake_provider.create_calls)

        second = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert second.ok
        assert second.created == 0
        assert second.reused == len(plan)
        assert len(fake_provider.create_calls) == creates_after_first
        assert second.refs == first.refs

    def test_resumes_after_partial_apply(self, example_config, fake_provider, no_sleep_retry):
        """Test a re-run after a failure only creates what is missing."""
        plan = plan_from_config(example_config)
        fake_provider.create_failures["subnet/public-2"] = [
            FatalProviderError("CreateSubnet: UnauthorizedOperation", code="UnauthorizedOperation")
        ]
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.ok
        assert result.reused == 3
        assert result.created == len(plan) - 3

    def test_transient_errors_are_retried(self, full_config, fake_provider, no_sleep_retry):
        """Test a NAT gateway throttled twice succeeds on the third attempt."""
        fake_provider.create_failures["gateway/demo-nat"] = [_throttled(), _throttled()]
        plan = plan_from_config(full_config)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.ok
        attempts = {r.descriptor.key: r.attempts for r in result.provisioned}
        assert attempts["gateway/demo-nat"] == 3
        assert all(n == 1 for key, n in attempts.items() if key != "gateway/demo-nat")
        assert fake_provider.create_calls.count("gateway/demo-nat") == 3
        assert no_sleep_retry.sleeps == [1.0, 2.0]

    def test_retries_exhausted(self, full_config, fake_provider, no_sleep_retry):
        """Test persistent throttling escalates to a fatal error."""
        fake_provider.create_failures["gateway/demo-nat"] = [_throttled() for _ in range(10)]
        plan = plan_from_config(full_config)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.status == "failed"
        assert isinstance(result.error, FatalProviderError)
        assert result.error.attempts == no_sleep_retry.max_attempts
        assert result.failed_descriptor.key == "gateway/demo-nat"

    def test_fatal_error_halts_with_partial_result(self, example_config, fake_provider, no_sleep_retry):
        """Test a fatal error stops the run and reports what was provisioned."""
        fake_provider.create_failures["subnet/public-2"] = [
            FatalProviderError("CreateSubnet: UnauthorizedOperation", code="UnauthorizedOperation",
                               hint="Check the IAM permissions of the credentials in use")
        ]
        plan = plan_from_config(example_config)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.status == "failed"
        assert [r.descriptor.key for r in result.provisioned] == [
            "vpc/demo", "gateway/demo-igw", "subnet/public-1",
        ]
        assert fake_provider.create_calls[-1] == "subnet/public-2"
        assert no_sleep_retry.sleeps == []

        report = build_report(result)
        assert report["failed"]["key"] == "subnet/public-2"
        assert report["failed"]["error_type"] == "FatalProviderError"
        assert "IAM" in report["failed"]["hint"]

    def test_ambiguous_match(self, example_config, fake_provider, no_sleep_retry):
        """Test two resources carrying the VPC's identity tags halt the run."""
        plan = plan_from_config(example_config)
        fake_provider.add_existing(plan[0])
        fake_provider.add_existing(plan[0])

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.status == "failed"
        assert isinstance(result.error, AmbiguousResourceError)
        assert len(result.error.candidates) == 2
        assert result.provisioned == []
        assert fake_provider.create_calls == []

    def test_cancel_between_steps(self, example_config, fake_provider, no_sleep_retry):
        """Test cancellation stops before the next step, never mid-step."""
        cancel = threading.Event()

        def cancel_after_gateway(descriptor):
            if descriptor.key == "gateway/demo-igw":
                cancel.set()

        fake_provider.on_create = cancel_after_gateway
        plan = plan_from_config(example_config)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry, cancel_event=cancel).apply(plan)

        assert result.status == "cancelled"
        assert isinstance(result.error, ApplyCancelled)
        assert [r.descriptor.key for r in result.provisioned] == ["vpc/demo", "gateway/demo-igw"]
        assert fake_provider.create_calls == ["vpc/demo", "gateway/demo-igw"]

    def test_unexpected_error_is_reported(self, example_config, fake_provider, no_sleep_retry):
        fake_provider.create_failures["vpc/demo"] = [RuntimeError("boom")]

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan_from_config(example_config))

        assert result.status == "failed"
        assert str(result.error) == "boom"

    def test_configure_follows_create_and_reuse(self, example_config, fake_provider, no_sleep_retry):
        """Test every resource is configured on the first apply and again when reused."""
        plan = plan_from_config(example_config)

        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert fake_provider.configure_calls == plan.keys + plan.keys

    def test_transient_error_after_create_finishes_configuration(self, example_config, fake_provider,
                                                                 no_sleep_retry):
        """Test a throttled route call after the table exists is retried, not skipped as reused."""
        fake_provider.configure_failures["route_table/demo-public"] = [
            TransientProviderError("CreateRoute: RequestLimitExceeded", code="RequestLimitExceeded"),
        ]
        plan = plan_from_config(example_config)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.ok
        table = next(r for r in result.provisioned if r.descriptor.key == "route_table/demo-public")
        assert table.action == "created"
        assert table.attempts == 2
        assert fake_provider.create_calls.count("route_table/demo-public") == 1
        assert fake_provider.configure_calls.count("route_table/demo-public") == 2
        assert no_sleep_retry.sleeps == [1.0]

    def test_create_that_landed_before_error_counts_as_created(self, example_config, fake_provider,
                                                               no_sleep_retry):
        """Test a create that succeeded before a timeout is found on retry and still reported as created."""
        plan = plan_from_config(example_config)
        original_create = fake_provider.create
        timed_out = []

        def create_then_time_out(descriptor, refs):
            resource_id = original_create(descriptor, refs)
            if descriptor.key == "subnet/public-1" and not timed_out:
                timed_out.append(resource_id)
                raise TransientProviderError("CreateSubnet: Read timeout", code="Timeout")
            return resource_id

        fake_provider.create = create_then_time_out
        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        assert result.ok
        subnet = next(r for r in result.provisioned if r.descriptor.key == "subnet/public-1")
        assert subnet.resource_id == timed_out[0]
        assert subnet.action == "created"
        assert fake_provider.create_calls.count("subnet/public-1") == 1

    def test_fatal_configure_error_halts(self, example_config, fake_provider, no_sleep_retry):
        fake_provider.configure_failures["gateway/demo-igw"] = [
            FatalProviderError("Internet gateway igw-1 is attached to vpc-9", code="Resource.AlreadyAssociated"),
        ]

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan_from_config(example_config))

        assert result.status == "failed"
        assert result.failed_descriptor.key == "gateway/demo-igw"
        assert [r.descriptor.key for r in result.provisioned] == ["vpc/demo"]


class TestApplyEvents:
    """Test progress events written to the run log."""

    def test_events_for_successful_apply(self, vpcplan_home, example_config, fake_provider, no_sleep_retry):
        run_id = new_run_id()
        create_run_dir(run_id)
        fake_provider.create_failures["subnet/public-1"] = [_throttled()]

        ApplyExecutor(fake_provider, retry=no_sleep_retry, run_id=run_id).apply(plan_from_config(example_config))

        types = [e["type"] for e in read_events(run_id)]
        assert types[0] == EventTypes.APPLY_START
        assert EventTypes.RETRY in types
        assert types.count(EventTypes.RESOURCE_CREATED) == 7
        assert get_status_from_events(run_id) == "applied"

    def test_events_for_failed_apply(self, vpcplan_home, example_config, fake_provider, no_sleep_retry):
        run_id = new_run_id()
        create_run_dir(run_id)
        fake_provider.create_failures["vpc/demo"] = [FatalProviderError("denied", code="AuthFailure")]

        ApplyExecutor(fake_provider, retry=no_sleep_retry, run_id=run_id).apply(plan_from_config(example_config))

        assert get_status_from_events(run_id) == "failed"


class TestDestroy:
    """Test teardown."""

    def test_destroy_in_reverse_order(self, full_config, fake_provider, no_sleep_retry):
        plan = plan_from_config(full_config)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).destroy(plan)

        assert result.ok
        assert fake_provider.delete_calls == list(reversed(plan.keys))
        assert fake_provider.resources == {}
        assert all(r.action == "deleted" for r in result.deleted)

    def test_destroy_skips_missing(self, example_config, fake_provider, no_sleep_retry):
        """Test destroying twice skips everything the second time."""
        plan = plan_from_config(example_config)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).destroy(plan)

        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).destroy(plan)

        assert result.ok
        assert result.deleted == []
        assert len(result.skipped) == len(plan)

    def test_destroy_halts_on_failure(self, example_config, fake_provider, no_sleep_retry):
        plan = plan_from_config(example_config)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        original_delete = fake_provider.delete

        def failing_delete(descriptor, resource_id, refs):
            if descriptor.key == "subnet/public-2":
                raise FatalProviderError("DeleteSubnet: UnauthorizedOperation", code="UnauthorizedOperation")
            original_delete(descriptor, resource_id, refs)

        fake_provider.delete = failing_delete
        result = ApplyExecutor(fake_provider, retry=no_sleep_retry).destroy(plan)

        assert result.status == "failed"
        assert result.failed_descriptor.key == "subnet/public-2"
        assert [r.descriptor.key for r in result.deleted] == [
            "security_group/app", "security_group/web", "route_table/demo-public",
        ]

    def test_unexpected_lookup_error_is_reported(self, vpcplan_home, example_config, fake_provider,
                                                 no_sleep_retry):
        """Test a non-provider error while finding resources still yields a failed result."""
        run_id = new_run_id()
        create_run_dir(run_id)
        plan = plan_from_config(example_config)
        ApplyExecutor(fake_provider, retry=no_sleep_retry).apply(plan)

        original_find = fake_provider.find_by_tags

        def broken_find(descriptor, tags, vpc_id=None):
            if descriptor.key == "subnet/public-1":
                raise KeyError("Subnets")
            return original_find(descriptor, tags, vpc_id)

        fake_provider.find_by_tags = broken_find
        result = ApplyExecutor(fake_provider, retry=no_sleep_retry, run_id=run_id).destroy(plan)

        assert result.status == "failed"
        assert result.failed_descriptor.key == "subnet/public-1"
        assert isinstance(result.error, KeyError)
        assert fake_provider.delete_calls == []
        assert get_status_from_events(run_id) == "failed"
        assert read_events(run_id)[-1]["type"] == EventTypes.DESTROY_FAILED
