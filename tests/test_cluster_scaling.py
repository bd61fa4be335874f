#!/usr/bin/env python3
"""
Tests for the cluster scaling engine
"""

import logging

import pytest
from prometheus_client import REGISTRY
from pydantic import ValidationError

from clusterscaler.clients.base import InstanceGroupError, OrchestratorError, RegionDiscoveryError
from clusterscaler.config import ClusterScalingSettings
from clusterscaler.core import ClusterScalingEngine, ClusterScalingOutcome, ClusterScalingStatus, ScalingState
from clusterscaler.models import ScalingDirection

from conftest import NOW, capacity_with, make_settings

GROUP = "clusterscaler-workers"


def sample(name: str) -> float:
    return REGISTRY.get_sample_value(name) or 0.0


def assert_no_mutations(orchestrator, instance_group):
    instance_group.scale_out_cluster.assert_not_called()
    instance_group.scale_in_cluster.assert_not_called()
    instance_group.terminate_instance.assert_not_called()
    instance_group.detach_instance.assert_not_called()
    orchestrator.drain_node.assert_not_called()


class TestGates:
    """Leader, directive and cooldown gates"""

    @pytest.fixture
    def engine(self, settings, orchestrator, instance_group, clock):
        return ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

    def test_non_leader_takes_no_action(self, engine, orchestrator, instance_group):
        orchestrator.leader_check.return_value = False
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.NOT_LEADER

        orchestrator.evaluate_cluster_capacity.assert_not_called()
        assert_no_mutations(orchestrator, instance_group)
        assert state == ScalingState()

    def test_no_directive_leaves_pool_and_state_alone(self, engine, instance_group):
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.NOT_REQUIRED

        assert instance_group.method_calls == []
        assert state.last_scaling_event is None

    def test_capacity_error_is_absorbed(self, engine, orchestrator, instance_group):
        orchestrator.evaluate_cluster_capacity.side_effect = OrchestratorError("api down")

        assert engine.run(ScalingState()) == ClusterScalingOutcome.NOT_REQUIRED
        assert instance_group.method_calls == []

    def test_capacity_is_fresh_each_pass(self, engine, orchestrator):
        engine.run(ScalingState())
        engine.run(ScalingState())

        first = orchestrator.evaluate_cluster_capacity.call_args_list[0].args[0]
        second = orchestrator.evaluate_cluster_capacity.call_args_list[1].args[0]
        assert first is not second

    def test_cooldown_suppresses_second_scale_out(self, engine, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.SCALED_OUT
        clock.advance(599)
        assert engine.run(state) == ClusterScalingOutcome.COOLDOWN
        assert instance_group.scale_out_cluster.call_count == 1

        clock.advance(1)
        assert engine.run(state) == ClusterScalingOutcome.SCALED_OUT
        assert instance_group.scale_out_cluster.call_count == 2

    def test_cooldown_applies_to_scale_in(self, engine, orchestrator, clock):
        state = ScalingState(last_scaling_event=NOW)
        clock.advance(60)
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)

        assert engine.run(state) == ClusterScalingOutcome.COOLDOWN
        orchestrator.least_allocated_node.assert_not_called()
        orchestrator.drain_node.assert_not_called()


class TestScaleOut:
    """Scale-out with node verification and the failure threshold"""

    @pytest.fixture
    def engine(self, settings, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        return ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

    def test_healthy_node_completes_scale_out(self, engine, orchestrator, instance_group):
        state = ScalingState(node_failure_count=1)

        assert engine.run(state) == ClusterScalingOutcome.SCALED_OUT

        instance_group.scale_out_cluster.assert_called_once_with(GROUP)
        orchestrator.verify_node_health.assert_called_once_with("172.20.0.15")
        instance_group.terminate_instance.assert_not_called()
        assert state.node_failure_count == 0
        assert state.last_scaling_event == NOW

    def test_scaled_out_does_not_count_as_completed_pass(self, engine):
        before = sample("cluster_scale_out_success_total")
        engine.run(ScalingState())
        assert sample("cluster_scale_out_success_total") == before

    def test_request_failure_aborts_pass(self, engine, instance_group):
        instance_group.scale_out_cluster.side_effect = InstanceGroupError("desired capacity")
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.SCALE_OUT_FAILED

        instance_group.get_most_recent_instance.assert_not_called()
        assert state == ScalingState()
        assert engine.status == ClusterScalingStatus.ENABLED

    def test_unhealthy_then_healthy_resets_failure_count(self, engine, orchestrator, instance_group):
        state = ScalingState()
        seen_counts = []

        def verify(address):
            seen_counts.append(state.node_failure_count)
            return len(seen_counts) > 1

        orchestrator.verify_node_health.side_effect = verify
        instance_group.translate_address_to_id.return_value = "c-15"

        assert engine.run(state) == ClusterScalingOutcome.SCALED_OUT

        assert seen_counts == [0, 1]
        instance_group.terminate_instance.assert_called_once_with("c-15", "us-east-1")
        assert state.node_failure_count == 0
        assert state.last_scaling_event == NOW

    def test_retry_threshold_disables_cluster_scaling(self, engine, orchestrator, instance_group, caplog):
        orchestrator.verify_node_health.return_value = False
        instance_group.translate_address_to_id.side_effect = ["c-1", "c-2"]
        failed_before = sample("cluster_scale_out_failed_total")
        state = ScalingState()

        with caplog.at_level(logging.ERROR, logger="clusterscaler.core.cluster_scaling"):
            assert engine.run(state) == ClusterScalingOutcome.SELF_DISABLED

        instance_group.terminate_instance.assert_called_once_with("c-1", "us-east-1")
        instance_group.detach_instance.assert_called_once_with(GROUP, "c-2")
        assert sample("cluster_scale_out_failed_total") - failed_before == 2
        assert state.node_failure_count == 2
        assert state.last_scaling_event is None
        assert engine.status == ClusterScalingStatus.DISABLED_BY_FAILURE_THRESHOLD
        assert not engine.enabled
        assert sum("will be disabled" in record.getMessage() for record in caplog.records) == 1

    def test_self_disable_is_logged_once(self, engine, orchestrator, instance_group, caplog):
        orchestrator.verify_node_health.return_value = False
        instance_group.translate_address_to_id.side_effect = ["c-1", "c-2"]
        state = ScalingState()
        engine.run(state)
        caplog.clear()

        with caplog.at_level(logging.DEBUG, logger="clusterscaler.core.cluster_scaling"):
            assert engine.run(state) == ClusterScalingOutcome.DISABLED

        assert instance_group.scale_out_cluster.call_count == 1
        assert not any("will be disabled" in record.getMessage() for record in caplog.records)

    def test_detach_failure_still_disables(self, engine, orchestrator, instance_group):
        orchestrator.verify_node_health.return_value = False
        instance_group.detach_instance.side_effect = InstanceGroupError("not a member")

        assert engine.run(ScalingState()) == ClusterScalingOutcome.SELF_DISABLED
        assert engine.status == ClusterScalingStatus.DISABLED_BY_FAILURE_THRESHOLD

    def test_health_check_error_counts_as_failure(self, engine, orchestrator, instance_group):
        orchestrator.verify_node_health.side_effect = [OrchestratorError("api down"), True]
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.SCALED_OUT
        assert instance_group.terminate_instance.call_count == 1

    def test_identification_failures_exhaust_retries(self, engine, orchestrator, instance_group):
        instance_group.get_most_recent_instance.side_effect = InstanceGroupError("no instances")
        success_before = sample("cluster_scale_out_success_total")
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.RETRIES_EXHAUSTED

        assert instance_group.get_most_recent_instance.call_count == 3
        orchestrator.verify_node_health.assert_not_called()
        instance_group.detach_instance.assert_not_called()
        assert state.node_failure_count == 3
        assert engine.status == ClusterScalingStatus.ENABLED
        assert sample("cluster_scale_out_success_total") - success_before == 1

    def test_disabled_by_operator_observes_directive(self, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        engine = ClusterScalingEngine(make_settings(enabled=False), orchestrator, instance_group, clock=clock)

        assert engine.status == ClusterScalingStatus.DISABLED_BY_OPERATOR
        assert engine.run(ScalingState()) == ClusterScalingOutcome.DISABLED
        assert_no_mutations(orchestrator, instance_group)


class TestScaleIn:
    """Drain then terminate"""

    @pytest.fixture
    def engine(self, settings, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        return ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

    def test_drains_then_terminates(self, engine, orchestrator, instance_group):
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.SCALED_IN

        orchestrator.drain_node.assert_called_once_with("k3s-worker-2")
        instance_group.scale_in_cluster.assert_called_once_with(GROUP, "172.20.0.12")
        assert state.last_scaling_event == NOW

    def test_no_eligible_node(self, engine, orchestrator, instance_group):
        orchestrator.least_allocated_node.return_value = ("", "")

        assert engine.run(ScalingState()) == ClusterScalingOutcome.NO_ELIGIBLE_NODE
        assert_no_mutations(orchestrator, instance_group)

    def test_drain_failure_skips_termination(self, engine, orchestrator, instance_group, caplog):
        orchestrator.drain_node.side_effect = OrchestratorError("eviction blocked")
        state = ScalingState()

        with caplog.at_level(logging.ERROR, logger="clusterscaler.core.cluster_scaling"):
            assert engine.run(state) == ClusterScalingOutcome.DRAIN_FAILED

        instance_group.scale_in_cluster.assert_not_called()
        assert state.last_scaling_event is None
        assert any("Unable to drain node k3s-worker-2" in record.getMessage() for record in caplog.records)

    def test_termination_failure_after_drain(self, engine, instance_group):
        instance_group.scale_in_cluster.side_effect = InstanceGroupError("docker down")
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.DRAINED_NOT_TERMINATED
        assert state.last_scaling_event is None

    def test_scale_in_counts_as_completed_pass(self, engine):
        before = sample("cluster_scale_out_success_total")
        engine.run(ScalingState())
        assert sample("cluster_scale_out_success_total") - before == 1

    def test_disabled_by_operator(self, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        engine = ClusterScalingEngine(make_settings(enabled=False), orchestrator, instance_group, clock=clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.DISABLED
        assert_no_mutations(orchestrator, instance_group)


class TestRegion:
    """Region resolution before the capacity evaluation"""

    def test_configured_region_is_used(self, orchestrator, instance_group, region_resolver, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        engine = ClusterScalingEngine(make_settings(), orchestrator, instance_group, region_resolver, clock)

        engine.run(ScalingState())

        region_resolver.describe_region.assert_not_called()
        instance_group.get_most_recent_instance.assert_called_once_with(GROUP, "us-east-1")

    def test_region_is_discovered_once(self, orchestrator, instance_group, region_resolver, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        engine = ClusterScalingEngine(make_settings(region=None), orchestrator, instance_group,
                                      region_resolver, clock)

        engine.run(ScalingState())
        engine.run(ScalingState())

        assert engine.region == "eu-west-1"
        region_resolver.describe_region.assert_called_once()
        instance_group.get_most_recent_instance.assert_any_call(GROUP, "eu-west-1")

    def test_discovery_failure_is_not_fatal(self, orchestrator, instance_group, region_resolver, clock):
        region_resolver.describe_region.side_effect = RegionDiscoveryError("no metadata service")
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        engine = ClusterScalingEngine(make_settings(region=None), orchestrator, instance_group,
                                      region_resolver, clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.SCALED_OUT
        assert engine.region is None


class TestLeadershipRecheck:
    """Leadership is confirmed again before every mutating call"""

    def test_lost_before_scale_out(self, settings, orchestrator, instance_group, clock):
        orchestrator.leader_check.side_effect = [True, False]
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.LEADERSHIP_LOST
        assert_no_mutations(orchestrator, instance_group)

    def test_lost_before_failed_node_removal(self, settings, orchestrator, instance_group, clock):
        orchestrator.leader_check.side_effect = [True, True, False]
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        orchestrator.verify_node_health.return_value = False
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.LEADERSHIP_LOST

        instance_group.terminate_instance.assert_not_called()
        instance_group.detach_instance.assert_not_called()
        assert engine.status == ClusterScalingStatus.ENABLED

    def test_leader_check_error_counts_as_lost(self, settings, orchestrator, instance_group, clock):
        orchestrator.leader_check.side_effect = [True, OrchestratorError("redis down")]
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.LEADERSHIP_LOST
        orchestrator.drain_node.assert_not_called()

    def test_lost_between_drain_and_termination(self, settings, orchestrator, instance_group, clock):
        orchestrator.leader_check.side_effect = [True, True, False]
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)
        state = ScalingState()

        assert engine.run(state) == ClusterScalingOutcome.LEADERSHIP_LOST

        orchestrator.drain_node.assert_called_once_with("k3s-worker-2")
        instance_group.scale_in_cluster.assert_not_called()
        assert state.last_scaling_event is None

    def test_leadership_lost_is_an_early_exit(self, settings, orchestrator, instance_group, clock):
        orchestrator.leader_check.side_effect = [True, False]
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)
        before = sample("cluster_scale_out_success_total")

        engine.run(ScalingState())

        assert sample("cluster_scale_out_success_total") == before


class TestScaleInCandidates:

    def test_node_outside_instance_group_is_not_drained(self, settings, orchestrator, instance_group, clock):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.IN)
        instance_group.translate_address_to_id.side_effect = InstanceGroupError("No instance found")
        engine = ClusterScalingEngine(settings, orchestrator, instance_group, clock=clock)

        assert engine.run(ScalingState()) == ClusterScalingOutcome.NO_ELIGIBLE_NODE

        instance_group.translate_address_to_id.assert_called_once_with("172.20.0.12", "us-east-1")
        assert_no_mutations(orchestrator, instance_group)


class TestZeroRetryThreshold:

    def test_unhealthy_node_exhausts_retries(self, orchestrator, instance_group, clock, caplog):
        orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.OUT)
        orchestrator.verify_node_health.return_value = False
        engine = ClusterScalingEngine(make_settings(retry_threshold=0), orchestrator, instance_group, clock=clock)
        state = ScalingState()

        with caplog.at_level(logging.ERROR, logger="clusterscaler.core.cluster_scaling"):
            assert engine.run(state) == ClusterScalingOutcome.RETRIES_EXHAUSTED

        instance_group.terminate_instance.assert_called_once_with("c-15", "us-east-1")
        assert state.node_failure_count == 1
        assert any("retries exhausted" in record.getMessage() for record in caplog.records)

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValidationError):
            ClusterScalingSettings(retry_threshold=-1)
