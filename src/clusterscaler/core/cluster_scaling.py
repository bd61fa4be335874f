#!/usr/bin/env python3
"""
Cluster scaling engine: one capacity evaluation and worker pool action per pass
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from prometheus_client import Counter

from ..clients.base import InstanceGroup, Orchestrator, RegionResolver
from ..models import ClusterCapacity, ScalingDirection
from .state import ScalingState

logger = logging.getLogger(__name__)

CLUSTER_SCALE_OUT_SUCCESS = Counter(
    'cluster_scale_out_success',
    'Cluster scaling passes that completed without an early exit'
)
CLUSTER_SCALE_OUT_FAILED = Counter(
    'cluster_scale_out_failed',
    'New worker nodes that failed to join the cluster'
)


class ClusterScalingStatus(str, Enum):
    """Why cluster scaling is or is not acting"""
    ENABLED = "enabled"
    DISABLED_BY_OPERATOR = "disabled_by_operator"
    DISABLED_BY_FAILURE_THRESHOLD = "disabled_by_failure_threshold"


class ClusterScalingOutcome(str, Enum):
    """Result of one cluster scaling pass"""
    NOT_LEADER = "not_leader"
    LEADERSHIP_LOST = "leadership_lost"
    NOT_REQUIRED = "not_required"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"
    SCALE_OUT_FAILED = "scale_out_failed"
    SCALED_OUT = "scaled_out"
    SELF_DISABLED = "self_disabled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    NO_ELIGIBLE_NODE = "no_eligible_node"
    DRAIN_FAILED = "drain_failed"
    DRAINED_NOT_TERMINATED = "drained_not_terminated"
    SCALED_IN = "scaled_in"


# Outcomes that end the pass before the completion counter is reached
_EARLY_EXITS = {
    ClusterScalingOutcome.LEADERSHIP_LOST,
    ClusterScalingOutcome.DISABLED,
    ClusterScalingOutcome.SCALE_OUT_FAILED,
    ClusterScalingOutcome.SCALED_OUT,
    ClusterScalingOutcome.SELF_DISABLED,
}


class ClusterScalingEngine:
    """Decides whether the worker pool grows or shrinks and carries it out"""

    def __init__(
        self,
        settings,
        orchestrator: Orchestrator,
        instance_group: InstanceGroup,
        region_resolver: Optional[RegionResolver] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the cluster scaling engine

        Args:
            settings: Settings instance
            orchestrator: Orchestrator client
            instance_group: Instance group client for the worker pool
            region_resolver: Used when no region is configured
            clock: Returns the current time, timezone aware
        """
        self.settings = settings
        self.orchestrator = orchestrator
        self.instance_group = instance_group
        self.region_resolver = region_resolver
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.region = settings.region
        if settings.cluster_scaling.enabled:
            self._status = ClusterScalingStatus.ENABLED
        else:
            self._status = ClusterScalingStatus.DISABLED_BY_OPERATOR

    @property
    def status(self) -> ClusterScalingStatus:
        return self._status

    @property
    def enabled(self) -> bool:
        return self._status == ClusterScalingStatus.ENABLED

    def run(self, state: ScalingState) -> ClusterScalingOutcome:
        """
        Run one complete cluster scaling pass

        Args:
            state: Scaling state owned by the runner, mutated in place

        Returns:
            Outcome of the pass
        """
        # Non-leaders take no action at all
        if not self.orchestrator.leader_check():
            logger.debug("Not running on the known leader, no cluster scaling actions will be taken")
            return ClusterScalingOutcome.NOT_LEADER

        self._resolve_region()

        capacity = ClusterCapacity()
        try:
            scale = self.orchestrator.evaluate_cluster_capacity(capacity, self.settings)
        except Exception as e:
            logger.error(f"Failed to evaluate cluster capacity: {e}")
            return ClusterScalingOutcome.NOT_REQUIRED

        if not scale:
            logger.debug("Cluster scaling operation not required or permitted")
            return ClusterScalingOutcome.NOT_REQUIRED

        if self._cooling_down(state):
            return ClusterScalingOutcome.COOLDOWN

        outcome = ClusterScalingOutcome.NOT_REQUIRED
        if capacity.scaling_direction == ScalingDirection.OUT:
            outcome = self._scale_out(state)
        elif capacity.scaling_direction == ScalingDirection.IN:
            outcome = self._scale_in(state, capacity)

        if outcome not in _EARLY_EXITS:
            CLUSTER_SCALE_OUT_SUCCESS.inc()
        return outcome

    def _resolve_region(self):
        """Discover the region once when none is configured"""
        if self.region or self.region_resolver is None:
            return

        try:
            self.region = self.region_resolver.describe_region()
            logger.info(f"Discovered region {self.region}")
        except Exception as e:
            logger.warning(f"Unable to determine region, using client default: {e}")

    def _cooling_down(self, state: ScalingState) -> bool:
        if state.last_scaling_event is None:
            logger.info("No previous scaling operations have occurred, scaling operations will be permitted")
            return False

        cooldown = state.last_scaling_event + timedelta(seconds=self.settings.cluster_scaling.cool_down)
        if self.clock() < cooldown:
            logger.info(f"Cluster scaling cooldown threshold has not been reached: {cooldown.isoformat()}, "
                        f"scaling operations will not be permitted")
            return True

        logger.debug(f"Cluster scaling cooldown threshold {cooldown.isoformat()} has been reached, "
                     f"scaling operations will be permitted")
        return False

    def _scale_out(self, state: ScalingState) -> ClusterScalingOutcome:
        """Grow the worker pool by one verified healthy node"""
        if not self.enabled:
            logger.debug(f"Cluster scaling {self._status.value}, not initiating scaling operation (scale-out)")
            return ClusterScalingOutcome.DISABLED

        group = self.settings.cluster_scaling.autoscaling_group
        threshold = self.settings.cluster_scaling.retry_threshold

        if not self._still_leader("scale-out"):
            return ClusterScalingOutcome.LEADERSHIP_LOST

        try:
            self.instance_group.scale_out_cluster(group)
        except Exception as e:
            logger.error(f"Unable to initiate a scaling operation against instance group {group}: {e}")
            return ClusterScalingOutcome.SCALE_OUT_FAILED

        state.node_failure_count = 0

        # Inclusive bound: the count can step past the threshold without ever equalling it
        while state.node_failure_count <= threshold:
            if state.node_failure_count > 0:
                logger.info(f"Attempting to launch a new worker node, previous node failures: "
                            f"{state.node_failure_count}")

            try:
                newest_node = self.instance_group.get_most_recent_instance(group, self.region)
            except Exception as e:
                logger.error(f"Failed to identify the most recently launched instance: {e}")
                state.node_failure_count += 1
                continue

            if self._node_healthy(newest_node):
                state.node_failure_count = 0
                state.last_scaling_event = self.clock()
                logger.info(f"New node {newest_node} joined the worker pool")
                return ClusterScalingOutcome.SCALED_OUT

            state.node_failure_count += 1
            logger.error(f"New node {newest_node} failed to join the worker pool, incrementing node "
                         f"failure count to {state.node_failure_count}")
            CLUSTER_SCALE_OUT_FAILED.inc()

            instance_id = self._instance_id(newest_node)

            if not self._still_leader(f"removal of failed node {newest_node}"):
                return ClusterScalingOutcome.LEADERSHIP_LOST

            if self._disable_cluster_scaling(state):
                # Keep the failed instance around for debugging
                if instance_id:
                    try:
                        self.instance_group.detach_instance(group, instance_id)
                        logger.info(f"Detached failed instance {instance_id} from {group}")
                    except Exception as e:
                        logger.error(f"An error occurred while detaching the failed instance "
                                     f"{instance_id}: {e}")
                return ClusterScalingOutcome.SELF_DISABLED

            if instance_id:
                try:
                    self.instance_group.terminate_instance(instance_id, self.region)
                    logger.info(f"Terminated failed instance {instance_id}")
                except Exception as e:
                    logger.error(f"An error occurred while terminating instance {instance_id}: {e}")

        logger.error(f"Scale-out retries exhausted after {state.node_failure_count} failed attempts "
                     f"to bring up a healthy worker node")
        return ClusterScalingOutcome.RETRIES_EXHAUSTED

    def _still_leader(self, action: str) -> bool:
        """Re-check leadership right before a mutating call"""
        try:
            leader = self.orchestrator.leader_check()
        except Exception as e:
            logger.error(f"Leadership check failed before {action}: {e}")
            return False

        if not leader:
            logger.warning(f"Leadership lost, abandoning {action}")
        return leader

    def _node_healthy(self, address: str) -> bool:
        try:
            return self.orchestrator.verify_node_health(address)
        except Exception as e:
            logger.error(f"Health verification of node {address} failed: {e}")
            return False

    def _instance_id(self, address: str) -> Optional[str]:
        try:
            return self.instance_group.translate_address_to_id(address, self.region)
        except Exception as e:
            logger.error(f"Unable to translate {address} to an instance id: {e}")
            return None

    def _disable_cluster_scaling(self, state: ScalingState) -> bool:
        """Disable cluster scaling once the failure count hits the retry threshold"""
        threshold = self.settings.cluster_scaling.retry_threshold
        if state.node_failure_count != threshold:
            return False

        self._status = ClusterScalingStatus.DISABLED_BY_FAILURE_THRESHOLD
        logger.error(f"Attempts to add new nodes to the worker pool have failed {threshold} times. "
                     f"Cluster scaling will be disabled.")
        return True

    def _scale_in(self, state: ScalingState, capacity: ClusterCapacity) -> ClusterScalingOutcome:
        """Drain and remove the least allocated worker node"""
        try:
            node_id, node_address = self.orchestrator.least_allocated_node(capacity)
        except Exception as e:
            logger.error(f"Unable to determine the least allocated node: {e}")
            return ClusterScalingOutcome.NO_ELIGIBLE_NODE

        if not node_id or not node_address:
            logger.debug("No worker node is eligible for removal")
            return ClusterScalingOutcome.NO_ELIGIBLE_NODE

        if not self.enabled:
            logger.debug(f"Cluster scaling {self._status.value}, not initiating scaling operation (scale-in)")
            return ClusterScalingOutcome.DISABLED

        # Only members of the group can be terminated after the drain
        if self._instance_id(node_address) is None:
            logger.warning(f"Node {node_id} ({node_address}) is not a member of the instance group, "
                           f"not draining it")
            return ClusterScalingOutcome.NO_ELIGIBLE_NODE

        if not self._still_leader(f"drain of node {node_id}"):
            return ClusterScalingOutcome.LEADERSHIP_LOST

        try:
            self.orchestrator.drain_node(node_id)
        except Exception as e:
            logger.error(f"Unable to drain node {node_id}: {e}")
            return ClusterScalingOutcome.DRAIN_FAILED

        if not self._still_leader(f"termination of node {node_id}"):
            return ClusterScalingOutcome.LEADERSHIP_LOST

        group = self.settings.cluster_scaling.autoscaling_group
        logger.info(f"Terminating instance {node_address}")
        try:
            self.instance_group.scale_in_cluster(group, node_address)
        except Exception as e:
            logger.error(f"Node {node_id} was drained but instance {node_address} could not be "
                         f"terminated: {e}")
            return ClusterScalingOutcome.DRAINED_NOT_TERMINATED

        state.last_scaling_event = self.clock()
        return ClusterScalingOutcome.SCALED_IN
