#!/usr/bin/env python3
"""
Kubernetes orchestrator client: capacity, node lifecycle and job scaling
"""

import logging
import os
import time
from typing import List, Optional, Tuple

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from ..models import ClusterCapacity, GroupScalingPolicy, JobScalingPolicy, NodeAllocation, ScalingDirection
from .base import Orchestrator, OrchestratorError
from .leadership import LeaderElection

logger = logging.getLogger(__name__)

CONTROL_PLANE_LABELS = ("node-role.kubernetes.io/control-plane", "node-role.kubernetes.io/master")
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
FINISHED_PHASES = ("Succeeded", "Failed")


def load_kubernetes_config(settings) -> None:
    """
    Load in-cluster or kubeconfig credentials

    Args:
        settings: KubernetesSettings instance
    """
    if settings.in_cluster:
        logger.info("Loading in-cluster config")
        k8s_config.load_incluster_config()
        return

    if not os.path.exists(settings.kubeconfig_path):
        raise FileNotFoundError(f"Kubeconfig file not found: {settings.kubeconfig_path}")

    logger.info(f"Loading kubeconfig from: {settings.kubeconfig_path}")
    k8s_config.load_kube_config(config_file=settings.kubeconfig_path)

    # Kubeconfigs copied out of a k3s server point at localhost
    server_host = settings.server_host
    if server_host and server_host not in ("localhost", "127.0.0.1"):
        configuration = client.Configuration.get_default_copy()
        if configuration.host and ('127.0.0.1' in configuration.host or 'localhost' in configuration.host):
            port = configuration.host.split(':')[-1]
            configuration.host = f"https://{server_host}:{port}"
            logger.info(f"Overriding Kubernetes API server to: {configuration.host}")
            client.Configuration.set_default(configuration)


def _quantity(value) -> float:
    return float(parse_quantity(value)) if value is not None else 0.0


def _is_ready(node) -> bool:
    for condition in (node.status.conditions or []):
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _internal_ip(node) -> str:
    for address in (node.status.addresses or []):
        if address.type == "InternalIP":
            return address.address
    return ""


def _pod_requests(pod) -> Tuple[float, float]:
    cpu = memory = 0.0
    for container in (pod.spec.containers or []):
        requests = (container.resources.requests if container.resources else None) or {}
        cpu += _quantity(requests.get("cpu"))
        memory += _quantity(requests.get("memory"))
    return cpu, memory


def _projected_percent(used: float, remaining: float) -> float:
    if remaining <= 0:
        return 0.0 if used == 0 else float("inf")
    return used / remaining * 100


class KubernetesOrchestrator(Orchestrator):
    """Orchestrator backed by the Kubernetes API"""

    def __init__(self, settings, leader_election: Optional[LeaderElection] = None,
                 core_api=None, apps_api=None, custom_api=None):
        """
        Initialize the orchestrator client

        Args:
            settings: Settings instance
            leader_election: Leader lock; every replica is leader when None
            core_api: CoreV1Api instance
            apps_api: AppsV1Api instance
            custom_api: CustomObjectsApi instance, used for pod metrics
        """
        self.settings = settings
        self.leader_election = leader_election
        self.core_api = core_api or client.CoreV1Api()
        self.apps_api = apps_api or client.AppsV1Api()
        self.custom_api = custom_api or client.CustomObjectsApi()

    def leader_check(self) -> bool:
        if self.leader_election is None:
            return True
        return self.leader_election.try_acquire_leadership()

    # Cluster capacity

    def evaluate_cluster_capacity(self, capacity: ClusterCapacity, settings) -> bool:
        """
        Fill the capacity snapshot from nodes and pod requests

        Args:
            capacity: Fresh snapshot to fill in place
            settings: Settings instance (cluster_scaling limits and thresholds)

        Returns:
            True when the snapshot carries a scale-out or scale-in directive
        """
        try:
            nodes = self.core_api.list_node().items
            pods = self.core_api.list_pod_for_all_namespaces().items
        except ApiException as e:
            raise OrchestratorError(f"Unable to list cluster nodes and pods: {e}") from e

        workers = {}
        for node in nodes:
            labels = node.metadata.labels or {}
            if any(label in labels for label in CONTROL_PLANE_LABELS):
                continue
            if not _is_ready(node):
                logger.debug(f"Skipping NotReady node: {node.metadata.name}")
                continue
            # Cordoned nodes hold no schedulable capacity
            if node.spec and node.spec.unschedulable:
                logger.debug(f"Skipping cordoned node: {node.metadata.name}")
                continue

            allocatable = node.status.allocatable or {}
            workers[node.metadata.name] = NodeAllocation(
                node_id=node.metadata.name,
                address=_internal_ip(node),
                cpu_allocatable=_quantity(allocatable.get("cpu")),
                memory_allocatable=_quantity(allocatable.get("memory"))
            )

        for pod in pods:
            if pod.status.phase in FINISHED_PHASES:
                continue
            if not pod.spec.node_name:
                if pod.status.phase == "Pending":
                    capacity.pending_pods += 1
                continue

            node = workers.get(pod.spec.node_name)
            if node is None:
                continue
            cpu, memory = _pod_requests(pod)
            node.cpu_allocated += cpu
            node.memory_allocated += memory

        capacity.nodes = list(workers.values())
        capacity.node_count = len(capacity.nodes)
        capacity.total_cpu = sum(node.cpu_allocatable for node in capacity.nodes)
        capacity.total_memory = sum(node.memory_allocatable for node in capacity.nodes)
        capacity.used_cpu = sum(node.cpu_allocated for node in capacity.nodes)
        capacity.used_memory = sum(node.memory_allocated for node in capacity.nodes)
        capacity.scaling_direction = self._scaling_direction(capacity, settings.cluster_scaling)

        logger.info(f"Cluster capacity: {capacity.node_count} nodes, {capacity.pending_pods} pending pods, "
                    f"CPU: {capacity.cpu_utilization:.1f}%, Memory: {capacity.memory_utilization:.1f}%, "
                    f"direction: {capacity.scaling_direction.value}")
        return capacity.scaling_direction != ScalingDirection.NONE

    def _scaling_direction(self, capacity: ClusterCapacity, limits) -> ScalingDirection:
        utilization = max(capacity.cpu_utilization, capacity.memory_utilization)

        if (capacity.node_count < limits.min_nodes or capacity.pending_pods > 0
                or utilization >= limits.scale_out_threshold):
            if capacity.node_count >= limits.max_nodes:
                logger.info(f"Cluster is at its maximum of {limits.max_nodes} nodes, not scaling out")
                return ScalingDirection.NONE
            return ScalingDirection.OUT

        if capacity.node_count > limits.min_nodes:
            # Would the remaining nodes stay under the scale-in threshold without one average node?
            remaining_cpu = capacity.total_cpu - capacity.total_cpu / capacity.node_count
            remaining_memory = capacity.total_memory - capacity.total_memory / capacity.node_count
            projected = max(
                _projected_percent(capacity.used_cpu, remaining_cpu),
                _projected_percent(capacity.used_memory, remaining_memory)
            )
            if projected < limits.scale_in_threshold:
                return ScalingDirection.IN

        return ScalingDirection.NONE

    # Node lifecycle

    def verify_node_health(self, address: str) -> bool:
        """Wait for a Ready node with the given InternalIP"""
        limits = self.settings.cluster_scaling
        deadline = time.monotonic() + limits.node_health_timeout
        logger.info(f"Waiting for node {address} to join the cluster...")

        while True:
            try:
                for node in self.core_api.list_node().items:
                    if _internal_ip(node) == address and _is_ready(node):
                        logger.info(f"Node {node.metadata.name} ({address}) is ready")
                        return True
            except ApiException as e:
                logger.debug(f"Unable to list nodes while verifying {address}: {e}")

            if time.monotonic() >= deadline:
                logger.warning(f"Timeout waiting for node {address} to become ready")
                return False
            time.sleep(limits.node_health_poll_interval)

    def least_allocated_node(self, capacity: ClusterCapacity) -> Tuple[str, str]:
        candidates = [node for node in capacity.nodes if node.schedulable and node.address]
        if not candidates:
            return "", ""

        node = min(candidates, key=lambda candidate: candidate.allocation_percent)
        logger.info(f"Least allocated node: {node.node_id} ({node.allocation_percent:.1f}% allocated)")
        return node.node_id, node.address

    def drain_node(self, node_id: str) -> None:
        """Cordon the node, evict its pods and wait for them to leave"""
        logger.info(f"Draining node: {node_id}")

        try:
            self.core_api.patch_node(name=node_id, body={"spec": {"unschedulable": True}})
        except ApiException as e:
            raise OrchestratorError(f"Unable to cordon node {node_id}: {e}") from e

        try:
            self._evict_and_wait(node_id)
        except OrchestratorError:
            self._uncordon(node_id)
            raise

    def _uncordon(self, node_id: str):
        try:
            self.core_api.patch_node(name=node_id, body={"spec": {"unschedulable": False}})
            logger.info(f"Drain of {node_id} failed, node uncordoned")
        except ApiException as e:
            logger.error(f"Drain of {node_id} failed and the node could not be uncordoned: {e}")

    def _evict_and_wait(self, node_id: str):
        limits = self.settings.cluster_scaling

        for pod in self._evictable_pods(node_id):
            eviction = client.V1Eviction(
                metadata=client.V1ObjectMeta(
                    name=pod.metadata.name,
                    namespace=pod.metadata.namespace
                )
            )
            try:
                self.core_api.create_namespaced_pod_eviction(
                    name=pod.metadata.name,
                    namespace=pod.metadata.namespace,
                    body=eviction
                )
                logger.info(f"Evicted pod {pod.metadata.namespace}/{pod.metadata.name}")
            except ApiException as e:
                if e.status == 404:
                    continue
                raise OrchestratorError(
                    f"Unable to evict pod {pod.metadata.namespace}/{pod.metadata.name}: {e}"
                ) from e

        deadline = time.monotonic() + limits.drain_timeout
        while True:
            remaining = self._evictable_pods(node_id)
            if not remaining:
                logger.info(f"Node {node_id} drained")
                return
            if time.monotonic() >= deadline:
                raise OrchestratorError(f"Timed out draining node {node_id}: {len(remaining)} pods remaining")
            time.sleep(limits.drain_poll_interval)

    def _evictable_pods(self, node_id: str) -> List:
        try:
            pods = self.core_api.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_id}").items
        except ApiException as e:
            raise OrchestratorError(f"Unable to list pods on node {node_id}: {e}") from e

        evictable = []
        for pod in pods:
            if pod.status.phase in FINISHED_PHASES:
                continue
            if MIRROR_POD_ANNOTATION in (pod.metadata.annotations or {}):
                continue
            if any(owner.kind == "DaemonSet" for owner in (pod.metadata.owner_references or [])):
                continue
            evictable.append(pod)
        return evictable

    # Jobs

    def is_job_running(self, job_name: str) -> bool:
        job_scaling = self.settings.job_scaling
        try:
            deployments = self.apps_api.list_namespaced_deployment(
                job_scaling.namespace,
                label_selector=f"{job_scaling.job_label}={job_name}"
            )
        except ApiException as e:
            raise OrchestratorError(f"Unable to look up job {job_name}: {e}") from e
        return len(deployments.items) > 0

    def evaluate_job_scaling(self, policies: List[JobScalingPolicy]) -> None:
        for job in policies:
            for group in job.group_scaling_policies:
                try:
                    self._evaluate_group(group)
                except (ApiException, OrchestratorError) as e:
                    logger.error(f"Unable to evaluate group {group.group_name} of job {job.job_name}: {e}")
                    group.scale_direction = ScalingDirection.NONE

    def _evaluate_group(self, group: GroupScalingPolicy):
        namespace = self.settings.job_scaling.namespace
        deployment = self.apps_api.read_namespaced_deployment(group.group_name, namespace)
        group.current_count = deployment.spec.replicas or 0

        match_labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{key}={value}" for key, value in sorted(match_labels.items()))

        requested_cpu = requested_memory = 0.0
        for pod in self.core_api.list_namespaced_pod(namespace, label_selector=selector).items:
            if pod.status.phase != "Running":
                continue
            cpu, memory = _pod_requests(pod)
            requested_cpu += cpu
            requested_memory += memory

        used_cpu = used_memory = 0.0
        usage = self.custom_api.list_namespaced_custom_object(
            "metrics.k8s.io", "v1beta1", namespace, "pods", label_selector=selector
        )
        for item in usage.get("items", []):
            for container in item.get("containers", []):
                used_cpu += _quantity(container.get("usage", {}).get("cpu"))
                used_memory += _quantity(container.get("usage", {}).get("memory"))

        group.cpu_utilization = used_cpu / requested_cpu * 100 if requested_cpu else 0.0
        group.memory_utilization = used_memory / requested_memory * 100 if requested_memory else 0.0

        if ((group.cpu_utilization >= group.scale_out_cpu or group.memory_utilization >= group.scale_out_mem)
                and group.current_count < group.max):
            group.scale_direction = ScalingDirection.OUT
        elif (group.cpu_utilization <= group.scale_in_cpu and group.memory_utilization <= group.scale_in_mem
                and group.current_count > group.min):
            group.scale_direction = ScalingDirection.IN
        else:
            group.scale_direction = ScalingDirection.NONE

        logger.debug(f"Group {group.group_name}: {group.current_count} replicas, "
                     f"CPU: {group.cpu_utilization:.1f}%, Memory: {group.memory_utilization:.1f}%, "
                     f"direction: {group.scale_direction.value}")

    def job_scale(self, policy: JobScalingPolicy) -> None:
        """Move every Out/In group of the job by one replica within its limits"""
        namespace = self.settings.job_scaling.namespace
        for group in policy.groups_to_scale():
            current = group.current_count
            if current is None:
                try:
                    current = self.apps_api.read_namespaced_deployment(group.group_name, namespace).spec.replicas or 0
                except ApiException as e:
                    raise OrchestratorError(f"Unable to read group {group.group_name}: {e}") from e

            step = 1 if group.scale_direction == ScalingDirection.OUT else -1
            target = min(max(current + step, group.min), group.max)
            if target == current:
                continue

            try:
                self.apps_api.patch_namespaced_deployment_scale(
                    group.group_name, namespace, {"spec": {"replicas": target}}
                )
            except ApiException as e:
                raise OrchestratorError(
                    f"Unable to scale group {group.group_name} of job {policy.job_name}: {e}"
                ) from e

            group.current_count = target
            logger.info(f"Scaled group {group.group_name} of job {policy.job_name} "
                        f"({group.scale_direction.value}) from {current} to {target} replicas")
