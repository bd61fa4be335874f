#!/usr/bin/env python3
"""
Collaborator contracts consumed by the scaling engines
"""

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from ..models import ClusterCapacity, JobScalingPolicy


class ClusterScalerError(Exception):
    """Base class for collaborator failures"""


class OrchestratorError(ClusterScalerError):
    """Orchestrator API call failed"""


class InstanceGroupError(ClusterScalerError):
    """Instance group API call failed"""


class PolicyStoreError(ClusterScalerError):
    """Job scaling policies could not be read"""


class RegionDiscoveryError(ClusterScalerError):
    """Region could not be determined from the metadata service"""


class Orchestrator(ABC):
    """Cluster orchestrator: leadership, capacity, node and job operations"""

    @abstractmethod
    def leader_check(self) -> bool:
        """Whether this process currently holds cluster leadership"""

    @abstractmethod
    def evaluate_cluster_capacity(self, capacity: ClusterCapacity, settings) -> bool:
        """Fill the capacity snapshot and return whether scaling is required"""

    @abstractmethod
    def verify_node_health(self, address: str) -> bool:
        """Whether the node at address has joined the cluster and is healthy"""

    @abstractmethod
    def least_allocated_node(self, capacity: ClusterCapacity) -> Tuple[str, str]:
        """(node_id, address) of the scale-in candidate; empty strings when none"""

    @abstractmethod
    def drain_node(self, node_id: str) -> None:
        """Evacuate workloads from a node"""

    @abstractmethod
    def is_job_running(self, job_name: str) -> bool:
        """Whether the job is currently deployed"""

    @abstractmethod
    def evaluate_job_scaling(self, policies: List[JobScalingPolicy]) -> None:
        """Annotate every group policy with its scale direction"""

    @abstractmethod
    def job_scale(self, policy: JobScalingPolicy) -> None:
        """Submit a whole job for scaling"""


class PolicyStore(ABC):
    """Store holding job scaling policies"""

    @abstractmethod
    def get_job_scaling_policies(self, settings, orchestrator: Orchestrator) -> List[JobScalingPolicy]:
        """Policies of the running jobs that carry one"""


class InstanceGroup(ABC):
    """Managed group of worker instances"""

    @abstractmethod
    def scale_out_cluster(self, group_id: str) -> None:
        """Increment the desired capacity of the group"""

    @abstractmethod
    def scale_in_cluster(self, group_id: str, address: str) -> None:
        """Terminate the instance at address and decrement desired capacity"""

    @abstractmethod
    def get_most_recent_instance(self, group_id: str, region: Optional[str] = None) -> str:
        """Address of the most recently launched instance in the group"""

    @abstractmethod
    def translate_address_to_id(self, address: str, region: Optional[str] = None) -> str:
        """Instance identifier for an address"""

    @abstractmethod
    def terminate_instance(self, instance_id: str, region: Optional[str] = None) -> None:
        """Terminate an instance, leaving the group to replace it"""

    @abstractmethod
    def detach_instance(self, group_id: str, instance_id: str) -> None:
        """Remove an instance from the group without terminating it"""


class RegionResolver(ABC):
    """Best effort region discovery"""

    @abstractmethod
    def describe_region(self) -> str:
        """Region this process runs in"""
