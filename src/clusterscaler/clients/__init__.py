"""
Collaborator contracts and their Kubernetes, Docker and Redis implementations
"""

from .base import (
    ClusterScalerError,
    OrchestratorError,
    InstanceGroupError,
    PolicyStoreError,
    RegionDiscoveryError,
    Orchestrator,
    PolicyStore,
    InstanceGroup,
    RegionResolver,
)

__all__ = [
    "ClusterScalerError",
    "OrchestratorError",
    "InstanceGroupError",
    "PolicyStoreError",
    "RegionDiscoveryError",
    "Orchestrator",
    "PolicyStore",
    "InstanceGroup",
    "RegionResolver",
]
