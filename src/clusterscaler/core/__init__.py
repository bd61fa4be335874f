"""
Core scaling modules
"""

from .state import ScalingState
from .cluster_scaling import ClusterScalingEngine, ClusterScalingOutcome, ClusterScalingStatus
from .job_scaling import JobScalingEngine
from .runner import Runner

__all__ = [
    "ScalingState",
    "ClusterScalingEngine",
    "ClusterScalingOutcome",
    "ClusterScalingStatus",
    "JobScalingEngine",
    "Runner",
]
