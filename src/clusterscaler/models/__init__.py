"""
Models package for clusterscaler data structures
"""

from .capacity import (
    ScalingDirection,
    NodeAllocation,
    ClusterCapacity,
)
from .policies import (
    GroupScalingPolicy,
    JobScalingPolicy,
)

__all__ = [
    "ScalingDirection",
    "NodeAllocation",
    "ClusterCapacity",
    "GroupScalingPolicy",
    "JobScalingPolicy",
]
