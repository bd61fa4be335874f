#!/usr/bin/env python3
"""
Pydantic models for cluster capacity snapshots
"""

from enum import Enum
from typing import List
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class ScalingDirection(str, Enum):
    """Direction of a scaling directive"""
    OUT = "Out"
    IN = "In"
    NONE = "None"


def _percent(used: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return used / total * 100


class NodeAllocation(BaseModel):
    """Resource allocation of a single worker node"""
    node_id: str = Field(..., description="Orchestrator node name")
    address: str = Field("", description="Internal IP address of the node")
    schedulable: bool = Field(True, description="False once the node is cordoned")

    # CPU in cores, memory in bytes
    cpu_allocatable: float = Field(0.0, ge=0)
    memory_allocatable: float = Field(0.0, ge=0)
    cpu_allocated: float = Field(0.0, ge=0)
    memory_allocated: float = Field(0.0, ge=0)

    @property
    def cpu_percent(self) -> float:
        return _percent(self.cpu_allocated, self.cpu_allocatable)

    @property
    def memory_percent(self) -> float:
        return _percent(self.memory_allocated, self.memory_allocatable)

    @property
    def allocation_percent(self) -> float:
        """The more constrained of the two resources"""
        return max(self.cpu_percent, self.memory_percent)


class ClusterCapacity(BaseModel):
    """Disposable snapshot of cluster utilisation, filled by the orchestrator"""
    node_count: int = Field(0, ge=0, description="Ready worker nodes")
    pending_pods: int = Field(0, ge=0, description="Pods waiting for a node")

    total_cpu: float = Field(0.0, ge=0, description="Allocatable CPU cores")
    total_memory: float = Field(0.0, ge=0, description="Allocatable memory bytes")
    used_cpu: float = Field(0.0, ge=0, description="Requested CPU cores")
    used_memory: float = Field(0.0, ge=0, description="Requested memory bytes")

    nodes: List[NodeAllocation] = Field(default_factory=list)
    scaling_direction: ScalingDirection = ScalingDirection.NONE

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def cpu_utilization(self) -> float:
        return _percent(self.used_cpu, self.total_cpu)

    @property
    def memory_utilization(self) -> float:
        return _percent(self.used_memory, self.total_memory)
