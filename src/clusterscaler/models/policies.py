#!/usr/bin/env python3
"""
Pydantic models for job scaling policies
"""

from typing import List, Optional

from pydantic import BaseModel, Field

from .capacity import ScalingDirection


class GroupScalingPolicy(BaseModel):
    """Scaling policy of one group (deployment) within a job"""
    group_name: str = Field(..., description="Name of the group")
    min: int = Field(1, ge=0, description="Minimum replica count")
    max: int = Field(10, ge=0, description="Maximum replica count")

    scale_out_cpu: float = Field(80.0, ge=0, le=100)
    scale_out_mem: float = Field(80.0, ge=0, le=100)
    scale_in_cpu: float = Field(30.0, ge=0, le=100)
    scale_in_mem: float = Field(30.0, ge=0, le=100)

    # Filled in by the orchestrator evaluation
    scale_direction: ScalingDirection = ScalingDirection.NONE
    current_count: Optional[int] = Field(None, ge=0)
    cpu_utilization: Optional[float] = None
    memory_utilization: Optional[float] = None


class JobScalingPolicy(BaseModel):
    """Scaling document for a whole job"""
    job_name: str = Field(..., description="Name of the job")
    enabled: bool = Field(True, description="Job level scaling switch")
    group_scaling_policies: List[GroupScalingPolicy] = Field(default_factory=list)

    def groups_to_scale(self) -> List[GroupScalingPolicy]:
        return [
            group for group in self.group_scaling_policies
            if group.scale_direction in (ScalingDirection.OUT, ScalingDirection.IN)
        ]
