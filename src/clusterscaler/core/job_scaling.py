#!/usr/bin/env python3
"""
Job scaling engine: evaluates per-job policies and submits jobs for scaling
"""

import logging
from typing import List

from ..clients.base import Orchestrator, PolicyStore

logger = logging.getLogger(__name__)


class JobScalingEngine:
    """Scales individual jobs according to their stored policies"""

    def __init__(self, settings, orchestrator: Orchestrator, policy_store: PolicyStore):
        self.settings = settings
        self.orchestrator = orchestrator
        self.policy_store = policy_store

    def run(self) -> List[str]:
        """
        Run one job scaling pass

        Returns:
            Names of the jobs submitted for scaling
        """
        if not self.orchestrator.leader_check():
            logger.debug("Not running on the known leader, no job scaling actions will be taken")
            return []

        try:
            policies = self.policy_store.get_job_scaling_policies(self.settings, self.orchestrator)
        except Exception as e:
            logger.error(f"Failed to determine if any jobs have scaling policies enabled: {e}")
            return []

        try:
            self.orchestrator.evaluate_job_scaling(policies)
        except Exception as e:
            logger.error(f"Failed to evaluate job scaling requirements: {e}")
            return []

        submitted = []
        for job in policies:
            eligible = 0
            for group in job.groups_to_scale():
                direction = group.scale_direction.value
                if job.enabled and self.settings.job_scaling.enabled:
                    logger.debug(f"Scaling for job \"{job.job_name}\" is enabled; a scaling operation "
                                 f"({direction}) will be requested for group \"{group.group_name}\"")
                    eligible += 1
                else:
                    logger.debug(f"Job scaling has been disabled; a scaling operation ({direction}) "
                                 f"would have been requested for \"{job.job_name}\" and group "
                                 f"\"{group.group_name}\"")

            # Jobs are submitted whole; the orchestrator scales the groups independently
            if eligible > 0:
                try:
                    self.orchestrator.job_scale(job)
                    submitted.append(job.job_name)
                except Exception as e:
                    logger.error(f"Failed to submit job {job.job_name} for scaling: {e}")

        return submitted
