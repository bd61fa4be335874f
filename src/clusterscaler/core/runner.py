#!/usr/bin/env python3
"""
Runner: fixed interval control loop driving the cluster and job scaling passes
"""

import concurrent.futures
import logging
import threading
import time
from typing import Any, Dict, List, Optional

from .cluster_scaling import ClusterScalingEngine, ClusterScalingOutcome
from .job_scaling import JobScalingEngine
from .logging_config import log_section
from .state import ScalingState

logger = logging.getLogger(__name__)


class Runner:
    """
    Periodic scheduler for the scaling engines

    Each tick runs the cluster pass on a worker thread and waits for its
    future, then runs the job pass on the loop thread. A tick that overruns
    its interval leaves at most one pending tick; further missed ticks are
    dropped.
    """

    def __init__(self, settings, cluster_engine: ClusterScalingEngine, job_engine: JobScalingEngine):
        """
        Initialize the runner

        Args:
            settings: Settings instance
            cluster_engine: Cluster scaling engine
            job_engine: Job scaling engine
        """
        self.settings = settings
        self.cluster_engine = cluster_engine
        self.job_engine = job_engine

        self.state = ScalingState()
        self._state_lock = threading.Lock()
        # Copy of the state taken at the end of each pass, read by the status API
        self._state_snapshot = self.state.to_dict()
        self._shutdown = threading.Event()

        self.ticks = 0
        self.last_cluster_outcome: Optional[ClusterScalingOutcome] = None
        self.last_job_submissions: List[str] = []

    def start(self):
        """Run the control loop until stop() is called"""
        interval = self.settings.scaling_interval
        logger.info(f"Starting scaling loop with {interval}s interval")

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix="cluster-scaling"
        )
        next_tick = time.monotonic() + interval
        try:
            while not self._shutdown.wait(timeout=max(0.0, next_tick - time.monotonic())):
                self._tick(executor)

                next_tick += interval
                now = time.monotonic()
                if next_tick < now:
                    logger.warning("Scaling pass overran the scaling interval")
                    next_tick = now
        finally:
            executor.shutdown(wait=True)

        logger.info("Scaling loop stopped")

    def stop(self):
        """Signal the control loop to exit after the current tick"""
        logger.info("Stopping scaling loop...")
        self._shutdown.set()

    def _tick(self, executor: concurrent.futures.Executor):
        self.ticks += 1
        log_section(logger, f"SCALING TICK #{self.ticks}")

        cluster_done = executor.submit(self._cluster_scaling)
        self.last_cluster_outcome = cluster_done.result()
        logger.info(f"Cluster scaling pass finished: "
                    f"{self.last_cluster_outcome.value if self.last_cluster_outcome else 'error'}")

        try:
            self.last_job_submissions = self.job_engine.run()
        except Exception as e:
            logger.error(f"Unexpected error in job scaling pass: {e}", exc_info=True)
            self.last_job_submissions = []

    def _cluster_scaling(self) -> Optional[ClusterScalingOutcome]:
        with self._state_lock:
            try:
                return self.cluster_engine.run(self.state)
            except Exception as e:
                logger.error(f"Unexpected error in cluster scaling pass: {e}", exc_info=True)
                return None
            finally:
                self._state_snapshot = self.state.to_dict()

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of the loop for the status API"""
        return {
            "running": not self._shutdown.is_set(),
            "ticks": self.ticks,
            "region": self.cluster_engine.region,
            "cluster_scaling_status": self.cluster_engine.status.value,
            "last_cluster_outcome": self.last_cluster_outcome.value if self.last_cluster_outcome else None,
            "last_job_submissions": list(self.last_job_submissions),
            "scaling_state": dict(self._state_snapshot),
        }
