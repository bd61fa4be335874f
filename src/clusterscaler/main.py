#!/usr/bin/env python3
"""
clusterscaler - Main Entry Point
Scales the k3s worker pool and individual jobs from a leader-gated control loop
"""

import argparse
import os
import signal
import sys
import threading
from typing import Optional

import docker
from prometheus_client import start_http_server

from .api.server import APIServer
from .clients.docker_pool import DockerInstanceGroup
from .clients.k8s import KubernetesOrchestrator, load_kubernetes_config
from .clients.leadership import LeaderElection
from .clients.redis_store import RedisPolicyStore, connect_redis
from .clients.region import MetadataRegionResolver
from .config import Settings
from .core.cluster_scaling import ClusterScalingEngine
from .core.job_scaling import JobScalingEngine
from .core.logging_config import get_logger, setup_logging
from .core.runner import Runner


class ClusterScalerService:
    """Wires settings, clients, engines and the runner together"""

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        """
        Initialize the service

        Args:
            config_path: Optional YAML configuration file
            dry_run: Observe scaling directives without acting on them
        """
        if config_path and os.path.exists(config_path):
            self.settings = Settings.load_from_yaml_with_env_override(config_path)
        else:
            self.settings = Settings()

        if dry_run:
            self.settings = self.settings.model_copy(update={
                "cluster_scaling": self.settings.cluster_scaling.model_copy(update={"enabled": False}),
                "job_scaling": self.settings.job_scaling.model_copy(update={"enabled": False}),
            })

        setup_logging(
            level=self.settings.logging.level,
            log_file=self.settings.logging.file,
            enable_colors=self.settings.logging.colors
        )
        self.logger = get_logger(__name__)
        if dry_run:
            self.logger.info("Dry-run mode enabled, scaling actions will be logged only")

        self.redis = connect_redis(self.settings.redis)
        load_kubernetes_config(self.settings.kubernetes)

        self.leader_election = None
        if self.settings.leadership.enabled:
            self.leader_election = LeaderElection(
                self.redis,
                lock_name=self.settings.leadership.lock_name,
                ttl_seconds=self.settings.leadership.ttl_seconds,
                instance_id=self.settings.leadership.instance_id
            )
            self.leader_election.start_heartbeat()

        orchestrator = KubernetesOrchestrator(self.settings, leader_election=self.leader_election)
        instance_group = DockerInstanceGroup(
            docker.from_env(),
            self.redis,
            self.settings.docker,
            server_host=self.settings.kubernetes.server_host
        )
        region_resolver = MetadataRegionResolver(
            url=self.settings.metadata.url,
            timeout=self.settings.metadata.timeout
        )

        self.runner = Runner(
            self.settings,
            ClusterScalingEngine(self.settings, orchestrator, instance_group, region_resolver),
            JobScalingEngine(self.settings, orchestrator, RedisPolicyStore(self.redis, self.settings.job_scaling.policy_prefix))
        )
        self.api_server = APIServer(self.runner, self.settings)

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        self.logger.info("clusterscaler service initialized")

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.runner.stop()

    def run(self):
        """Start the exporters and block in the scaling loop"""
        if self.settings.metrics.enabled:
            start_http_server(self.settings.metrics.port)
            self.logger.info(f"Prometheus metrics server started on :{self.settings.metrics.port}")

        if self.settings.api.enabled:
            api_thread = threading.Thread(
                target=self.api_server.run,
                kwargs={'host': self.settings.api.host, 'port': self.settings.api.port},
                daemon=True
            )
            api_thread.start()
            self.logger.info(f"API server started on :{self.settings.api.port}")

        self.runner.start()

    def cleanup(self):
        """Release leadership and close connections"""
        if self.leader_election is not None:
            self.leader_election.stop_heartbeat()
            self.leader_election.release_leadership()
        self.redis.close()
        self.logger.info("Cleanup completed")


def main():
    """Entry point"""
    parser = argparse.ArgumentParser(description='k3s worker pool and job autoscaler')
    parser.add_argument(
        '--config',
        default=os.getenv('CONFIG_PATH', '/app/config/clusterscaler.yaml'),
        help='Path to configuration file'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Evaluate scaling directives without acting on them'
    )
    args = parser.parse_args()

    service = ClusterScalerService(args.config, dry_run=args.dry_run)
    try:
        service.run()
    except Exception as e:
        service.logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        service.cleanup()


if __name__ == "__main__":
    main()
