#!/usr/bin/env python3
"""
Docker backed instance group: k3s agent containers form the worker pool
"""

import logging
from functools import wraps
from typing import List, Optional

import docker
import redis

from .base import InstanceGroup, InstanceGroupError

logger = logging.getLogger(__name__)

GROUP_LABEL = "clusterscaler.group"
WORKER_COUNTER_KEY = "clusterscaler:workers:next_number"


def _instance_group_errors(func):
    """Re-raise Docker and Redis failures as InstanceGroupError"""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (docker.errors.DockerException, redis.RedisError) as e:
            raise InstanceGroupError(f"{func.__name__} failed: {e}") from e
    return wrapper


class DockerInstanceGroup(InstanceGroup):
    """
    Worker pool made of Docker containers

    Desired capacity and membership of each group are kept in Redis. Like a
    cloud autoscaling group, terminating a member launches a replacement
    until the group is back at its desired capacity.
    """

    def __init__(self, docker_client: docker.DockerClient, redis_client: redis.Redis,
                 docker_settings, server_host: Optional[str] = None):
        """
        Initialize the instance group client

        Args:
            docker_client: Docker client
            redis_client: Redis client (decode_responses=True)
            docker_settings: DockerSettings instance
            server_host: Host of the k3s server the agents join
        """
        self.docker = docker_client
        self.redis = redis_client
        self.settings = docker_settings
        self.server_host = server_host or "k3s-master"

    @staticmethod
    def _desired_key(group_id: str) -> str:
        return f"clusterscaler:groups:{group_id}:desired"

    @staticmethod
    def _members_key(group_id: str) -> str:
        return f"clusterscaler:groups:{group_id}:members"

    @_instance_group_errors
    def scale_out_cluster(self, group_id: str) -> None:
        desired = self.redis.incr(self._desired_key(group_id))
        try:
            self._launch_instance(group_id)
        except docker.errors.DockerException:
            self.redis.decr(self._desired_key(group_id))
            raise
        logger.info(f"Desired capacity of instance group {group_id} raised to {desired}")

    @_instance_group_errors
    def scale_in_cluster(self, group_id: str, address: str) -> None:
        instance_id = self.translate_address_to_id(address)
        self.docker.containers.get(instance_id).remove(force=True)
        self.redis.srem(self._members_key(group_id), instance_id)
        self._decrement_desired(group_id)
        logger.info(f"Removed instance {address} from {group_id}")

    @_instance_group_errors
    def get_most_recent_instance(self, group_id: str, region: Optional[str] = None) -> str:
        members = self._members(group_id)
        if not members:
            raise InstanceGroupError(f"Instance group {group_id} has no instances")

        # Docker reports creation time as an ISO 8601 string
        newest = max(members, key=lambda container: container.attrs.get("Created", ""))
        address = self._address(newest)
        if not address:
            raise InstanceGroupError(f"Instance {newest.name} has no address on network {self.settings.network}")
        return address

    @_instance_group_errors
    def translate_address_to_id(self, address: str, region: Optional[str] = None) -> str:
        for container in self.docker.containers.list(filters={"label": GROUP_LABEL}):
            if self._address(container) == address:
                return container.id
        raise InstanceGroupError(f"No instance found with address {address}")

    @_instance_group_errors
    def terminate_instance(self, instance_id: str, region: Optional[str] = None) -> None:
        container = self.docker.containers.get(instance_id)
        group_id = container.labels.get(GROUP_LABEL)
        container.remove(force=True)
        logger.info(f"Terminated instance {instance_id}")

        if group_id:
            self.redis.srem(self._members_key(group_id), instance_id)
            self._replace_instances(group_id)

    @_instance_group_errors
    def detach_instance(self, group_id: str, instance_id: str) -> None:
        if not self.redis.srem(self._members_key(group_id), instance_id):
            raise InstanceGroupError(f"Instance {instance_id} is not a member of {group_id}")
        self._decrement_desired(group_id)

        container = self.docker.containers.get(instance_id)
        container.rename(f"{container.name}-detached")
        logger.info(f"Detached instance {instance_id} from {group_id}, container left running")

    def _members(self, group_id: str) -> List:
        containers = []
        for instance_id in self.redis.smembers(self._members_key(group_id)):
            try:
                containers.append(self.docker.containers.get(instance_id))
            except docker.errors.NotFound:
                logger.warning(f"Instance {instance_id} of {group_id} no longer exists, dropping it")
                self.redis.srem(self._members_key(group_id), instance_id)
        return containers

    def _address(self, container) -> str:
        networks = container.attrs.get("NetworkSettings", {}).get("Networks", {})
        return networks.get(self.settings.network, {}).get("IPAddress", "")

    def _decrement_desired(self, group_id: str):
        if self.redis.decr(self._desired_key(group_id)) < 0:
            self.redis.set(self._desired_key(group_id), 0)

    def _replace_instances(self, group_id: str):
        desired = int(self.redis.get(self._desired_key(group_id)) or 0)
        missing = desired - len(self._members(group_id))
        for _ in range(missing):
            self._launch_instance(group_id)

    def _launch_instance(self, group_id: str):
        """Start a k3s agent container and add it to the group"""
        worker_number = self.redis.incr(WORKER_COUNTER_KEY)
        node_name = f"{self.settings.worker_prefix}-{worker_number}"

        logger.info(f"Creating worker node {node_name} in {group_id}")
        container = self.docker.containers.run(
            image=self.settings.image,
            name=node_name,
            hostname=node_name,
            detach=True,
            privileged=True,
            command='agent',
            environment={
                'K3S_URL': f"https://{self.server_host}:6443",
                'K3S_TOKEN': self.settings.k3s_token,
                'K3S_NODE_NAME': node_name,
                'K3S_WITH_NODE_ID': 'true'
            },
            network=self.settings.network,
            labels={GROUP_LABEL: group_id},
            restart_policy={'Name': 'always'},
            nano_cpus=int(float(self.settings.cpu_limit) * 1_000_000_000),
            mem_limit=self.settings.memory_limit
        )
        self.redis.sadd(self._members_key(group_id), container.id)
        return container
