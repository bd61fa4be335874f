#!/usr/bin/env python3
"""
Redis connection factory and job scaling policy store
"""

import json
import logging
from typing import List

import redis
from pydantic import ValidationError

from ..models import JobScalingPolicy
from .base import Orchestrator, PolicyStore, PolicyStoreError

logger = logging.getLogger(__name__)


def connect_redis(settings) -> redis.Redis:
    """
    Create a Redis client from RedisSettings

    Args:
        settings: RedisSettings instance

    Returns:
        Connected Redis client with decoded responses
    """
    try:
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            decode_responses=True,
            socket_connect_timeout=settings.connection_timeout,
            socket_timeout=settings.connection_timeout,
            retry_on_timeout=True
        )
        client.ping()
        logger.info(f"Connected to Redis at {settings.host}:{settings.port}")
        return client
    except redis.RedisError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise


class RedisPolicyStore(PolicyStore):
    """
    Reads job scaling documents stored as JSON under a key prefix

    A document at <prefix><job> looks like:
        {"enabled": true, "group_scaling_policies": [{"group_name": "web", "min": 2, "max": 6}]}
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "clusterscaler:jobs:"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def get_job_scaling_policies(self, settings, orchestrator: Orchestrator) -> List[JobScalingPolicy]:
        """
        Fetch the policies of every running job that has one

        Args:
            settings: Settings instance
            orchestrator: Used to skip jobs that are not running

        Returns:
            List of job scaling policies
        """
        policies = []
        try:
            keys = sorted(self.redis.scan_iter(match=f"{self.key_prefix}*"))
            for key in keys:
                raw = self.redis.get(key)
                if raw is None:
                    continue

                job_name = key[len(self.key_prefix):]
                policy = self._parse(job_name, raw)
                if policy is None:
                    continue

                if not orchestrator.is_job_running(policy.job_name):
                    logger.debug(f"Job {policy.job_name} has a scaling policy but is not running")
                    continue

                policies.append(policy)
        except redis.RedisError as e:
            raise PolicyStoreError(f"Unable to read job scaling policies: {e}") from e

        logger.debug(f"Loaded {len(policies)} job scaling policies")
        return policies

    def _parse(self, job_name: str, raw: str):
        try:
            document = json.loads(raw)
            document.setdefault("job_name", job_name)
            return JobScalingPolicy.model_validate(document)
        except (json.JSONDecodeError, AttributeError, ValidationError) as e:
            logger.warning(f"Ignoring invalid scaling policy for job {job_name}: {e}")
            return None
