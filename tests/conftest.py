#!/usr/bin/env python3
"""
Shared fixtures and mocks for the clusterscaler tests
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from clusterscaler.clients.base import InstanceGroup, Orchestrator, PolicyStore, RegionResolver
from clusterscaler.config import ClusterScalingSettings, JobScalingSettings, Settings
from clusterscaler.models import ScalingDirection

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock handed to the cluster scaling engine"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def capacity_with(direction: ScalingDirection):
    """Side effect for evaluate_cluster_capacity that sets the given direction"""
    def _evaluate(capacity, settings):
        capacity.scaling_direction = direction
        return direction != ScalingDirection.NONE
    return _evaluate


def make_settings(region="us-east-1", job_scaling_enabled=True, **cluster_scaling) -> Settings:
    cluster_scaling.setdefault("retry_threshold", 2)
    cluster_scaling.setdefault("cool_down", 600)
    return Settings(
        region=region,
        cluster_scaling=ClusterScalingSettings(**cluster_scaling),
        job_scaling=JobScalingSettings(enabled=job_scaling_enabled)
    )


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def orchestrator():
    mock_orchestrator = Mock(spec=Orchestrator)
    mock_orchestrator.leader_check.return_value = True
    mock_orchestrator.evaluate_cluster_capacity.side_effect = capacity_with(ScalingDirection.NONE)
    mock_orchestrator.verify_node_health.return_value = True
    mock_orchestrator.least_allocated_node.return_value = ("k3s-worker-2", "172.20.0.12")
    mock_orchestrator.is_job_running.return_value = True
    return mock_orchestrator


@pytest.fixture
def instance_group():
    mock_group = Mock(spec=InstanceGroup)
    mock_group.get_most_recent_instance.return_value = "172.20.0.15"
    mock_group.translate_address_to_id.return_value = "c-15"
    return mock_group


@pytest.fixture
def policy_store():
    return Mock(spec=PolicyStore)


@pytest.fixture
def region_resolver():
    mock_resolver = Mock(spec=RegionResolver)
    mock_resolver.describe_region.return_value = "eu-west-1"
    return mock_resolver


class FakeRedis:
    """In-memory Redis covering the string commands used by the leader lock"""

    def __init__(self):
        self._values = {}
        self._expiry = {}
        self._lock = threading.Lock()

    def _live(self, key) -> bool:
        deadline = self._expiry.get(key)
        if deadline is not None and time.monotonic() >= deadline:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
        return key in self._values

    def set(self, key, value, nx=False, ex=None):
        with self._lock:
            if nx and self._live(key):
                return None
            self._values[key] = value
            if ex is not None:
                self._expiry[key] = time.monotonic() + ex
            else:
                self._expiry.pop(key, None)
            return True

    def get(self, key):
        with self._lock:
            return self._values[key] if self._live(key) else None

    def expire(self, key, seconds):
        with self._lock:
            if not self._live(key):
                return False
            self._expiry[key] = time.monotonic() + seconds
            return True

    def delete(self, key):
        with self._lock:
            self._expiry.pop(key, None)
            return 1 if self._values.pop(key, None) is not None else 0

    def lapse(self, key):
        """Let the key's ttl run out immediately"""
        with self._lock:
            self._expiry[key] = time.monotonic()
