"""
Configuration module for clusterscaler settings
"""

from .settings import (
    Settings,
    ClusterScalingSettings,
    JobScalingSettings,
    LeadershipSettings,
    RedisSettings,
    KubernetesSettings,
    DockerSettings,
    MetadataSettings,
    LoggingSettings,
    MetricsSettings,
    APISettings,
)

__all__ = [
    "Settings",
    "ClusterScalingSettings",
    "JobScalingSettings",
    "LeadershipSettings",
    "RedisSettings",
    "KubernetesSettings",
    "DockerSettings",
    "MetadataSettings",
    "LoggingSettings",
    "MetricsSettings",
    "APISettings",
]
