#!/usr/bin/env python3
"""
Configuration settings using Pydantic for environment variable loading
"""

import os
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file if it exists
load_dotenv()


class ClusterScalingSettings(BaseSettings):
    """Worker pool scaling settings"""
    enabled: bool = True
    cool_down: int = 600
    retry_threshold: int = Field(3, ge=0)
    autoscaling_group: str = "clusterscaler-workers"

    # Limit settings
    min_nodes: int = 1
    max_nodes: int = 10

    # Utilisation thresholds (percent of allocatable)
    scale_out_threshold: float = 80.0
    scale_in_threshold: float = 60.0

    # New node verification and drain behaviour
    node_health_timeout: int = 240
    node_health_poll_interval: int = 10
    drain_timeout: int = 300
    drain_poll_interval: int = 5

    model_config = SettingsConfigDict(env_prefix="CLUSTER_SCALING_", extra="ignore")


class JobScalingSettings(BaseSettings):
    """Per-workload scaling settings"""
    enabled: bool = True
    namespace: str = "default"
    policy_prefix: str = "clusterscaler:jobs:"
    job_label: str = "clusterscaler.io/job"

    model_config = SettingsConfigDict(env_prefix="JOB_SCALING_", extra="ignore")


class LeadershipSettings(BaseSettings):
    """Leader election settings"""
    enabled: bool = True
    lock_name: str = "clusterscaler:leader"
    ttl_seconds: int = 30
    instance_id: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="LEADERSHIP_", extra="ignore")


class RedisSettings(BaseSettings):
    """Redis configuration settings"""
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    connection_timeout: int = 5

    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore")


class KubernetesSettings(BaseSettings):
    """Kubernetes configuration settings"""
    in_cluster: bool = False
    kubeconfig_path: str = "/app/kubeconfig/kubeconfig"
    server_host: Optional[str] = None

    model_config = SettingsConfigDict(env_prefix="KUBERNETES_", extra="ignore")


class DockerSettings(BaseSettings):
    """Docker worker pool settings"""
    network: str = "clusterscaler_k3s-network"
    image: str = "rancher/k3s:v1.29.1-k3s1"
    worker_prefix: str = "k3s-worker"
    cpu_limit: str = "1"
    memory_limit: str = "2g"
    k3s_token: str = "mysupersecrettoken12345"

    model_config = SettingsConfigDict(env_prefix="DOCKER_", extra="ignore")


class MetadataSettings(BaseSettings):
    """Instance metadata service settings (region discovery)"""
    url: str = "http://169.254.169.254"
    timeout: int = 2

    model_config = SettingsConfigDict(env_prefix="METADATA_", extra="ignore")


class LoggingSettings(BaseSettings):
    """Logging configuration settings"""
    level: str = "INFO"
    file: Optional[str] = None
    colors: bool = True

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")


class MetricsSettings(BaseSettings):
    """Prometheus exporter settings"""
    enabled: bool = True
    port: int = 9091

    model_config = SettingsConfigDict(env_prefix="METRICS_", extra="ignore")


class APISettings(BaseSettings):
    """Status API settings"""
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    model_config = SettingsConfigDict(env_prefix="API_", extra="ignore")


class Settings(BaseSettings):
    """Main settings class that includes all sub-settings"""
    # Environment
    environment: str = os.getenv("ENVIRONMENT", "development")
    debug: bool = os.getenv("DEBUG", "false").lower() == "true"

    # Control loop
    scaling_interval: float = float(os.getenv("SCALING_INTERVAL", "10"))
    region: Optional[str] = os.getenv("REGION")

    # Component settings
    cluster_scaling: ClusterScalingSettings = Field(default_factory=ClusterScalingSettings)
    job_scaling: JobScalingSettings = Field(default_factory=JobScalingSettings)
    leadership: LeadershipSettings = Field(default_factory=LeadershipSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kubernetes: KubernetesSettings = Field(default_factory=KubernetesSettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    metadata: MetadataSettings = Field(default_factory=MetadataSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    api: APISettings = Field(default_factory=APISettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def get_config_dict(self) -> Dict[str, Any]:
        """Flatten the settings for status reporting (secrets excluded)"""
        return {
            "environment": self.environment,
            "scaling_interval": self.scaling_interval,
            "region": self.region,
            "cluster_scaling": self.cluster_scaling.model_dump(),
            "job_scaling": self.job_scaling.model_dump(),
            "leadership": {
                "enabled": self.leadership.enabled,
                "lock_name": self.leadership.lock_name,
                "ttl_seconds": self.leadership.ttl_seconds
            },
            "docker": self.docker.model_dump(exclude={"k3s_token"}),
            "redis": {
                "host": self.redis.host,
                "port": self.redis.port,
                "db": self.redis.db
            }
        }

    @classmethod
    def load_from_yaml_with_env_override(cls, yaml_path: str) -> "Settings":
        """Load settings from YAML file and override with environment variables"""
        import yaml

        yaml_config = {}
        if os.path.exists(yaml_path):
            with open(yaml_path, 'r') as f:
                # Process environment variables in YAML
                yaml_content = f.read()
                for key, value in os.environ.items():
                    yaml_content = yaml_content.replace(f"${{{key}}}", value)
                yaml_config = yaml.safe_load(yaml_content) or {}

        top_level = {
            key: yaml_config[key]
            for key in ("environment", "debug", "scaling_interval", "region")
            if key in yaml_config
        }

        return cls(
            **top_level,
            cluster_scaling=ClusterScalingSettings(**yaml_config.get("cluster_scaling", {})),
            job_scaling=JobScalingSettings(**yaml_config.get("job_scaling", {})),
            leadership=LeadershipSettings(**yaml_config.get("leadership", {})),
            redis=RedisSettings(**yaml_config.get("redis", {})),
            kubernetes=KubernetesSettings(**yaml_config.get("kubernetes", {})),
            docker=DockerSettings(**yaml_config.get("docker", {})),
            metadata=MetadataSettings(**yaml_config.get("metadata", {})),
            logging=LoggingSettings(**yaml_config.get("logging", {})),
            metrics=MetricsSettings(**yaml_config.get("metrics", {})),
            api=APISettings(**yaml_config.get("api", {}))
        )
