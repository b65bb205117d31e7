"""Agent configuration using pydantic-settings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class DeploymentSettings(BaseSettings):
    """Rollout working directories, container defaults and process timeouts."""

    base_dir: str = Field(default="/opt/deploy-agent/deployments", alias="DEPLOY_BASE_DIR")
    container_port: int = Field(default=8080, alias="DEPLOY_CONTAINER_PORT")
    health_path: str = Field(default="/health", alias="DEPLOY_HEALTH_PATH")
    proxy_network: str = Field(default="traefik-network", alias="DEPLOY_PROXY_NETWORK")
    proxy_container: str = Field(default="traefik-proxy", alias="DEPLOY_PROXY_CONTAINER")
    public_host: str = Field(default="127.0.0.1", alias="DEPLOY_PUBLIC_HOST")
    command_timeout: float = Field(default=120.0, alias="DEPLOY_COMMAND_TIMEOUT")
    build_timeout: float = Field(default=1800.0, alias="DEPLOY_BUILD_TIMEOUT")
    stop_timeout: int = Field(default=30, alias="DEPLOY_STOP_TIMEOUT")
    source_fetch_retries: int = Field(default=3, alias="DEPLOY_SOURCE_FETCH_RETRIES")
    source_fetch_delay: float = Field(default=2.0, alias="DEPLOY_SOURCE_FETCH_DELAY")

    model_config = {"env_prefix": "DEPLOY_", "extra": "ignore", "populate_by_name": True}


class PortSettings(BaseSettings):
    """Host port allocation range and persistence."""

    range_start: int = Field(default=3000, alias="PORT_RANGE_START")
    range_end: int = Field(default=3999, alias="PORT_RANGE_END")
    reserved: list[int] = Field(default_factory=lambda: [3000], alias="PORT_RESERVED")
    store_path: str = Field(default="/opt/deploy-agent/config/ports.json", alias="PORT_STORE_PATH")

    @field_validator("range_start")
    @classmethod
    def _outside_well_known(cls, value: int) -> int:
        if value < 1024:
            raise ValueError("range_start must be outside the well-known port range")
        return value

    @field_validator("range_end")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if value > 65535:
            raise ValueError("range_end must be a valid TCP port")
        return value

    model_config = {"env_prefix": "PORT_", "extra": "ignore", "populate_by_name": True}


class HealthCheckSettings(BaseSettings):
    """Retry budget for container and routed health verification."""

    retries: int = Field(default=5, alias="HEALTH_CHECK_RETRIES")
    interval: float = Field(default=10.0, alias="HEALTH_CHECK_INTERVAL")
    backoff_factor: float = Field(default=1.5, alias="HEALTH_CHECK_BACKOFF_FACTOR")
    max_backoff: float = Field(default=30.0, alias="HEALTH_CHECK_MAX_BACKOFF")
    probe_timeout: float = Field(default=5.0, alias="HEALTH_CHECK_PROBE_TIMEOUT")
    verify_external: bool = Field(default=True, alias="HEALTH_CHECK_VERIFY_EXTERNAL")
    log_tail_lines: int = Field(default=50, alias="HEALTH_CHECK_LOG_TAIL_LINES")

    model_config = {"env_prefix": "HEALTH_CHECK_", "extra": "ignore", "populate_by_name": True}


class TrafficSwitchSettings(BaseSettings):
    """Route registration and propagation timing."""

    settle_delay: float = Field(default=5.0, alias="TRAFFIC_SETTLE_DELAY")
    verify_retries: int = Field(default=3, alias="TRAFFIC_VERIFY_RETRIES")
    verify_interval: float = Field(default=2.0, alias="TRAFFIC_VERIFY_INTERVAL")
    registration_retries: int = Field(default=2, alias="TRAFFIC_REGISTRATION_RETRIES")
    pre_switch_probe: bool = Field(default=True, alias="TRAFFIC_PRE_SWITCH_PROBE")

    model_config = {"env_prefix": "TRAFFIC_", "extra": "ignore", "populate_by_name": True}


class RoutingSettings(BaseSettings):
    """Routing front-end (front door) API configuration."""

    api_url: str = Field(default="", alias="FRONTDOOR_API_URL")
    api_token: str = Field(default="", alias="FRONTDOOR_API_TOKEN")
    base_domain: str = Field(default="apps.localhost", alias="FRONTDOOR_SUBDOMAIN_BASE")
    request_timeout: float = Field(default=10.0, alias="FRONTDOOR_REQUEST_TIMEOUT")

    @property
    def enabled(self) -> bool:
        return bool(self.api_url)

    model_config = {"env_prefix": "FRONTDOOR_", "extra": "ignore", "populate_by_name": True}


class BackendSettings(BaseSettings):
    """Control-plane backend used for secrets and job notifications."""

    url: str = Field(default="http://localhost:8080", alias="BACKEND_URL")
    agent_token: str = Field(default="", alias="AGENT_API_TOKEN")
    control_channel_port: int = Field(default=8081, alias="BACKEND_CONTROL_CHANNEL_PORT")
    request_timeout: float = Field(default=30.0, alias="BACKEND_REQUEST_TIMEOUT")

    model_config = {"env_prefix": "BACKEND_", "extra": "ignore", "populate_by_name": True}


class ObservabilitySettings(BaseSettings):
    """Observability configuration."""

    service_name: str = Field(default="deploy-agent", alias="SERVICE_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    json_logs: bool = Field(default=True, alias="JSON_LOGS")
    metrics_enabled: bool = Field(default=True, alias="METRICS_ENABLED")

    model_config = {"env_prefix": "OBS_", "extra": "ignore", "populate_by_name": True}


class Settings(BaseSettings):
    """Main agent settings."""

    environment: Environment = Field(default=Environment.DEVELOPMENT, alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    api_prefix: str = Field(default="/api/v1", alias="API_PREFIX")
    host: str = Field(default="0.0.0.0", alias="HOST")  # noqa: S104
    health_port: int = Field(default=9000, alias="HEALTH_PORT")

    deployment: DeploymentSettings = Field(default_factory=DeploymentSettings)
    ports: PortSettings = Field(default_factory=PortSettings)
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    traffic: TrafficSwitchSettings = Field(default_factory=TrafficSwitchSettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @property
    def reserved_ports(self) -> set[int]:
        """Ports never handed out: ingress, control channel, agent health server."""
        return {
            80,
            443,
            self.backend.control_channel_port,
            self.health_port,
            *self.ports.reserved,
        }

    model_config = {"env_prefix": "", "extra": "ignore", "populate_by_name": True}


@lru_cache
def get_settings() -> Settings:
    """Get cached agent settings."""
    return Settings()
