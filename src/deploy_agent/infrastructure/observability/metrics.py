"""Prometheus metrics configuration."""

from __future__ import annotations

from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    Info,
)


# Agent info
APP_INFO = Info("deploy_agent", "Zero-downtime deployment agent info")
APP_INFO.info({
    "version": "1.0.0",
    "service": "deploy-agent",
})

# Deployment metrics
DEPLOYMENTS_TOTAL = Counter(
    "deploy_agent_deployments_total",
    "Total number of rollouts by terminal status",
    ["status", "environment"],
)

DEPLOYMENT_DURATION = Histogram(
    "deploy_agent_deployment_duration_seconds",
    "Time taken for a complete rollout",
    ["status"],
    buckets=[10, 30, 60, 120, 300, 600, 1800],
)

ACTIVE_DEPLOYMENTS = Gauge(
    "deploy_agent_active_deployments",
    "Number of rollouts currently holding a lock",
)

DEPLOYMENT_CONFLICTS = Counter(
    "deploy_agent_deployment_conflicts_total",
    "Rollouts rejected because the service lock was held",
)

ROLLBACKS_TOTAL = Counter(
    "deploy_agent_rollbacks_total",
    "Total number of rollbacks",
    ["result"],  # "restored", "not_needed", "failed"
)

# Health and traffic metrics
HEALTH_CHECK_POLLS = Counter(
    "deploy_agent_health_check_polls_total",
    "Health polls performed against new containers",
    ["result"],  # "healthy", "unhealthy"
)

ROUTE_REGISTRATIONS = Counter(
    "deploy_agent_route_registrations_total",
    "Route registrations sent to the routing front end",
    ["result"],  # "confirmed", "unconfirmed", "error"
)

# Port metrics
PORT_ALLOCATIONS = Counter(
    "deploy_agent_port_allocations_total",
    "Host port allocations",
    ["result"],  # "reused", "allocated", "exhausted"
)
