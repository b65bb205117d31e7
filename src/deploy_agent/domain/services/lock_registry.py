"""In-memory deployment lock registry."""

from __future__ import annotations

import threading

import structlog

from deploy_agent.domain.ports.services import DeploymentLockRegistry


logger = structlog.get_logger(__name__)


def lock_key(service_name: str, environment: str) -> str:
    """Build the lock key identifying a logical service."""
    return f"{service_name}:{environment}"


class InMemoryDeploymentLockRegistry(DeploymentLockRegistry):
    """Set of held rollout locks keyed by ``service:environment``.

    Owned by whoever constructs the orchestrator; each instance is isolated.
    """

    def __init__(self) -> None:
        self._keys: set[str] = set()
        self._guard = threading.Lock()

    def acquire(self, key: str) -> bool:
        with self._guard:
            if key in self._keys:
                logger.debug("deployment_lock_not_acquired", lock_key=key)
                return False
            self._keys.add(key)
        logger.debug("deployment_lock_acquired", lock_key=key)
        return True

    def release(self, key: str) -> None:
        with self._guard:
            self._keys.discard(key)
        logger.debug("deployment_lock_released", lock_key=key)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            return key in self._keys

    def active(self) -> set[str]:
        with self._guard:
            return set(self._keys)
