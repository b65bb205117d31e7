"""Unit tests for the deployment lock registry."""

from __future__ import annotations

from deploy_agent.domain.services.lock_registry import InMemoryDeploymentLockRegistry, lock_key


class TestLockRegistry:
    def test_acquire_and_release(self) -> None:
        registry = InMemoryDeploymentLockRegistry()

        assert registry.acquire("web:production")
        assert registry.is_locked("web:production")
        assert not registry.acquire("web:production")

        registry.release("web:production")
        assert not registry.is_locked("web:production")
        assert registry.acquire("web:production")

    def test_keys_are_independent(self) -> None:
        registry = InMemoryDeploymentLockRegistry()
        assert registry.acquire(lock_key("web", "production"))
        assert registry.acquire(lock_key("web", "staging"))
        assert registry.active() == {"web:production", "web:staging"}

    def test_release_unknown_key_is_noop(self) -> None:
        registry = InMemoryDeploymentLockRegistry()
        registry.release("missing:key")
        assert registry.active() == set()

    def test_registries_are_isolated(self) -> None:
        first = InMemoryDeploymentLockRegistry()
        second = InMemoryDeploymentLockRegistry()
        first.acquire("web:production")
        assert second.acquire("web:production")
