"""
Dependency injection container for the orchestrator process.

Services are created lazily from registered factories and cached. Factories
import their modules on first use so that the configuration package stays free
of import cycles with the messaging and core packages.
"""

import inspect
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from ..observability.logging import get_logger
from .settings import Settings, get_settings

logger = get_logger(__name__)


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Callable[["Container"], Any]] = {}
        self._singletons: dict[str, Any] = {}
        self._cleanups: list[tuple[str, Callable[[], Awaitable[None] | None]]] = []

    def register_factory(self, name: str, factory: Callable[["Container"], Any]) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a ready-made instance, e.g. a fake in tests."""
        self._singletons[name] = instance

    def register_cleanup(self, name: str, cleanup: Callable[[], Awaitable[None] | None]) -> None:
        """Register a callable run by ``cleanup()``, in reverse registration order."""
        self._cleanups.append((name, cleanup))

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    async def cleanup(self) -> None:
        """Release all resources of created services."""
        for name, cleanup in reversed(self._cleanups):
            try:
                result = cleanup()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # Log error but continue cleanup
                logger.error(f"Error cleaning up {name}: {e}")

        self._cleanups.clear()
        self._services.clear()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None) -> Container:
    """Setup container with the orchestrator service factories."""
    container = Container(settings)

    def _state_store_factory(c: Container):
        from ..storage.repository import StateStore

        db = c.settings.database
        store = StateStore.from_url(
            db.url, echo=db.echo, pool_size=db.pool_size, pool_pre_ping=db.pool_pre_ping
        )
        c.register_cleanup("state_store", store.dispose)
        return store

    def _stage_senders_factory(c: Container):
        from ..core.pipeline import Stage
        from ..messaging.endpoints import endpoint_for_stage
        from ..messaging.spi import create_sender

        senders = {}
        for stage in Stage:
            section = c.settings.endpoints.get(stage.value)
            if section is None or section.sender is None:
                logger.warning("No sender configured, stage cannot be scheduled", stage=stage.value)
                continue
            sender = create_sender(endpoint_for_stage(stage), c.settings)
            c.register_cleanup(f"sender.{stage.value}", sender.close)
            senders[stage] = sender
        return senders

    def _orchestrator_factory(c: Container):
        from ..core.orchestrator import Orchestrator

        return Orchestrator(
            c.get("state_store"),
            c.get("stage_senders"),
            max_retries=c.settings.orchestrator.max_retries,
            heartbeat_timeout=c.settings.monitor.heartbeat_timeout,
        )

    def _monitor_factory(c: Container):
        from ..core.monitor import JobMonitor

        return JobMonitor(
            c.get("state_store"),
            c.get("orchestrator"),
            c.settings.monitor,
            liveness=c.get("liveness_probe"),
        )

    def _inbox_receiver_factory(c: Container):
        from ..messaging.endpoints import ORCHESTRATOR_ENDPOINT
        from ..messaging.spi import create_receiver

        return create_receiver(
            ORCHESTRATOR_ENDPOINT, c.settings, c.get("orchestrator").handle_message
        )

    container.register_factory("state_store", _state_store_factory)
    container.register_factory("stage_senders", _stage_senders_factory)
    container.register_factory("orchestrator", _orchestrator_factory)
    container.register_factory("monitor", _monitor_factory)
    container.register_factory("inbox_receiver", _inbox_receiver_factory)

    return container
