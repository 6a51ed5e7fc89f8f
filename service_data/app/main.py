"""
Data service for Hapta.

Owns the process-wide cache engine and record store client, and hands route
handlers a per-request data access coordinator built on top of them.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from pydantic import BaseModel, model_validator

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from shared.errors import HaptaException, ValidationError
from .adapters.pocketbase_client import PocketBaseClient
from .caching.cache_engine import CacheEngine
from .caching.sync import RedisCacheSync
from .data.coordinator import DataAccessCoordinator


class InvalidateRequest(BaseModel):
    """Cache invalidation request; exactly one of prefix or key."""
    prefix: Optional[str] = None
    key: Optional[str] = None

    @model_validator(mode="after")
    def _one_target(self) -> "InvalidateRequest":
        if bool(self.prefix) == bool(self.key):
            raise ValueError("Provide exactly one of 'prefix' or 'key'")
        return self


class DataService(BaseService):
    """Data access service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None):
        super().__init__("data", 8080, config=config)

        self.cache = CacheEngine(
            self.config.node_id,
            compression_threshold=self.config.cache_compression_threshold,
            sweep_interval=self.config.cache_sweep_interval_seconds,
            metrics=self.metrics,
        )
        self.store = PocketBaseClient(
            self.config.pocketbase_url,
            admin_email=self.config.pocketbase_admin_email,
            admin_password=self.config.pocketbase_admin_password.get_secret_value(),
            timeout=self.config.pocketbase_timeout,
            metrics=self.metrics,
        )
        self.cache_sync: Optional[RedisCacheSync] = None
        if self.config.cache_sync_enabled:
            self.cache_sync = RedisCacheSync(
                self.cache,
                self.config.redis_url,
                channel=self.config.cache_sync_channel,
                metrics=self.metrics,
            )

        # Reject a bad tier at boot rather than on the first request
        self.coordinator()

        self.app.state.data_service = self
        self._setup_data_routes()

    def coordinator(self) -> DataAccessCoordinator:
        """A fresh coordinator sharing this process's cache and store."""
        try:
            return DataAccessCoordinator(
                self.store,
                self.cache,
                ttl_mode=self.config.cache_ttl_mode,
                metrics=self.metrics,
            )
        except ValueError:
            raise ValidationError(
                f"Unknown cache TTL mode: {self.config.cache_ttl_mode}",
                details={"cache_ttl_mode": self.config.cache_ttl_mode}
            )

    async def on_startup(self):
        await self.cache.start()

        if self.config.pocketbase_admin_email:
            try:
                await self.store.authenticate_superuser()
            except HaptaException as e:
                self.logger.warning("Superuser authentication failed; continuing unauthenticated", error=e.message)

        if self.cache_sync is not None:
            await self.cache_sync.start()

    async def on_shutdown(self):
        try:
            if self.cache_sync is not None:
                await self.cache_sync.stop()
        finally:
            await self.cache.stop()

    async def _check_dependencies(self) -> Dict[str, Any]:
        dependencies = {
            "pocketbase": "ok" if await self.store.health() else "unavailable",
            "cache_sweep": "ok" if self.cache.is_running else "stopped",
        }
        if self.cache_sync is not None:
            dependencies["cache_sync"] = "ok" if self.cache_sync.is_listening else "stopped"
        return dependencies

    def _setup_data_routes(self):
        """Set up data service routes."""

        @self.app.get("/api/v1/cache/stats")
        async def get_cache_stats():
            """Cache engine statistics."""
            stats = self.cache.stats()
            stats["sync_enabled"] = self.cache_sync is not None
            return stats

        @self.app.post("/api/v1/cache/invalidate")
        async def invalidate_cache(body: InvalidateRequest):
            """Drop a single key or every key under a prefix."""
            if body.key:
                removed = 1 if self.cache.delete(body.key) else 0
            else:
                removed = self.cache.invalidate_by_prefix(body.prefix)

            self.logger.info("Cache invalidated via API", prefix=body.prefix, key=body.key, removed=removed)
            return {"removed": removed, "prefix": body.prefix, "key": body.key}


def get_coordinator(request: Request) -> DataAccessCoordinator:
    """FastAPI dependency: a request-scoped coordinator."""
    return request.app.state.data_service.coordinator()


def create_app(config: Optional[ServiceConfig] = None):
    """Create the Data service application."""
    service = DataService(config=config)
    return service.app


if __name__ == "__main__":
    DataService(get_config("data", 8080)).run()
