"""
Cross-node cache coherence over Redis pub/sub.
"""

import asyncio
from typing import Any, Optional, Set, TYPE_CHECKING, Union

import redis.asyncio as redis
from pydantic import ValidationError as MessageValidationError

from shared.errors import HaptaException, ServiceError
from shared.logging import get_logger
from .cache_engine import CacheEngine
from .messages import CacheSyncMessage, SyncAction

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


DEFAULT_CHANNEL = "hapta:cache-sync"


class RedisCacheSync:
    """Publishes local cache mutations and applies those of peer nodes."""

    def __init__(
        self,
        cache: CacheEngine,
        redis_url: str,
        *,
        channel: str = DEFAULT_CHANNEL,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache = cache
        self.redis_url = redis_url
        self.channel = channel
        self.node_id = cache.node_id
        self.metrics = metrics
        self.logger = get_logger("data.cache.sync")

        self.redis: Optional[redis.Redis] = None
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    async def start(self):
        """Connect, subscribe and attach to the cache engine."""
        try:
            self.redis = redis.from_url(self.redis_url, decode_responses=True)
            self._pubsub = self.redis.pubsub()
            await self._pubsub.subscribe(self.channel)
        except Exception as e:
            self.logger.error("Failed to start cache sync", error=str(e))
            self.redis = None
            self._pubsub = None
            raise HaptaException("CACHE_SYNC_START_FAILED", str(e))

        self._listener = asyncio.create_task(self._listen())
        self.cache.set_broadcast_callback(self.publish)
        self.logger.info("Cache sync started", channel=self.channel, node_id=self.node_id)

    async def stop(self):
        """Detach from the cache engine and close the connection."""
        self.cache.set_broadcast_callback(None)

        try:
            if self._listener is not None:
                self._listener.cancel()
                try:
                    await self._listener
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    self.logger.error("Cache sync listener had failed", error=str(e))
                self._listener = None

            if self._pending:
                await asyncio.gather(*self._pending, return_exceptions=True)

            if self._pubsub is not None:
                try:
                    await self._pubsub.unsubscribe(self.channel)
                    await self._pubsub.aclose()
                except Exception as e:
                    self.logger.warning("Failed to close cache sync subscription", error=str(e))
        finally:
            self._pubsub = None
            if self.redis is not None:
                try:
                    await self.redis.aclose()
                finally:
                    self.redis = None
                    self.logger.info("Cache sync stopped")

    @property
    def is_listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    def publish(self, message: CacheSyncMessage) -> None:
        """Broadcast callback for the cache engine.

        The engine calls this synchronously, so the publish itself is
        scheduled on the running loop.
        """
        if self.redis is None:
            raise ServiceError("Cache sync is not started")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.logger.debug("No running loop; cache sync message dropped", key=message.key)
            return

        task = loop.create_task(self._publish(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, message: CacheSyncMessage) -> None:
        try:
            await self.redis.publish(self.channel, message.model_dump_json())
        except Exception as e:
            self.logger.error(
                "Failed to publish cache sync message",
                action=message.action.value,
                key=message.key,
                error=str(e)
            )

    async def _listen(self):
        try:
            async for raw in self._pubsub.listen():
                if raw.get("type") != "message":
                    continue
                self.handle_message(raw.get("data"))
        except Exception as e:
            self.logger.error("Cache sync listener stopped", channel=self.channel, error=str(e))
            raise

    def handle_message(self, raw: Union[str, bytes, Any]) -> bool:
        """Apply a message received from the bus; returns whether it was applied."""
        try:
            message = CacheSyncMessage.model_validate_json(raw)
        except (MessageValidationError, ValueError, TypeError) as e:
            self.logger.warning("Ignoring malformed cache sync message", error=str(e))
            return False

        if message.origin_node_id == self.node_id:
            return False

        if message.action is SyncAction.SET:
            applied = self._apply_set(message)
        else:
            # invalidate messages name the exact key that was dropped
            self.cache.delete(message.key, is_internal=True)
            applied = True

        if applied and self.metrics:
            self.metrics.increment_counter("cache_sync_messages_total", direction="in", action=message.action.value)
        return applied

    def _apply_set(self, message: CacheSyncMessage) -> bool:
        ttl_seconds = 0.0
        if message.expires_at:
            remaining_ms = message.expires_at - self.cache.now_ms()
            if remaining_ms <= 0:
                self.logger.debug("Skipping expired cache sync entry", key=message.key)
                return False
            ttl_seconds = remaining_ms / 1000

        self.cache.set(message.key, message.payload, ttl_seconds, is_internal=True)
        return True
