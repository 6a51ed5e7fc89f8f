"""
Cache-aside data access coordinator.

Reads consult the cache engine before the record store and repopulate it on
a miss. Writes go to the record store and then drop the affected cache
entries. In batch mode writes are queued instead and flushed, in order, by
``save_changes``; creates may return an optimistic scaffold record that is
prepended to the collection's cached list pages in the meantime.

A coordinator's batch queue belongs to one logical flow. Create one
coordinator per request or session; they can all share the same cache
engine and record store client.
"""

import secrets
import string
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, TYPE_CHECKING, Union

from shared.errors import ValidationError
from shared.logging import get_logger
from ..caching.cache_engine import CacheEngine, TTLMode
from .models import BatchKind, BatchOperation, ListOptions, PaginatedResult

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..adapters.pocketbase_client import PocketBaseClient
    from shared.metrics import MetricsCollector


KEY_SEPARATOR = ":"
EXPAND_SEPARATOR = ","
SCAFFOLD_ID_LENGTH = 15
SCAFFOLD_ID_ALPHABET = string.ascii_lowercase + string.digits


class DataAccessCoordinator:
    """CRUD facade over the record store with cache-aside reads and batched writes."""

    def __init__(
        self,
        store: "PocketBaseClient",
        cache: CacheEngine,
        *,
        ttl_mode: Union[TTLMode, str] = TTLMode.MEDIUM,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.cache = cache
        self.ttl_mode = TTLMode(ttl_mode)
        self.metrics = metrics
        self.logger = get_logger("data.coordinator")

        self._batch_mode = False
        self._queue: List[BatchOperation] = []
        self._batch_lock = threading.Lock()

    @property
    def is_batch_mode(self) -> bool:
        return self._batch_mode

    @property
    def pending_operations(self) -> Tuple[BatchOperation, ...]:
        with self._batch_lock:
            return tuple(self._queue)

    @staticmethod
    def cache_key(*parts: Any) -> str:
        """Join the non-empty key parts. All cache keys are built here."""
        return KEY_SEPARATOR.join(str(part) for part in parts if part not in (None, ""))

    def get_key(self, collection: str, record_id: str, expand: Optional[List[str]] = None) -> str:
        return self.cache_key(collection, "get", record_id, self._join_expand(expand))

    def list_key(self, collection: str, options: ListOptions) -> str:
        return self.cache_key(
            collection,
            "list",
            options.page,
            options.limit,
            options.filter,
            options.sort,
            self._join_expand(options.expand),
        )

    def list_prefix(self, collection: str) -> str:
        return self.cache_key(collection, "list") + KEY_SEPARATOR

    async def get(
        self,
        collection: str,
        record_id: str,
        expand: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """Get one record, with caching. None when the record does not exist."""
        key = self.get_key(collection, record_id, expand)
        cached = self.cache.get(key)
        if cached is not None:
            return {**cached, "cache_key": key}

        record = await self.store.get_one(collection, record_id, expand=expand)
        if record is None:
            return None

        self.cache.set(key, record, self._ttl_seconds(key))
        return {**record, "cache_key": key}

    async def list(
        self,
        collection: str,
        options: Optional[ListOptions] = None,
        **option_kwargs: Any
    ) -> PaginatedResult:
        """List records with pagination and caching."""
        if options is None:
            options = ListOptions(**option_kwargs)

        key = self.list_key(collection, options)
        cached = self.cache.get(key)
        if cached is not None:
            return PaginatedResult.model_validate(cached)

        page = await self.store.get_list(
            collection,
            options.page,
            options.limit,
            filter=options.filter,
            sort=options.sort,
            expand=options.expand,
        )
        result = PaginatedResult(
            items=page.get("items", []),
            total_items=page.get("totalItems", 0),
            total_pages=page.get("totalPages", 0),
            page=page.get("page", options.page),
            limit=page.get("perPage", options.limit),
            cache_key=key,
        )

        self.cache.set(key, result.model_dump(), self._ttl_seconds(key))
        return result

    async def create(
        self,
        collection: str,
        data: Dict[str, Any],
        use_scaffold: bool = False
    ) -> Dict[str, Any]:
        """Create a record.

        In batch mode with ``use_scaffold`` the create is queued and a
        placeholder record is returned and shown in cached list pages until
        the batch is committed. Otherwise the create is applied immediately.
        """
        if use_scaffold and self._defer(BatchOperation(BatchKind.CREATE, collection, payload=dict(data))):
            scaffold = self._build_scaffold(data)
            patched = self._prepend_to_cached_lists(collection, scaffold)
            self.logger.debug(
                "Queued scaffolded create",
                collection=collection,
                scaffold_id=scaffold["id"],
                patched_pages=patched
            )
            return scaffold

        return await self._create_now(collection, data)

    async def update(
        self,
        collection: str,
        record_id: str,
        data: Dict[str, Any],
        expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Update a record, or queue the update in batch mode."""
        operation = BatchOperation(BatchKind.UPDATE, collection, record_id=record_id, payload=dict(data), expand=expand)
        if self._defer(operation):
            return {"id": record_id, "created": "", "updated": "", **data}

        return await self._update_now(collection, record_id, data, expand)

    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record, or queue the delete in batch mode."""
        if self._defer(BatchOperation(BatchKind.DELETE, collection, record_id=record_id)):
            return True

        return await self._delete_now(collection, record_id)

    def set_batch(self, enable: bool) -> None:
        """Toggle batch mode. Queued operations survive until committed or discarded."""
        with self._batch_lock:
            self._batch_mode = bool(enable)
            pending = len(self._queue)
        self.logger.debug("Batch mode toggled", enabled=bool(enable), pending=pending)

    async def save_changes(self) -> List[Any]:
        """Commit queued operations in the order they were queued.

        Each operation runs through the immediate write path, so its usual
        cache invalidation applies. The queue is cleared and batch mode is
        left even if an operation fails; operations after the failing one
        are discarded and the failure is re-raised unchanged.
        """
        with self._batch_lock:
            operations, self._queue = self._queue, []
            self._batch_mode = False

        results: List[Any] = []
        for index, operation in enumerate(operations):
            try:
                results.append(await self._apply(operation))
            except Exception as exc:
                self.logger.error(
                    "Batch commit failed",
                    failed_index=index,
                    kind=operation.kind.value,
                    collection=operation.collection,
                    record_id=operation.record_id,
                    discarded=len(operations) - index - 1,
                    error=str(exc)
                )
                self._drop_scaffolds(operations[index:])
                raise
            self._count(operation.kind, "committed")

        if operations:
            self.logger.info("Batch committed", operations=len(operations))
        return results

    def discard_changes(self) -> int:
        """Drop queued operations and leave batch mode.

        Cached list pages showing scaffolds of the dropped creates are
        invalidated.
        """
        with self._batch_lock:
            operations, self._queue = self._queue, []
            self._batch_mode = False

        if operations:
            self._drop_scaffolds(operations)
            self.logger.info("Batch discarded", operations=len(operations))
        return len(operations)

    @asynccontextmanager
    async def batch(self) -> AsyncIterator["DataAccessCoordinator"]:
        """Queue writes inside the block; commit on success, discard on error."""
        self.set_batch(True)
        try:
            yield self
        except BaseException:
            self.discard_changes()
            raise
        await self.save_changes()

    async def _create_now(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        record = await self.store.create(collection, data)
        # A create can shift any page, so cached pages are dropped wholesale
        self.cache.invalidate_by_prefix(self.list_prefix(collection))
        return record

    async def _update_now(
        self,
        collection: str,
        record_id: str,
        data: Dict[str, Any],
        expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        record = await self.store.update(collection, record_id, data, expand=expand)
        self._invalidate_record(collection, record_id)
        return record

    async def _delete_now(self, collection: str, record_id: str) -> bool:
        deleted = await self.store.delete(collection, record_id)
        if deleted:
            self._invalidate_record(collection, record_id)
        return deleted

    async def _apply(self, operation: BatchOperation) -> Any:
        if operation.kind is BatchKind.CREATE:
            return await self._create_now(operation.collection, operation.payload or {})
        if operation.kind is BatchKind.UPDATE:
            return await self._update_now(
                operation.collection,
                operation.record_id,
                operation.payload or {},
                operation.expand,
            )
        if operation.kind is BatchKind.DELETE:
            return await self._delete_now(operation.collection, operation.record_id)
        raise ValidationError(f"Unknown batch operation: {operation.kind}")

    def _defer(self, operation: BatchOperation) -> bool:
        """Queue ``operation`` if batch mode is on; returns whether it was queued."""
        with self._batch_lock:
            if not self._batch_mode:
                return False
            self._queue.append(operation)
        self._count(operation.kind, "queued")
        return True

    def _invalidate_record(self, collection: str, record_id: str) -> None:
        get_key = self.get_key(collection, record_id)
        self.cache.delete(get_key)
        # expanded variants of the same record
        self.cache.invalidate_by_prefix(get_key + KEY_SEPARATOR)
        self.cache.invalidate_by_prefix(self.list_prefix(collection))

    def _drop_scaffolds(self, operations: List[BatchOperation]) -> None:
        # only scaffolded creates are ever queued
        collections = {op.collection for op in operations if op.kind is BatchKind.CREATE}
        for collection in sorted(collections):
            self.cache.invalidate_by_prefix(self.list_prefix(collection))

    def _prepend_to_cached_lists(self, collection: str, scaffold: Dict[str, Any]) -> int:
        patched = 0
        for key in self.cache.keys(self.list_prefix(collection)):
            cached = self.cache.get(key)
            if not isinstance(cached, dict) or not isinstance(cached.get("items"), list):
                continue
            self.cache.set(key, {**cached, "items": [scaffold, *cached["items"]]}, self._ttl_seconds(key))
            patched += 1
        return patched

    def _build_scaffold(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._timestamp()
        return {
            **data,
            "id": "".join(secrets.choice(SCAFFOLD_ID_ALPHABET) for _ in range(SCAFFOLD_ID_LENGTH)),
            "created": now,
            "updated": now,
            "scaffold": True,
        }

    def _ttl_seconds(self, key: str) -> int:
        return self.cache.get_dynamic_ttl(key, self.ttl_mode) // 1000

    def _count(self, kind: BatchKind, stage: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("batch_operations_total", kind=kind.value, stage=stage)

    @staticmethod
    def _join_expand(expand: Optional[List[str]]) -> Optional[str]:
        return EXPAND_SEPARATOR.join(expand) if expand else None

    @staticmethod
    def _timestamp() -> str:
        # record store timestamp format, e.g. "2024-01-01 12:00:00.000Z"
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3] + "Z"
