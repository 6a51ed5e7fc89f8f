"""
Pocketbase record store client for the Data service.
"""

import time
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import httpx

from shared.errors import RemoteStoreError
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


SUPERUSERS_COLLECTION = "_superusers"


class PocketBaseClient:
    """Client for the Pocketbase collection records API."""

    def __init__(
        self,
        base_url: str,
        *,
        admin_email: str = "",
        admin_password: str = "",
        timeout: float = 10.0,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.admin_email = admin_email
        self.admin_password = admin_password
        self.timeout = timeout
        self.metrics = metrics
        self.logger = get_logger("data.pocketbase")
        self.auth_token: Optional[str] = None

    async def authenticate_superuser(self) -> Dict[str, Any]:
        """Authenticate as a superuser and keep the token for later calls."""
        response = await self._request(
            "auth",
            "POST",
            f"/api/collections/{SUPERUSERS_COLLECTION}/auth-with-password",
            json={"identity": self.admin_email, "password": self.admin_password},
        )
        payload = response.json()
        self.auth_token = payload.get("token")
        self.logger.info("Authenticated with record store", identity=self.admin_email)
        return payload

    async def health(self) -> bool:
        """Check record store health."""
        try:
            await self._request("health", "GET", "/api/health")
            return True
        except RemoteStoreError:
            return False

    async def get_one(
        self,
        collection: str,
        record_id: str,
        expand: Optional[List[str]] = None
    ) -> Optional[Dict[str, Any]]:
        """Fetch a single record; None when it does not exist."""
        response = await self._request(
            "get_one",
            "GET",
            self._records_path(collection, record_id),
            params=self._expand_params(expand),
            not_found_ok=True,
        )
        return response.json() if response is not None else None

    async def get_list(
        self,
        collection: str,
        page: int = 1,
        per_page: int = 30,
        *,
        filter: Optional[str] = None,
        sort: Optional[str] = None,
        expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Fetch one page of records.

        Returns the store's page envelope:
        ``{items, totalItems, totalPages, page, perPage}``.
        """
        params: Dict[str, Any] = {"page": page, "perPage": per_page}
        if filter:
            params["filter"] = filter
        if sort:
            params["sort"] = sort
        params.update(self._expand_params(expand))

        response = await self._request("get_list", "GET", self._records_path(collection), params=params)
        return response.json()

    async def create(self, collection: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record."""
        response = await self._request("create", "POST", self._records_path(collection), json=data)
        return response.json()

    async def update(
        self,
        collection: str,
        record_id: str,
        data: Dict[str, Any],
        expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        """Update a record."""
        response = await self._request(
            "update",
            "PATCH",
            self._records_path(collection, record_id),
            params=self._expand_params(expand),
            json=data,
        )
        return response.json()

    async def delete(self, collection: str, record_id: str) -> bool:
        """Delete a record; False when it does not exist."""
        response = await self._request(
            "delete",
            "DELETE",
            self._records_path(collection, record_id),
            not_found_ok=True,
        )
        return response is not None

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        not_found_ok: bool = False
    ) -> Optional[httpx.Response]:
        """Execute a request, mapping failures onto RemoteStoreError."""
        url = f"{self.base_url}{path}"
        start = time.perf_counter()
        outcome = "error"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    url,
                    params=params or None,
                    json=json,
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            self.logger.error("Record store unreachable", operation=operation, url=url, error=str(exc))
            self._record(operation, outcome, start)
            raise RemoteStoreError(str(exc), details={"url": url, "operation": operation}) from exc

        if response.status_code == 404 and not_found_ok:
            self.logger.debug("Record not found", operation=operation, url=url)
            self._record(operation, "not_found", start)
            return None

        if response.is_success:
            self._record(operation, "ok", start)
            return response

        self.logger.error(
            "Record store request failed",
            operation=operation,
            url=url,
            status_code=response.status_code,
            response=response.text
        )
        self._record(operation, outcome, start)
        raise RemoteStoreError(
            f"Unexpected status {response.status_code}",
            status_code=response.status_code,
            details={"body": response.text, "url": url, "operation": operation}
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.auth_token:
            headers["Authorization"] = self.auth_token
        return headers

    def _record(self, operation: str, outcome: str, start: float) -> None:
        if not self.metrics:
            return
        self.metrics.increment_counter("remote_store_requests_total", operation=operation, outcome=outcome)
        self.metrics.observe_histogram(
            "remote_store_request_duration_seconds",
            time.perf_counter() - start,
            operation=operation,
        )

    @staticmethod
    def _records_path(collection: str, record_id: Optional[str] = None) -> str:
        path = f"/api/collections/{collection}/records"
        return f"{path}/{record_id}" if record_id is not None else path

    @staticmethod
    def _expand_params(expand: Optional[List[str]]) -> Dict[str, str]:
        return {"expand": ",".join(expand)} if expand else {}
