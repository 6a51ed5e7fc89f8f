"""
Unit tests for the Pocketbase record store client.
"""

import pytest
import httpx
from unittest.mock import AsyncMock, patch

from service_data.app.adapters.pocketbase_client import PocketBaseClient
from shared.errors import RemoteStoreError


BASE_URL = "http://localhost:8090"


def make_response(status_code: int, method: str = "GET", path: str = "/", json=None) -> httpx.Response:
    return httpx.Response(
        status_code=status_code,
        json=json,
        request=httpx.Request(method, f"{BASE_URL}{path}")
    )


def mock_request(mock_client, response=None, side_effect=None) -> AsyncMock:
    request = AsyncMock(return_value=response, side_effect=side_effect)
    mock_client.return_value.__aenter__.return_value.request = request
    return request


class TestPocketBaseClient:
    """Test cases for PocketBaseClient."""

    @pytest.fixture
    def client(self):
        """Create PocketBaseClient instance."""
        return PocketBaseClient(BASE_URL + "/", admin_email="admin@example.com", admin_password="secret")

    @pytest.fixture
    def mock_record(self):
        return {
            "id": "rec1234567890ab",
            "collectionName": "posts",
            "title": "Hello",
            "created": "2024-01-01 12:00:00.000Z",
            "updated": "2024-01-01 12:00:00.000Z"
        }

    @pytest.mark.asyncio
    async def test_get_one_success(self, client, mock_record):
        """Test fetching a single record."""
        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, json=mock_record))

            result = await client.get_one("posts", "rec1234567890ab", expand=["author", "tags"])

            assert result == mock_record
            method, url = request.call_args.args
            assert method == "GET"
            assert url == f"{BASE_URL}/api/collections/posts/records/rec1234567890ab"
            assert request.call_args.kwargs["params"] == {"expand": "author,tags"}

    @pytest.mark.asyncio
    async def test_get_one_not_found(self, client):
        """Test a 404 on a point lookup is an empty result."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(404, json={"code": 404, "message": "Not found"}))

            assert await client.get_one("posts", "missing") is None

    @pytest.mark.asyncio
    async def test_get_one_server_error(self, client):
        """Test non-404 failures raise RemoteStoreError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(500, json={"message": "boom"}))

            with pytest.raises(RemoteStoreError) as exc_info:
                await client.get_one("posts", "rec1")

            assert exc_info.value.status_code == 500
            assert exc_info.value.details["status_code"] == 500

    @pytest.mark.asyncio
    async def test_get_list_params(self, client, mock_record):
        """Test list queries pass pagination and query options."""
        page = {"items": [mock_record], "totalItems": 1, "totalPages": 1, "page": 2, "perPage": 5}

        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, json=page))

            result = await client.get_list("posts", 2, 5, filter="published = true", sort="-created", expand=["author"])

            assert result == page
            assert request.call_args.args[1] == f"{BASE_URL}/api/collections/posts/records"
            assert request.call_args.kwargs["params"] == {
                "page": 2,
                "perPage": 5,
                "filter": "published = true",
                "sort": "-created",
                "expand": "author",
            }

    @pytest.mark.asyncio
    async def test_get_list_forbidden(self, client):
        """Test list failures raise RemoteStoreError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(403, json={"message": "Only superusers"}))

            with pytest.raises(RemoteStoreError) as exc_info:
                await client.get_list("posts")

            assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_create(self, client, mock_record):
        """Test creating a record posts JSON."""
        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, "POST", json=mock_record))

            result = await client.create("posts", {"title": "Hello"})

            assert result == mock_record
            assert request.call_args.args == ("POST", f"{BASE_URL}/api/collections/posts/records")
            assert request.call_args.kwargs["json"] == {"title": "Hello"}

    @pytest.mark.asyncio
    async def test_create_validation_failure(self, client):
        """Test a rejected create raises with the store's status."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(400, "POST", json={"message": "Failed to create record."}))

            with pytest.raises(RemoteStoreError) as exc_info:
                await client.create("posts", {})

            assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_update(self, client, mock_record):
        """Test updating a record patches it."""
        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, "PATCH", json=mock_record))

            await client.update("posts", "rec1", {"title": "B"}, expand=["author"])

            assert request.call_args.args == ("PATCH", f"{BASE_URL}/api/collections/posts/records/rec1")
            assert request.call_args.kwargs["json"] == {"title": "B"}
            assert request.call_args.kwargs["params"] == {"expand": "author"}

    @pytest.mark.asyncio
    async def test_delete_success(self, client):
        """Test delete returns True on 204."""
        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(204, "DELETE"))

            assert await client.delete("posts", "rec1") is True
            assert request.call_args.args == ("DELETE", f"{BASE_URL}/api/collections/posts/records/rec1")

    @pytest.mark.asyncio
    async def test_delete_missing_record(self, client):
        """Test delete returns False when the record does not exist."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(404, "DELETE", json={"message": "Not found"}))

            assert await client.delete("posts", "missing") is False

    @pytest.mark.asyncio
    async def test_transport_error(self, client):
        """Test network failures raise RemoteStoreError."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, side_effect=httpx.ConnectError("connection refused"))

            with pytest.raises(RemoteStoreError) as exc_info:
                await client.get_one("posts", "rec1")

            assert exc_info.value.status_code is None
            assert "connection refused" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_authenticate_superuser_sets_token(self, client, mock_record):
        """Test superuser auth stores the token for later requests."""
        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, "POST", json={"token": "tok-123", "record": {}}))

            await client.authenticate_superuser()

            assert client.auth_token == "tok-123"
            assert request.call_args.args[1] == f"{BASE_URL}/api/collections/_superusers/auth-with-password"
            assert request.call_args.kwargs["json"] == {"identity": "admin@example.com", "password": "secret"}

        with patch('httpx.AsyncClient') as mock_client:
            request = mock_request(mock_client, make_response(200, json=mock_record))

            await client.get_one("posts", "rec1")

            assert request.call_args.kwargs["headers"]["Authorization"] == "tok-123"

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test health reflects store availability."""
        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(200, json={"code": 200, "message": "API is healthy."}))
            assert await client.health() is True

        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, side_effect=httpx.ConnectError("down"))
            assert await client.health() is False

    @pytest.mark.asyncio
    async def test_request_metrics(self, mock_record):
        """Test requests are counted by operation and outcome."""
        from shared.metrics import MetricsCollector

        metrics = MetricsCollector("data")
        client = PocketBaseClient(BASE_URL, metrics=metrics)

        with patch('httpx.AsyncClient') as mock_client:
            mock_request(mock_client, make_response(404))
            await client.get_one("posts", "missing")

        assert metrics.registry.get_sample_value(
            "remote_store_requests_total",
            {"operation": "get_one", "outcome": "not_found"}
        ) == 1
