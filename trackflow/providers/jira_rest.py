"""Jira tracker client using direct REST API calls."""

from typing import Any

import httpx
import structlog

from trackflow.exceptions import ExternalServiceError
from trackflow.providers.base import TrackerClient
from trackflow.utils.connection_pool import HTTPConnectionPool
from trackflow.utils.retry import async_retry

log = structlog.get_logger(__name__)


class JiraRestClient(TrackerClient):
    """Jira Cloud implementation authenticated with email and API token."""

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: float = 30.0,
        max_connections: int = 10,
        max_attempts: int = 3,
        backoff_factor: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Jira client.

        Args:
            base_url: Jira site URL (e.g., https://acme.atlassian.net)
            email: Account email used for basic auth
            api_token: API token for the account
            timeout: Per-request timeout in seconds
            max_connections: Connection pool size
            max_attempts: Attempts per GET/PUT/DELETE for transient failures.
                POST creates resources and is sent once.
            backoff_factor: Exponential backoff base between attempts
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.email = email
        self._pool = HTTPConnectionPool(
            base_url=self.base_url,
            max_connections=max_connections,
            timeout=timeout,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            auth=(email, api_token.strip() if api_token else api_token),
            transport=transport,
        )
        self._send = async_retry(max_attempts=max_attempts, backoff_factor=backoff_factor)(self._send_once)

    async def connect(self) -> None:
        """Initialize the connection pool and verify the credentials work."""
        await self._pool.initialize()
        myself = await self.get("/rest/api/3/myself")
        log.info("jira_connected", base_url=self.base_url, account_id=(myself or {}).get("accountId"))

    async def close(self) -> None:
        """Close the underlying connection pool."""
        await self._pool.close()

    async def __aenter__(self) -> "JiraRestClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._send("GET", path, params=params)

    async def post(self, path: str, json: Any = None) -> Any:
        # Sent once, POST is not idempotent
        return await self._send_once("POST", path, json=json)

    async def put(self, path: str, json: Any = None) -> Any:
        return await self._send("PUT", path, json=json)

    async def delete(self, path: str) -> Any:
        return await self._send("DELETE", path)

    async def _send_once(self, method: str, path: str, **kwargs: Any) -> Any:
        log.debug("jira_request", method=method, path=path)
        try:
            response = await self._pool.request(method, path, **kwargs)
        except httpx.TransportError as e:
            log.warning("jira_request_unreachable", method=method, path=path, error=str(e))
            raise ExternalServiceError(f"Tracker unreachable: {method} {path}: {e}") from e

        return self._decode(method, path, response)

    @staticmethod
    def _decode(method: str, path: str, response: httpx.Response) -> Any:
        """Turn a response into decoded JSON, raising on error statuses."""
        if response.is_error:
            log.warning(
                "jira_request_failed",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise ExternalServiceError(
                f"Tracker request failed: {method} {path}",
                status_code=response.status_code,
                response_text=response.text,
            )

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError:
            return response.text
