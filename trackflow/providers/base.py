"""
Abstract base class for tracker clients.

The rule engine talks to the issue tracker only through this narrow
interface, so the HTTP stack, authentication and retry policy stay out of
the engine and can be replaced in tests by a simple fake.
"""

from abc import ABC, abstractmethod
from typing import Any

from trackflow.exceptions import ConfigurationError


class TrackerClient(ABC):
    """Plain REST access to the issue tracker.

    Every method takes a path relative to the tracker's base URL and
    returns the decoded JSON body, or None when the response has no body.

    Implementations raise ``ExternalServiceError`` for error responses and
    own any retry of transient failures. Callers in the engine never retry.
    """

    @abstractmethod
    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Send a GET request.

        Args:
            path: API path, e.g. ``/rest/api/3/issue/PROJ-1/transitions``
            params: Optional query parameters

        Returns:
            Decoded JSON body

        Raises:
            ExternalServiceError: If the tracker answers with an error status.
        """
        pass

    @abstractmethod
    async def post(self, path: str, json: Any = None) -> Any:
        """Send a POST request with a JSON body."""
        pass

    @abstractmethod
    async def put(self, path: str, json: Any = None) -> Any:
        """Send a PUT request with a JSON body."""
        pass

    @abstractmethod
    async def delete(self, path: str) -> Any:
        """Send a DELETE request."""
        pass

    async def close(self) -> None:
        """Release network resources. No-op by default."""
        return None


class OfflineTrackerClient(TrackerClient):
    """Client used when no tracker connection is configured.

    Rule management works without a tracker; any call that needs one fails
    with a ConfigurationError, which actions report as a failed result.
    """

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        raise self._unconfigured()

    async def post(self, path: str, json: Any = None) -> Any:
        raise self._unconfigured()

    async def put(self, path: str, json: Any = None) -> Any:
        raise self._unconfigured()

    async def delete(self, path: str) -> Any:
        raise self._unconfigured()

    @staticmethod
    def _unconfigured() -> ConfigurationError:
        return ConfigurationError("Tracker connection is not configured")
