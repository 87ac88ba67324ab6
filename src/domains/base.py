"""Base classes for governance backend adapters.

All adapters must:
- Translate tool operations to governance API calls
- Handle authentication
- Normalize responses into shared models
- Raise GovernanceAPIError for any backend failure
- Never depend on the LLM or make decisions
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from shared.errors import GovernanceAPIError
from shared.logging import get_logger
from shared.models import EntitlementBundle, Grant

logger = get_logger(__name__)


class GovernanceAdapter(ABC):
    """
    Base class for governance backend adapters.

    Each adapter performs exactly one backend operation per method call
    and keeps no per-request state, so one instance can serve concurrent
    agent loops.
    """

    mode: str = "live"

    @abstractmethod
    async def list_entitlement_bundles(self, application_id: str) -> list[EntitlementBundle]:
        """Return the grantable entitlement bundles for an application."""
        pass

    @abstractmethod
    async def create_grant(self, user_id: str, entitlement_bundle_id: str) -> Grant:
        """Grant one entitlement bundle to one user."""
        pass

    @abstractmethod
    async def add_request_message(self, request_id: str, message: str) -> dict[str, Any]:
        """Append a message to an access request."""
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass


class RESTAdapter(GovernanceAdapter):
    """
    Base adapter for REST API backends.

    Provides a lazily created, pooled HTTP client.
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        **kwargs
    ) -> Any:
        """
        Make an HTTP request to the backend.

        Raises:
            GovernanceAPIError: On HTTP status errors, transport errors,
                or a body that is not JSON
        """
        client = await self._get_client()

        try:
            response = await client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            body = _response_body(e.response)
            logger.error(
                "Governance API request failed",
                method=method,
                path=path,
                status_code=e.response.status_code,
                body=body
            )
            raise GovernanceAPIError(
                f"{method} {path} returned {e.response.status_code}: {body}",
                status_code=e.response.status_code,
                body=body
            ) from e
        except httpx.HTTPError as e:
            logger.error("Governance API unreachable", method=method, path=path, error=str(e))
            raise GovernanceAPIError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError as e:
            raise GovernanceAPIError(
                f"{method} {path} returned a malformed response",
                status_code=response.status_code,
                body=response.text
            ) from e

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text
