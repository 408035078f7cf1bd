"""Checkly API boundary."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import ConflictError, NotFoundError, TransientError, ValidationError
from .models import ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.checklyhq.com"

RESOURCE_PATHS = {
    ResourceKind.CHECK: "/v1/checks",
    ResourceKind.GROUP: "/v1/check-groups",
    ResourceKind.ALERT_CHANNEL: "/v1/alert-channels",
}


class ExternalResourceAPI(ABC):
    """
    Create/read/update/delete of one external resource kind by external id.

    Every call must be safe to retry. Implementations raise the operator
    error taxonomy: NotFoundError, ConflictError, TransientError and
    ValidationError.
    """

    @abstractmethod
    async def create(self, representation: dict[str, Any]) -> dict[str, Any]:
        """Create the resource and return the created representation, id included."""

    @abstractmethod
    async def read(self, external_id: str) -> dict[str, Any]:
        """Return the current representation or raise NotFoundError."""

    @abstractmethod
    async def update(self, external_id: str, representation: dict[str, Any]) -> None:
        """Replace the whole resource."""

    @abstractmethod
    async def delete(self, external_id: str) -> None:
        """Delete the resource or raise NotFoundError."""


def classify_response(response: httpx.Response) -> None:
    """
    Raise the taxonomy error matching an unsuccessful response.

    Args:
        response: HTTP response from the Checkly API

    Raises:
        NotFoundError, ConflictError, TransientError, ValidationError
    """
    if response.is_success:
        return

    status = response.status_code
    message = f"{response.request.method} {response.request.url.path} -> {status}: {_error_text(response)}"

    if status == 404:
        raise NotFoundError(message, status_code=status)
    if status in (409, 412):
        raise ConflictError(message, status_code=status)
    if status in (401, 403, 408, 429) or status >= 500:
        raise TransientError(message, status_code=status)
    raise ValidationError(message, status_code=status)


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


class ChecklyResourceAPI(ExternalResourceAPI):
    """ExternalResourceAPI for one Checkly collection path."""

    def __init__(self, client: "ChecklyClient", path: str):
        self.client = client
        self.path = path

    async def create(self, representation: dict[str, Any]) -> dict[str, Any]:
        return await self.client.request("POST", self.path, json=representation)

    async def read(self, external_id: str) -> dict[str, Any]:
        return await self.client.request("GET", f"{self.path}/{external_id}")

    async def update(self, external_id: str, representation: dict[str, Any]) -> None:
        await self.client.request("PUT", f"{self.path}/{external_id}", json=representation)

    async def delete(self, external_id: str) -> None:
        await self.client.request("DELETE", f"{self.path}/{external_id}")


class ChecklyClient:
    """
    Async Checkly API client.

    Transient failures (transport errors, 429, 5xx) are retried with
    exponential backoff before being surfaced as TransientError.
    """

    def __init__(
        self,
        api_key: str,
        account_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        wait_min: float = 2,
        wait_max: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Checkly client.

        Args:
            api_key: Checkly API key
            account_id: Checkly account id
            base_url: API base URL
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per request for transient failures
            wait_min: Minimum backoff between attempts (seconds)
            wait_max: Maximum backoff between attempts (seconds)
            transport: Optional httpx transport (used in tests)
        """
        self.max_attempts = max_attempts
        self.wait_min = wait_min
        self.wait_max = wait_max
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={
                "Authorization": f"Bearer {api_key}",
                "X-Checkly-Account": account_id,
                "Content-Type": "application/json",
            },
        )

    def resource(self, kind: ResourceKind) -> ChecklyResourceAPI:
        """Per-kind view of the API."""
        return ChecklyResourceAPI(self, RESOURCE_PATHS[kind])

    async def request(
        self, method: str, path: str, json: Optional[dict[str, Any]] = None
    ) -> dict[str, Any]:
        """
        Send a request, retrying transient failures.

        Returns:
            Decoded JSON body (empty dict for empty responses)
        """
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.wait_min, max=self.wait_max),
            retry=retry_if_exception_type(TransientError),
            reraise=True,
        ):
            with attempt:
                return await self._send(method, path, json)
        return {}

    async def _send(
        self, method: str, path: str, json: Optional[dict[str, Any]]
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(method, path, json=json)
        except httpx.TransportError as e:
            logger.warning(f"Checkly {method} {path} failed: {e}")
            raise TransientError(f"{method} {path}: {e}") from e

        classify_response(response)
        if not response.content:
            return {}
        return response.json()

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
