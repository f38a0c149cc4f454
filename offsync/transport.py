"""Transport used to replay queued operations against the backend."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

from .errors import RejectedOperation, TransientNetworkError

logger = logging.getLogger(__name__)

# Client errors that are worth retrying later
RETRYABLE_STATUS_CODES = {408, 425, 429}


@dataclass
class Response:
    """A transport response."""

    status_code: int
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class Transport(ABC):
    """Executes HTTP-like operations.

    Implementations raise ``TransientNetworkError`` for failures worth
    retrying and ``RejectedOperation`` for failures that never will succeed.
    """

    @abstractmethod
    async def execute(
        self,
        method: str,
        target: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        pass

    async def aclose(self) -> None:
        pass


def check_status(status_code: int, detail: str = "") -> None:
    """Raise the engine error matching a non-2xx status code."""
    if 200 <= status_code < 300:
        return
    message = f"HTTP {status_code}"
    if detail:
        message = f"{message}: {detail[:200]}"
    if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
        raise TransientNetworkError(message, status_code=status_code)
    raise RejectedOperation(message, status_code=status_code)


class HttpTransport(Transport):
    """Transport over ``httpx.AsyncClient``.

    Bodies are sent as JSON, except ``bytes`` bodies, which are sent as is.
    """

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the transport.

        Args:
            base_url: Prefix for relative targets (e.g., "https://api.example.com").
            timeout: Request timeout in seconds.
            headers: Headers sent with every request.
            client: Preconfigured client, mainly for tests.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = dict(headers or {})
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        method: str,
        target: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Response:
        client = self._get_client()
        method = str(getattr(method, "value", method))

        if isinstance(body, (bytes, bytearray)):
            payload_kwargs = {"content": bytes(body)}
        else:
            payload_kwargs = {"json": body}

        try:
            response = await client.request(
                method,
                target,
                headers=headers or None,
                **payload_kwargs,
            )
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timeout: {method} {target}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection failed: {method} {target}: {e}") from e

        check_status(response.status_code, response.text)

        try:
            payload = response.json() if response.content else None
        except ValueError:
            payload = response.text

        logger.debug(f"{method} {target} -> {response.status_code}")
        return Response(
            status_code=response.status_code,
            body=payload,
            headers=dict(response.headers),
        )
