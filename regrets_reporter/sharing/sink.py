"""
Outbound sinks for shared data points.
"""

from typing import Any, Dict, Optional, Protocol

import httpx


class TransmissionError(Exception):
    """Raised when a data point could not be delivered to the sink."""


class DataSink(Protocol):
    """Receives tagged JSON data points."""

    async def send(self, category: str, payload: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        ...


class HttpDataSink:
    """Posts each data point as JSON to a collection endpoint.

    The category is sent as the document namespace so the server can pick
    the matching schema.
    """

    def __init__(self, endpoint_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the sink.

        Args:
            endpoint_url: Collection endpoint
            timeout: Request timeout in seconds
            client: Optional preconfigured client (owned by the caller)
        """
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def send(self, category: str, payload: Dict[str, Any]) -> None:
        """POST one data point.

        Raises:
            TransmissionError: On network errors or non-2xx responses
        """
        try:
            response = await self._get_client().post(
                self.endpoint_url,
                json={"namespace": category, "payload": payload},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransmissionError(f"Failed to send {category} data point: {e}") from e

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
