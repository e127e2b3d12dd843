"""HTTP capability used to fetch the THOR package and publish results."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..errors import TransportError, TransportTimeout

logger = logging.getLogger(__name__)


class Transport(ABC):
    """Network collaborator of the scan lifecycle."""

    @abstractmethod
    async def download(
        self, url: str, credential: Optional[str], timeout: float
    ) -> bytes:
        """Fetch ``url`` and return the body.

        Raises:
            TransportError: on connection failure or non-success status.
            TransportTimeout: if the exchange exceeds ``timeout`` seconds.
        """

    @abstractmethod
    async def upload(
        self, url: str, credential: str, body: Any, timeout: float
    ) -> None:
        """POST ``body`` as JSON to ``url``."""


def _auth_headers(credential: Optional[str]) -> Dict[str, str]:
    if not credential:
        return {}
    return {"Authorization": f"Bearer {credential}"}


class HttpxTransport(Transport):
    """Transport backed by httpx.AsyncClient.

    ``transport`` is passed straight to the client and exists so tests can
    plug in httpx.MockTransport.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True, timeout=timeout, transport=self._transport
        )

    async def download(
        self, url: str, credential: Optional[str], timeout: float
    ) -> bytes:
        logger.info(f"Downloading {url}")
        try:
            async with self._client(timeout) as client:
                resp = await client.get(url, headers=_auth_headers(credential))
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Download of {url} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Download of {url} failed: {e}") from e

        if not resp.is_success:
            raise TransportError(
                f"Download of {url} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp.content

    async def upload(
        self, url: str, credential: str, body: Any, timeout: float
    ) -> None:
        logger.info(f"Uploading scan results to {url}")
        try:
            async with self._client(timeout) as client:
                resp = await client.post(
                    url, json=body, headers=_auth_headers(credential)
                )
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Upload to {url} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Upload to {url} failed: {e}") from e

        if not resp.is_success:
            raise TransportError(
                f"Upload to {url} failed: HTTP {resp.status_code}",
                status_code=resp.status_code,
            )
