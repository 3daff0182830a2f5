import os
from typing import Dict, Any, List, Optional
import httpx
from loguru import logger
from tools.base import SourceUnavailable, WriteNotAcknowledged

# Keys a remote sheet/backend may wrap its rows in
ROW_CONTAINERS = ("data", "leads", "records")


class CloudStore:
    """Remote lead store reached with plain JSON over HTTP (GET to read, POST to write)."""

    name = "cloud"

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        api_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not url:
            raise ValueError("CloudStore requires a URL")
        self.url = url
        self.timeout = float(timeout if timeout is not None else os.getenv("CLOUD_TIMEOUT_S", "10"))
        self.api_token = api_token if api_token is not None else os.getenv("CLOUD_API_TOKEN")
        self._transport = transport

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for backend requests."""
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True)

    async def fetch_all(self) -> List[Dict[str, Any]]:
        """
        Fetch every raw row from the remote store.

        Raises:
            SourceUnavailable: on transport errors, timeouts, non-2xx
                responses or payloads that are not a JSON array of rows.
        """
        try:
            async with self._client() as client:
                response = await client.get(self.url, headers=self._get_headers())
                response.raise_for_status()
                payload = response.json()
        except httpx.TimeoutException as e:
            raise SourceUnavailable(f"timed out after {self.timeout}s: {e}") from e
        except httpx.HTTPStatusError as e:
            raise SourceUnavailable(f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise SourceUnavailable(f"request failed: {e}") from e
        except ValueError as e:
            raise SourceUnavailable(f"invalid JSON payload: {e}") from e

        rows = payload
        if isinstance(payload, dict):
            for key in ROW_CONTAINERS:
                if key in payload:
                    rows = payload[key]
                    break

        if not isinstance(rows, list):
            raise SourceUnavailable(f"expected an array of rows, got {type(rows).__name__}")

        logger.info(f"Fetched {len(rows)} rows from {self.url}")
        return rows

    async def write_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """POST a lead or action packet; raises WriteNotAcknowledged when not confirmed."""
        try:
            async with self._client() as client:
                response = await client.post(self.url, headers=self._get_headers(), json=record)
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WriteNotAcknowledged(f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise WriteNotAcknowledged(f"request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            # Sheet-style endpoints often answer with plain text
            body = {"raw": response.text}

        if isinstance(body, dict) and body.get("success") is False:
            raise WriteNotAcknowledged(body.get("error") or "remote store rejected the write")

        logger.info(f"Remote write acknowledged: {record.get('action', 'CREATE')} {record.get('id')}")
        return body if isinstance(body, dict) else {"result": body}
