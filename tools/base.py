from typing import Dict, Any, List, Protocol


class StoreError(Exception):
    """Base class for backing store failures."""


class SourceUnavailable(StoreError):
    """Read side failed: network error, timeout, bad status or unparseable payload."""


class WriteNotAcknowledged(StoreError):
    """Write was attempted but the store did not confirm it."""


class LeadStore(Protocol):
    """Shape shared by the local durable store and the remote HTTP store."""

    name: str

    async def fetch_all(self) -> List[Dict[str, Any]]:
        ...

    async def write_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        ...
