"""
KitForge Storage Collaborators
Interfaces the recolor pipeline consumes for image I/O and design request
records, an httpx based fetcher, and in-memory implementations used for local
runs and tests.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple

import httpx

from app.config import config
from app.errors import InfraError
from app.utils.logging import get_logger

# Design request statuses written by the pipeline
STATUS_RENDERING = "rendering"
STATUS_RENDERED = "rendered"
STATUS_RENDER_FAILED = "render_failed"


@dataclass
class DesignRecord:
    """The slice of a design request the pipeline needs for gating."""
    id: str
    owner_id: Optional[str] = None
    requested_by: Optional[str] = None
    status: str = "pending"


@dataclass(frozen=True)
class Requester:
    """Authenticated caller of a recolor run."""
    user_id: str
    is_admin: bool = False

    def can_access(self, record: DesignRecord) -> bool:
        return self.is_admin or self.user_id in (record.owner_id, record.requested_by)


class ImageFetcher(Protocol):
    async def download_image(self, url: str) -> bytes:
        ...

    async def try_download(self, url: str) -> Optional[bytes]:
        ...


class ObjectStore(Protocol):
    async def upload_image(self, bucket: str, name: str, data: bytes) -> str:
        ...

    async def delete_image(self, bucket: str, name: str) -> None:
        ...


class DesignRequestStore(Protocol):
    async def fetch_design_record(self, design_request_id: str) -> Optional[DesignRecord]:
        ...

    async def update_status(self, design_request_id: str, status: str) -> None:
        ...

    async def persist_render_result(self, design_request_id: str, render_spec, output_url: str) -> None:
        ...


class HttpImageFetcher:
    """
    Download images over HTTP with httpx.

    ``download_image`` treats any non-2xx answer as an infrastructure failure.
    ``try_download`` returns None for 4xx answers (object absent) and raises
    InfraError for transport errors and 5xx answers.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT_S,
            follow_redirects=True,
        )
        self.logger = get_logger()

    async def __aenter__(self) -> "HttpImageFetcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, url: str) -> httpx.Response:
        try:
            return await self._client.get(url)
        except httpx.HTTPError as e:
            self.logger.error(f"Download failed: {url}", extra={"error": str(e)})
            raise InfraError(f"Failed to download {url}: {e}", {"url": url}) from e

    async def download_image(self, url: str) -> bytes:
        response = await self._get(url)
        if not response.is_success:
            raise InfraError(
                f"Failed to download {url}: HTTP {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        return response.content

    async def try_download(self, url: str) -> Optional[bytes]:
        response = await self._get(url)
        if response.is_success:
            return response.content
        if 400 <= response.status_code < 500:
            self.logger.debug(f"Object not found: {url}", extra={"status": response.status_code})
            return None
        raise InfraError(
            f"Failed to download {url}: HTTP {response.status_code}",
            {"url": url, "status": response.status_code},
        )


class InMemoryImageFetcher:
    """Serves bytes from a dict keyed by URL and records every request."""

    def __init__(self, objects: Optional[Dict[str, bytes]] = None, delay: float = 0.0):
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.delay = delay
        self.requests: List[str] = []

    async def _lookup(self, url: str) -> Optional[bytes]:
        self.requests.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.objects.get(url)

    async def download_image(self, url: str) -> bytes:
        data = await self._lookup(url)
        if data is None:
            raise InfraError(f"Failed to download {url}: not found", {"url": url})
        return data

    async def try_download(self, url: str) -> Optional[bytes]:
        return await self._lookup(url)


class InMemoryObjectStore:
    """Keeps uploaded objects in memory and hands out public-style URLs."""

    def __init__(self, public_base_url: str = "memory://storage"):
        self.public_base_url = public_base_url.rstrip("/")
        self.objects: Dict[Tuple[str, str], bytes] = {}

    async def upload_image(self, bucket: str, name: str, data: bytes) -> str:
        if (bucket, name) in self.objects:
            raise InfraError(f"Object {bucket}/{name} already exists", {"bucket": bucket, "name": name})
        self.objects[(bucket, name)] = data
        return f"{self.public_base_url}/{bucket}/{name}"

    async def delete_image(self, bucket: str, name: str) -> None:
        self.objects.pop((bucket, name), None)


@dataclass
class InMemoryDesignRequestStore:
    """Design request records plus their status history and render results."""
    records: Dict[str, DesignRecord] = field(default_factory=dict)
    status_history: Dict[str, List[str]] = field(default_factory=dict)
    renders: Dict[str, List[dict]] = field(default_factory=dict)

    def add(self, record: DesignRecord) -> DesignRecord:
        self.records[record.id] = record
        return record

    async def fetch_design_record(self, design_request_id: str) -> Optional[DesignRecord]:
        return self.records.get(design_request_id)

    async def update_status(self, design_request_id: str, status: str) -> None:
        record = self.records.get(design_request_id)
        if record is None:
            raise InfraError(f"Design request {design_request_id} vanished", {"design_request_id": design_request_id})
        record.status = status
        self.status_history.setdefault(design_request_id, []).append(status)

    async def persist_render_result(self, design_request_id: str, render_spec, output_url: str) -> None:
        self.renders.setdefault(design_request_id, []).append(
            {"render_spec": render_spec.to_record(), "output_url": output_url}
        )
        await self.update_status(design_request_id, STATUS_RENDERED)
