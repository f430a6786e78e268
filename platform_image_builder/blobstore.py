import asyncio
import enum
import logging
from pathlib import Path
from typing import Any, Optional, Union

import aiohttp
import aiohttp.hdrs
from neuro_logging import trace
from yarl import URL

from .errors import UploadError
from .image import ImageLayer, ImageManifest, create_digest

logger = logging.getLogger(__name__)


class BlobKind(str, enum.Enum):
    LAYER = "layers"
    IMAGE = "images"

    @property
    def extension(self) -> str:
        return ".squashfs" if self is BlobKind.LAYER else ".json"

    @property
    def media_type(self) -> str:
        if self is BlobKind.LAYER:
            return "application/octet-stream"
        return "application/json"


class RetryTCPConnector(aiohttp.TCPConnector):
    """Retries failed connection attempts before giving up."""

    def __init__(
        self, *, attempts: int = 30, retry_delay_s: float = 0.1, **kwargs: Any
    ) -> None:
        super().__init__(**kwargs)
        self._attempts = max(attempts, 1)
        self._retry_delay_s = retry_delay_s

    async def connect(self, req: Any, traces: Any, timeout: Any) -> Any:
        attempt = 1
        while True:
            try:
                return await super().connect(req, traces, timeout)
            except aiohttp.ClientConnectorError as exc:
                if attempt >= self._attempts:
                    raise
                logger.info(
                    "Failed to connect to %s (attempt %d/%d): %s",
                    req.url.origin(),
                    attempt,
                    self._attempts,
                    exc,
                )
                attempt += 1
                await asyncio.sleep(self._retry_delay_s)


class BlobstoreEndpoints:
    def __init__(self, url: URL) -> None:
        self._url = url

    @property
    def url(self) -> URL:
        return self._url

    def blob(self, repository: str, kind: BlobKind, digest: str) -> URL:
        return self._url / repository / kind.value / f"{digest}{kind.extension}"


class BlobstoreClient:
    """
    Publishes blobs under their SHA-512 digest with idempotent PUT requests.

    Uploading the same content twice targets the same URL. Connection retries
    are left to the session connector, failed requests are never retried here.
    """

    def __init__(self, session: aiohttp.ClientSession, url: URL) -> None:
        self._session = session
        self._endpoints = BlobstoreEndpoints(url)

    def layer_url(self, repository: str, layer: ImageLayer) -> URL:
        return self._endpoints.blob(repository, BlobKind.LAYER, layer.digest)

    def manifest_url(self, repository: str, manifest: ImageManifest) -> URL:
        return self._endpoints.blob(repository, BlobKind.IMAGE, manifest.digest)

    @trace
    async def upload_blob(self, repository: str, kind: BlobKind, data: bytes) -> URL:
        url = self._endpoints.blob(repository, kind, create_digest(data))
        await self.put(url, data, media_type=kind.media_type)
        return url

    @trace
    async def upload_layer(
        self, repository: str, layer: ImageLayer, path: Path
    ) -> ImageLayer:
        url = self.layer_url(repository, layer)
        logger.info("Uploading layer %r (%d bytes)", layer.digest, layer.length)
        with path.open("rb") as f:
            await self.put(url, f, media_type=BlobKind.LAYER.media_type)
        return layer.with_url(str(url))

    @trace
    async def upload_manifest(self, repository: str, manifest: ImageManifest) -> URL:
        data = manifest.to_json()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Uploading image manifest:\n%s", data.decode())
        url = await self.upload_blob(repository, BlobKind.IMAGE, data)
        logger.info("Uploaded image manifest %s", url)
        return url

    async def put(
        self,
        url: Union[str, URL],
        data: Any,
        media_type: Optional[str] = None,
    ) -> None:
        headers = {}
        if media_type:
            headers[aiohttp.hdrs.CONTENT_TYPE] = media_type
        async with self._session.put(url, data=data, headers=headers) as resp:
            if resp.status != 200:
                content = await resp.text()
                raise UploadError(str(url), resp.status, content or resp.reason)
