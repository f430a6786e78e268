import asyncio
import hashlib
from pathlib import Path

import aiohttp
import pytest
from yarl import URL

from platform_image_builder.blobstore import (
    BlobKind,
    BlobstoreClient,
    RetryTCPConnector,
)
from platform_image_builder.errors import UploadError
from platform_image_builder.image import ImageConfig, ImageLayer, ImageLayerType
from platform_image_builder.manifest import create_manifest

from ..conftest import create_local_app_server
from .fakes import BlobstoreState, create_blobstore_app


class TestBlobstoreClient:
    async def test_upload_blob(
        self, blobstore_client: BlobstoreClient, blobstore_state: BlobstoreState
    ) -> None:
        digest = hashlib.sha512(b"{}").hexdigest()

        url = await blobstore_client.upload_blob("docker", BlobKind.IMAGE, b"{}")

        assert url.path == f"/docker/images/{digest}.json"
        assert blobstore_state.blobs == {url.path: b"{}"}
        assert blobstore_state.content_types[url.path] == "application/json"

    async def test_upload_blob_twice(
        self, blobstore_client: BlobstoreClient, blobstore_state: BlobstoreState
    ) -> None:
        url1 = await blobstore_client.upload_blob("docker", BlobKind.IMAGE, b"{}")
        url2 = await blobstore_client.upload_blob("docker", BlobKind.IMAGE, b"{}")

        assert url1 == url2
        assert blobstore_state.requests == [url1.path, url1.path]

    async def test_upload_layer(
        self,
        blobstore_client: BlobstoreClient,
        blobstore_state: BlobstoreState,
        blobstore_url: URL,
        tmp_path: Path,
    ) -> None:
        data = b"squashfs" * 1000
        digest = hashlib.sha512(data).hexdigest()
        path = tmp_path / f"{digest}.squashfs"
        path.write_bytes(data)
        layer = ImageLayer(
            type=ImageLayerType.SQUASHFS, length=len(data), hashes={"sha512": digest}
        )

        result = await blobstore_client.upload_layer("docker", layer, path)

        expected_url = blobstore_url / "docker" / "layers" / f"{digest}.squashfs"
        assert result == layer.with_url(str(expected_url))
        assert blobstore_client.layer_url("docker", layer) == expected_url
        assert blobstore_state.blobs == {expected_url.path: data}
        assert (
            blobstore_state.content_types[expected_url.path]
            == "application/octet-stream"
        )

    async def test_upload_manifest(
        self,
        blobstore_client: BlobstoreClient,
        blobstore_state: BlobstoreState,
    ) -> None:
        manifest = create_manifest(ImageConfig(cmd=("run",)), [])

        url = await blobstore_client.upload_manifest("docker", manifest)

        assert url == blobstore_client.manifest_url("docker", manifest)
        assert url.name == f"{manifest.digest}.json"
        assert blobstore_state.blobs[url.path] == manifest.to_json()

    async def test_manifest_url_deterministic(
        self, blobstore_client: BlobstoreClient
    ) -> None:
        manifest1 = create_manifest(ImageConfig(env=("A=1", "B=2")), [])
        manifest2 = create_manifest(ImageConfig(env=("A=1", "B=2")), [])

        assert blobstore_client.manifest_url(
            "docker", manifest1
        ) == blobstore_client.manifest_url("docker", manifest2)

    @pytest.mark.parametrize("status", [201, 404, 500])
    async def test_upload_unexpected_status(
        self,
        blobstore_client: BlobstoreClient,
        blobstore_state: BlobstoreState,
        status: int,
    ) -> None:
        blobstore_state.status = status

        with pytest.raises(UploadError, match=f"status {status}") as exc_info:
            await blobstore_client.upload_blob("docker", BlobKind.IMAGE, b"{}")

        assert exc_info.value.status == status
        assert "storage failure" in str(exc_info.value)
        assert len(blobstore_state.requests) == 1


class TestRetryTCPConnector:
    async def test_retries_until_available(
        self, blobstore_state: BlobstoreState, unused_tcp_port: int
    ) -> None:
        url = URL(f"http://127.0.0.1:{unused_tcp_port}")
        started = asyncio.Event()

        async def serve() -> None:
            await asyncio.sleep(0.3)
            app = create_blobstore_app(blobstore_state)
            async with create_local_app_server(app, port=unused_tcp_port):
                started.set()
                await asyncio.sleep(5)

        server = asyncio.create_task(serve())
        try:
            connector = RetryTCPConnector(attempts=100, retry_delay_s=0.05)
            async with aiohttp.ClientSession(connector=connector) as session:
                client = BlobstoreClient(session, url)
                blob_url = await client.upload_blob("docker", BlobKind.IMAGE, b"{}")
        finally:
            server.cancel()
            await asyncio.gather(server, return_exceptions=True)

        assert started.is_set()
        assert blobstore_state.blobs == {blob_url.path: b"{}"}

    async def test_gives_up(self, unused_tcp_port: int) -> None:
        url = URL(f"http://127.0.0.1:{unused_tcp_port}")
        connector = RetryTCPConnector(attempts=3, retry_delay_s=0.01)

        async with aiohttp.ClientSession(connector=connector) as session:
            client = BlobstoreClient(session, url)
            with pytest.raises(aiohttp.ClientConnectorError):
                await client.upload_blob("docker", BlobKind.IMAGE, b"{}")
