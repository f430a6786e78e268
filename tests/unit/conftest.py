from collections.abc import AsyncIterator
from typing import Any

import aiohttp
import pytest
from yarl import URL

from platform_image_builder.blobstore import BlobstoreClient
from platform_image_builder.config import ControllerConfig

from ..conftest import create_local_app_server
from .fakes import (
    BlobstoreState,
    ControllerState,
    create_blobstore_app,
    create_controller_app,
)


@pytest.fixture
def blobstore_state() -> BlobstoreState:
    return BlobstoreState()


@pytest.fixture
async def blobstore_url(
    blobstore_state: BlobstoreState, unused_tcp_port_factory: Any
) -> AsyncIterator[URL]:
    app = create_blobstore_app(blobstore_state)
    port = unused_tcp_port_factory()
    async with create_local_app_server(app, port=port) as address:
        yield URL(f"http://{address.host}:{address.port}")


@pytest.fixture
async def blobstore_client(blobstore_url: URL) -> AsyncIterator[BlobstoreClient]:
    async with aiohttp.ClientSession() as session:
        yield BlobstoreClient(session, blobstore_url)


@pytest.fixture
def controller_state() -> ControllerState:
    return ControllerState()


@pytest.fixture
async def controller_config(
    controller_state: ControllerState, unused_tcp_port_factory: Any
) -> AsyncIterator[ControllerConfig]:
    app = create_controller_app(controller_state)
    port = unused_tcp_port_factory()
    async with create_local_app_server(app, port=port) as address:
        yield ControllerConfig(
            url=URL(f"http://{address.host}:{address.port}"), key="secret"
        )
