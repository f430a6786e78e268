import asyncio
import json
import logging
import shutil
import sys
import tempfile
from collections.abc import AsyncIterator, Coroutine
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import Any, TypeVar

import aiohttp
from aiodocker import Docker, DockerError
from neuro_logging import init_logging

from .blobstore import BlobstoreClient, RetryTCPConnector
from .builder import ImageBuilder
from .config import BlobstoreConfig, Config
from .config_factory import EnvironConfigFactory
from .controller_client import ControllerClient
from .diff_provider import DockerDiffProvider
from .errors import ConfigError, ImageBuilderError
from .image import Artifact, ImageManifest
from .layer_cache import LayerCache
from .service import ImageImporter, SlugBuilder
from .squashfs import SquashfsPackager
from .utils import format_bytes_size

logger = logging.getLogger(__name__)

T = TypeVar("T")


@asynccontextmanager
async def create_blobstore_client(
    config: BlobstoreConfig,
) -> AsyncIterator[BlobstoreClient]:
    logger.info("Initializing blobstore client")
    connector = RetryTCPConnector(
        attempts=config.connect_attempts,
        retry_delay_s=config.connect_retry_delay_s,
    )
    async with aiohttp.ClientSession(connector=connector) as session:
        yield BlobstoreClient(session, config.url)


@asynccontextmanager
async def create_docker_diff_provider(
    config: Config,
) -> AsyncIterator[DockerDiffProvider]:
    logger.info("Initializing docker client")
    async with Docker(config.docker.url) as docker:
        async with DockerDiffProvider(docker, tmp_dir=config.tmp_dir) as provider:
            yield provider


def create_layer_dir(config: Config, group_by_tag: bool) -> Path:
    # grouped and ungrouped builds key different layers by the same chain id
    layer_dir = config.layer_dir / ("by-tag" if group_by_tag else "by-diff")
    layer_dir.mkdir(parents=True, exist_ok=True)
    return layer_dir


def create_packager(
    config: Config, diff_provider: DockerDiffProvider, layer_dir: Path
) -> SquashfsPackager:
    return SquashfsPackager(
        layer_dir,
        diff_provider,
        mksquashfs=config.mksquashfs,
        tmp_dir=config.tmp_dir,
    )


async def build_image(config: Config, name: str, path: Path) -> ImageManifest:
    async with create_docker_diff_provider(config) as diff_provider:
        await diff_provider.build(name, path)
        layer_dir = create_layer_dir(config, group_by_tag=True)
        packager = create_packager(config, diff_provider, layer_dir)
        builder = ImageBuilder(
            diff_provider, LayerCache(layer_dir, packager), platform=config.platform
        )
        return await builder.build(name, group_by_tag=True)


async def receive_docker_image(config: Config, url: str) -> Artifact:
    async with AsyncExitStack() as exit_stack:
        diff_provider = await exit_stack.enter_async_context(
            create_docker_diff_provider(config)
        )
        blobstore = await exit_stack.enter_async_context(
            create_blobstore_client(config.blobstore)
        )
        controller = await exit_stack.enter_async_context(
            ControllerClient(config.controller)
        )
        layer_dir = create_layer_dir(config, group_by_tag=False)
        packager = create_packager(config, diff_provider, layer_dir)
        builder = ImageBuilder(
            diff_provider, LayerCache(layer_dir, packager), platform=config.platform
        )
        importer = ImageImporter(
            diff_provider=diff_provider,
            builder=builder,
            packager=packager,
            blobstore=blobstore,
            controller=controller,
        )
        return await importer.import_image(url)


async def create_slug_artifact(config: Config, path: Path) -> Artifact:
    if not config.slug:
        raise ConfigError("NP_SLUGRUNNER_ARTIFACT_ID is required")
    async with AsyncExitStack() as exit_stack:
        blobstore = await exit_stack.enter_async_context(
            create_blobstore_client(config.blobstore)
        )
        controller = await exit_stack.enter_async_context(
            ControllerClient(config.controller)
        )
        # the slug layer is not cached, it is removed once uploaded
        layer_dir = Path(tempfile.mkdtemp(prefix="slug-", dir=config.tmp_dir))
        exit_stack.callback(shutil.rmtree, layer_dir, ignore_errors=True)
        packager = SquashfsPackager(
            layer_dir,
            mksquashfs=config.mksquashfs,
            tmp_dir=config.tmp_dir,
        )
        slug_builder = SlugBuilder(
            packager=packager,
            blobstore=blobstore,
            controller=controller,
            config=config.slug,
            platform=config.platform,
        )
        return await slug_builder.create_artifact(path)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except (ImageBuilderError, DockerError, aiohttp.ClientError, OSError) as exc:
        logger.error("ERROR: %s", exc)
        sys.exit(1)


def _get_argument(usage: str) -> str:
    if len(sys.argv) != 2:
        print(f"usage: {sys.argv[0]} {usage}", file=sys.stderr)
        sys.exit(1)
    return sys.argv[1]


def main() -> None:  # pragma: no coverage
    init_logging()
    name = _get_argument("NAME")
    config = EnvironConfigFactory().create()
    logger.info("Loaded config: %r", config)
    manifest = _run(build_image(config, name, Path.cwd()))
    print(json.dumps(manifest.to_primitive()))


def docker_receive_main() -> None:  # pragma: no coverage
    init_logging()
    url = _get_argument("URL")
    config = EnvironConfigFactory().create()
    logger.info("Loaded config: %r", config)
    artifact = _run(receive_docker_image(config, url))
    logger.info("Created artifact %r", artifact.id)


def slug_artifact_main() -> None:  # pragma: no coverage
    init_logging()
    path = _get_argument("DIR")
    config = EnvironConfigFactory().create()
    logger.info("Loaded config: %r", config)
    artifact = _run(create_slug_artifact(config, Path(path)))
    slug_layer = artifact.manifest.layers[-1]
    print(f"-----> Compiled slug size is {format_bytes_size(slug_layer.length)}")
