import logging
from pathlib import Path

from neuro_logging import trace

from .blobstore import BlobstoreClient
from .builder import ImageBuilder
from .config import SlugConfig
from .controller_client import ControllerClient
from .diff_provider import DiffProvider
from .errors import ConfigError
from .image import (
    DEFAULT_ENTRYPOINT,
    DEFAULT_PLATFORM,
    Artifact,
    ImageEntrypoint,
    ImageLayer,
    ImageManifest,
    ImagePlatform,
    ImageRootfs,
)
from .reference import ImageReference
from .squashfs import SquashfsPackager

logger = logging.getLogger(__name__)


DOCKER_REPOSITORY = "docker"
SLUG_REPOSITORY = "slugs"

SLUG_ENTRYPOINT = ImageEntrypoint(
    working_dir="/app",
    env={
        "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "TERM": "xterm",
        "HOME": "/app",
    },
    args=("/runner/init", "bash"),
)


class ImageImporter:
    """
    Imports Docker images as artifacts.

    Every layer is uploaded before the manifest referencing it, and the
    artifact is only created once all uploads have succeeded.
    """

    def __init__(
        self,
        diff_provider: DiffProvider,
        builder: ImageBuilder,
        packager: SquashfsPackager,
        blobstore: BlobstoreClient,
        controller: ControllerClient,
        repository: str = DOCKER_REPOSITORY,
    ) -> None:
        self._diff_provider = diff_provider
        self._builder = builder
        self._packager = packager
        self._blobstore = blobstore
        self._controller = controller
        self._repository = repository

    @trace
    async def import_image(self, url: str) -> Artifact:
        try:
            ref = ImageReference.parse(url)
        except ValueError as exc:
            raise ConfigError(f"Invalid image URL {url!r}: {exc}")
        name = str(ref)
        logger.info("Importing image %r", name)
        await self._diff_provider.pull(name)
        manifest = await self._builder.build(name, group_by_tag=False)

        layers: list[ImageLayer] = []
        for layer in manifest.layers:
            layers.append(
                await self._blobstore.upload_layer(
                    self._repository, layer, self._packager.blob_path(layer.digest)
                )
            )
        manifest = manifest.with_layers(layers)
        manifest_url = await self._blobstore.upload_manifest(self._repository, manifest)

        return await self._controller.create_artifact(
            Artifact(
                uri=str(manifest_url),
                manifest=manifest,
                meta={
                    "blobstore": "true",
                    "docker-receive.repository": ref.repository,
                    "docker-receive.digest": ref.digest,
                },
            )
        )


class SlugBuilder:
    """
    Creates slug artifacts: the slug directory is packaged as a single layer
    on top of the slug runner layers.
    """

    def __init__(
        self,
        packager: SquashfsPackager,
        blobstore: BlobstoreClient,
        controller: ControllerClient,
        config: SlugConfig,
        platform: ImagePlatform = DEFAULT_PLATFORM,
        repository: str = SLUG_REPOSITORY,
    ) -> None:
        self._packager = packager
        self._blobstore = blobstore
        self._controller = controller
        self._config = config
        self._platform = platform
        self._repository = repository

    @trace
    async def create_artifact(self, path: Path) -> Artifact:
        runner = await self._controller.get_artifact(self._config.runner_artifact_id)

        layer = await self._packager.create_layer_from_dir(path)
        layer = await self._blobstore.upload_layer(
            self._repository, layer, self._packager.blob_path(layer.digest)
        )

        manifest = ImageManifest(
            entrypoints={DEFAULT_ENTRYPOINT: SLUG_ENTRYPOINT},
            rootfs=(
                ImageRootfs(
                    platform=self._platform, layers=(*runner.manifest.layers, layer)
                ),
            ),
        )
        manifest_url = await self._blobstore.upload_manifest(self._repository, manifest)

        artifact = await self._controller.create_artifact(
            Artifact(
                id=self._config.artifact_id,
                uri=str(manifest_url),
                manifest=manifest,
                meta={"blobstore": "true"},
            )
        )
        return artifact
