import logging

from neuro_logging import trace

from .chain import resolve_chains
from .diff_provider import DiffProvider
from .image import DEFAULT_PLATFORM, ImageLayer, ImageManifest, ImagePlatform
from .layer_cache import LayerCache
from .manifest import create_manifest

logger = logging.getLogger(__name__)


class ImageBuilder:
    def __init__(
        self,
        diff_provider: DiffProvider,
        layer_cache: LayerCache,
        platform: ImagePlatform = DEFAULT_PLATFORM,
    ) -> None:
        self._diff_provider = diff_provider
        self._layer_cache = layer_cache
        self._platform = platform

    @trace
    async def build(self, name: str, *, group_by_tag: bool = False) -> ImageManifest:
        config = await self._diff_provider.lookup_image(name)
        history = await self._diff_provider.history(name)
        chains = resolve_chains(history, group_by_tag=group_by_tag)
        logger.info(
            "Building image %r: %d diffs, %d layers", name, len(history), len(chains)
        )
        layers: list[ImageLayer] = []
        for chain in chains:
            layers.append(await self._layer_cache.get_or_create(chain))
        return create_manifest(config, layers, platform=self._platform)
