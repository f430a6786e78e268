from collections.abc import Iterable, Sequence

from .image import (
    DEFAULT_ENTRYPOINT,
    DEFAULT_PLATFORM,
    ImageConfig,
    ImageEntrypoint,
    ImageLayer,
    ImageManifest,
    ImageManifestType,
    ImagePlatform,
    ImageRootfs,
)


def parse_env(entries: Iterable[str]) -> dict[str, str]:
    """
    Parse ``KEY=VALUE`` environment entries.

    Entries are split on the first ``=`` only, entries without ``=`` are
    dropped and a later duplicate key overwrites an earlier one.
    """
    env: dict[str, str] = {}
    for entry in entries:
        key, sep, value = entry.partition("=")
        if not sep:
            continue
        env[key] = value
    return env


def create_entrypoint(config: ImageConfig) -> ImageEntrypoint:
    return ImageEntrypoint(
        working_dir=config.working_dir,
        env=parse_env(config.env),
        args=(*config.entrypoint, *config.cmd),
    )


def create_manifest(
    config: ImageConfig,
    layers: Sequence[ImageLayer],
    platform: ImagePlatform = DEFAULT_PLATFORM,
) -> ImageManifest:
    return ImageManifest(
        type=ImageManifestType.V1,
        entrypoints={DEFAULT_ENTRYPOINT: create_entrypoint(config)},
        rootfs=(ImageRootfs(platform=platform, layers=tuple(layers)),),
    )
