from __future__ import annotations

import abc
import json
import logging
import shutil
import sys
import tarfile
import tempfile
from collections.abc import AsyncIterator, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from types import TracebackType
from typing import IO, Any, Optional

from aiodocker import Docker, DockerError
from neuro_logging import trace

from .errors import DiffNotFoundError, ImageBuilderError, ImageNotFoundError
from .image import DiffRecord, ImageConfig, create_chain_id

logger = logging.getLogger(__name__)


class DiffProvider(abc.ABC):
    async def pull(self, name: str) -> None:
        pass

    @abc.abstractmethod
    async def lookup_image(self, name: str) -> ImageConfig:
        pass

    @abc.abstractmethod
    async def history(self, name: str) -> list[DiffRecord]:
        """Return the image diffs, oldest first."""

    @abc.abstractmethod
    def diff(self, diff_id: str) -> AbstractAsyncContextManager[IO[bytes]]:
        """Open the tar stream of a single diff."""


@dataclass(frozen=True)
class ArchiveImage:
    repo_tags: Sequence[str]
    config: Mapping[str, Any]
    diff_ids: Sequence[str]
    layer_paths: Sequence[str]

    @property
    def config_history(self) -> list[Mapping[str, Any]]:
        return list(self.config.get("history") or ())


class ArchiveDiffProvider(DiffProvider):
    """
    Serves diffs out of an image archive in the ``docker save`` format.

    Diffs are identified by their layer chain id, so a diff id identifies
    the layer together with all of its parents.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._images: Optional[list[ArchiveImage]] = None
        self._layer_paths: dict[str, str] = {}

    @property
    def path(self) -> Path:
        return self._path

    def _read_images(self) -> list[ArchiveImage]:
        if self._images is not None:
            return self._images
        logger.info("Reading image archive %s", self._path)
        images = []
        with tarfile.open(self._path) as tar:
            for entry in _read_json(tar, "manifest.json"):
                config = _read_json(tar, entry["Config"])
                image = ArchiveImage(
                    repo_tags=tuple(entry.get("RepoTags") or ()),
                    config=config,
                    diff_ids=tuple(config["rootfs"]["diff_ids"]),
                    layer_paths=tuple(entry["Layers"]),
                )
                if len(image.diff_ids) != len(image.layer_paths):
                    raise ImageBuilderError(
                        f"Image archive {str(self._path)!r} is corrupted: "
                        f"{len(image.diff_ids)} diff ids, "
                        f"{len(image.layer_paths)} layers"
                    )
                chain_ids = _create_chain_ids(image.diff_ids)
                for chain_id, layer_path in zip(chain_ids, image.layer_paths):
                    self._layer_paths[chain_id] = layer_path
                images.append(image)
        self._images = images
        return images

    def get_image(self, name: str) -> ArchiveImage:
        images = self._read_images()
        for image in images:
            if name in image.repo_tags:
                return image
        if len(images) == 1:
            return images[0]
        raise ImageNotFoundError(name)

    async def lookup_image(self, name: str) -> ImageConfig:
        image = self.get_image(name)
        return ImageConfig.from_payload(image.config.get("config") or {})

    async def history(self, name: str) -> list[DiffRecord]:
        image = self.get_image(name)
        records = [DiffRecord(id=c) for c in _create_chain_ids(image.diff_ids)]
        if records:
            records[-1] = replace(records[-1], tags=frozenset(image.repo_tags))
        return records

    def has_diff(self, diff_id: str) -> bool:
        self._read_images()
        return diff_id in self._layer_paths

    @asynccontextmanager
    async def diff(self, diff_id: str) -> AsyncIterator[IO[bytes]]:
        self._read_images()
        layer_path = self._layer_paths.get(diff_id)
        if layer_path is None:
            raise DiffNotFoundError(diff_id)
        with tarfile.open(self._path) as tar:
            f = tar.extractfile(layer_path)
            if f is None:
                raise DiffNotFoundError(diff_id)
            with f:
                yield f


def _create_chain_ids(diff_ids: Sequence[str]) -> list[str]:
    result: list[str] = []
    for diff_id in diff_ids:
        result.append(create_chain_id(result[-1], diff_id) if result else diff_id)
    return result


def _read_json(tar: tarfile.TarFile, name: str) -> Any:
    f = tar.extractfile(name)
    if f is None:
        raise ImageBuilderError(f"Image archive member {name!r} is not a file")
    with f:
        return json.load(f)


class DockerDiffProvider(DiffProvider):
    """
    Exports images from the local Docker daemon and serves their diffs.

    Docker history tags are attached to the diffs they point at, so
    intermediate tagged images can be used for grouping.
    """

    def __init__(
        self,
        docker: Docker,
        tmp_dir: Optional[Path] = None,
        chunk_size: int = 1024 * 1024,  # 1 MB
    ) -> None:
        self._docker = docker
        self._tmp_dir = tmp_dir
        self._chunk_size = chunk_size
        self._work_dir: Optional[Path] = None
        self._archives: dict[str, ArchiveDiffProvider] = {}

    async def __aenter__(self) -> DockerDiffProvider:
        self._work_dir = Path(
            tempfile.mkdtemp(prefix="docker-image-", dir=self._tmp_dir)
        )
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        self._archives.clear()
        if self._work_dir:
            shutil.rmtree(self._work_dir, ignore_errors=True)
            self._work_dir = None

    @trace
    async def pull(self, name: str) -> None:
        logger.info("Pulling image %r", name)
        try:
            await self._docker.images.pull(name)
        except DockerError as ex:
            if ex.status == 404:
                raise ImageNotFoundError(name)
            raise
        logger.info("Pulled image %r", name)
        self._archives.pop(name, None)

    @trace
    async def build(
        self, name: str, path: Path, output: Optional[IO[str]] = None
    ) -> None:
        """Build the ``path`` context as ``name``, streaming the build log."""
        assert self._work_dir, "provider is not initialized"
        output = output or sys.stderr
        context_path = self._work_dir / "build-context.tar"
        with tarfile.open(context_path, "w") as tar:
            tar.add(path, arcname=".")
        logger.info("Building image %r from %s", name, path)
        try:
            with context_path.open("rb") as f:
                async for chunk in self._docker.images.build(
                    fileobj=f, encoding="identity", tag=name, stream=True
                ):
                    if "error" in chunk:
                        raise ImageBuilderError(
                            f"error building docker image: {chunk['error']}"
                        )
                    output.write(chunk.get("stream", ""))
        except DockerError as ex:
            raise ImageBuilderError(f"error building docker image: {ex.message}")
        finally:
            context_path.unlink(missing_ok=True)
        output.flush()
        logger.info("Built image %r", name)
        self._archives.pop(name, None)

    @trace
    async def lookup_image(self, name: str) -> ImageConfig:
        try:
            payload = await self._docker.images.inspect(name)
        except DockerError as ex:
            if ex.status == 404:
                raise ImageNotFoundError(name)
            raise
        return ImageConfig.from_payload(payload.get("Config") or {})

    @trace
    async def history(self, name: str) -> list[DiffRecord]:
        archive = await self._export(name)
        records = await archive.history(name)
        image = archive.get_image(name)
        docker_history = await self._docker.images.history(name)
        layer_tags = collect_layer_tags(
            image.config_history, docker_history, len(records)
        )
        return [
            replace(record, tags=record.tags | tags)
            for record, tags in zip(records, layer_tags)
        ]

    @asynccontextmanager
    async def diff(self, diff_id: str) -> AsyncIterator[IO[bytes]]:
        for archive in self._archives.values():
            if archive.has_diff(diff_id):
                async with archive.diff(diff_id) as f:
                    yield f
                return
        raise DiffNotFoundError(diff_id)

    @trace
    async def _export(self, name: str) -> ArchiveDiffProvider:
        archive = self._archives.get(name)
        if archive:
            return archive
        assert self._work_dir, "provider is not initialized"
        path = self._work_dir / f"image-{len(self._archives)}.tar"
        logger.info("Exporting image %r to %s", name, path)
        try:
            async with self._docker.images.export_image(name) as content:
                with path.open("wb") as f:
                    async for chunk in content.iter_chunked(self._chunk_size):
                        f.write(chunk)
        except DockerError as ex:
            path.unlink(missing_ok=True)
            if ex.status == 404:
                raise ImageNotFoundError(name)
            raise
        logger.info("Exported image %r", name)
        archive = ArchiveDiffProvider(path)
        self._archives[name] = archive
        return archive


def collect_layer_tags(
    config_history: Sequence[Mapping[str, Any]],
    docker_history: Sequence[Mapping[str, Any]],
    layer_count: int,
) -> list[frozenset[str]]:
    """
    Map Docker history tags (newest entry first) onto layer indexes.

    A tag on an empty history entry belongs to the last layer below it.
    """
    tags: list[set[str]] = [set() for _ in range(layer_count)]
    if len(config_history) != len(docker_history):
        logger.warning(
            "Image history length mismatch (%d != %d), ignoring history tags",
            len(config_history),
            len(docker_history),
        )
        return [frozenset(t) for t in tags]
    index = -1
    for item, entry in zip(config_history, reversed(docker_history)):
        if not item.get("empty_layer"):
            index += 1
        if 0 <= index < layer_count:
            tags[index].update(
                t for t in entry.get("Tags") or () if t != "<none>:<none>"
            )
    return [frozenset(t) for t in tags]
