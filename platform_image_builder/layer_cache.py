import asyncio
import fcntl
import json
import logging
import os
from pathlib import Path
from types import TracebackType
from typing import Optional

from neuro_logging import trace

from .image import ImageLayer, LayerChain
from .squashfs import SquashfsPackager

logger = logging.getLogger(__name__)


# leases serialize layer builds of the same chain between processes
# sharing a layer directory
class LayerLease:
    def __init__(self, path: Path) -> None:
        self._path = path
        self._fd: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    async def __aenter__(self) -> "LayerLease":
        loop = asyncio.get_running_loop()
        while True:
            fd = os.open(self._path, os.O_CREAT | os.O_RDWR, 0o644)
            try:
                # flock(2) blocks, park it outside of the event loop
                await loop.run_in_executor(None, fcntl.flock, fd, fcntl.LOCK_EX)
                if _is_linked(fd, self._path):
                    break
            except BaseException:
                os.close(fd)
                raise
            # the previous holder removed the lock file, lock the new one
            os.close(fd)
        self._fd = fd
        logger.debug("Acquired lease %s", self._path)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        assert self._fd is not None, "lease is not acquired"
        fd, self._fd = self._fd, None
        try:
            self._path.unlink(missing_ok=True)
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
        logger.debug("Released lease %s", self._path)


def _is_linked(fd: int, path: Path) -> bool:
    try:
        stat = os.stat(path)
    except FileNotFoundError:
        return False
    fd_stat = os.fstat(fd)
    return (stat.st_dev, stat.st_ino) == (fd_stat.st_dev, fd_stat.st_ino)


class LayerCache:
    """
    Memoizes squashfs layers by chain id.

    A layer record is trusted as long as it exists: neither the blob file
    nor its digest are verified when the record is read.
    """

    def __init__(self, layer_dir: Path, packager: SquashfsPackager) -> None:
        self._layer_dir = layer_dir
        self._packager = packager

    def record_path(self, chain_id: str) -> Path:
        return self._layer_dir / f"{chain_id}.json"

    def lease(self, chain_id: str) -> LayerLease:
        return LayerLease(self._layer_dir / f"{chain_id}.json.lock")

    @trace
    async def get_or_create(self, chain: LayerChain) -> ImageLayer:
        record_path = self.record_path(chain.chain_id)
        async with self.lease(chain.chain_id):
            layer = self._read_record(record_path)
            if layer is not None:
                logger.info("Layer %r found in cache", chain.chain_id)
                return layer
            logger.info(
                "Creating layer %r from %d diffs", chain.chain_id, len(chain.diff_ids)
            )
            layer = await self._packager.create_layer(chain.diff_ids)
            self._write_record(record_path, layer)
            return layer

    def _read_record(self, path: Path) -> Optional[ImageLayer]:
        try:
            with path.open() as f:
                return ImageLayer.parse(json.load(f))
        except FileNotFoundError:
            return None

    def _write_record(self, path: Path, layer: ImageLayer) -> None:
        try:
            with path.open("w") as f:
                json.dump(layer.to_primitive(), f)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        logger.debug("Saved layer record %s", path)
