import asyncio
import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import IO, Optional

from neuro_logging import trace

from .diff_provider import DiffProvider
from .errors import PackagingError
from .image import HASH_ALGORITHM, ImageLayer, ImageLayerType, create_stream_digest

logger = logging.getLogger(__name__)


MKSQUASHFS = ("mksquashfs",)


class SquashfsPackager:
    """
    Packages image diffs into squashfs layers.

    Layers are stored in ``layer_dir`` under their SHA-512 digest, so equal
    content produced by different chains ends up in the same blob.
    """

    def __init__(
        self,
        layer_dir: Path,
        diff_provider: Optional[DiffProvider] = None,
        *,
        mksquashfs: Sequence[str] = MKSQUASHFS,
        tmp_dir: Optional[Path] = None,
    ) -> None:
        self._diff_provider = diff_provider
        self._layer_dir = layer_dir
        self._mksquashfs = tuple(mksquashfs)
        self._tmp_dir = tmp_dir

    @property
    def layer_dir(self) -> Path:
        return self._layer_dir

    def blob_path(self, digest: str) -> Path:
        return self._layer_dir / f"{digest}.squashfs"

    @trace
    async def create_layer(self, diff_ids: Sequence[str]) -> ImageLayer:
        """
        Apply the diffs in order to an empty directory and package the result.

        Whiteout entries (``.wh.*`` files) are not interpreted, they end up in
        the layer as regular files.
        """
        assert self._diff_provider, "diff provider is not configured"
        extract_dir = tempfile.mkdtemp(prefix="docker-layer-", dir=self._tmp_dir)
        try:
            for diff_id in diff_ids:
                logger.info("Applying diff %r", diff_id)
                async with self._diff_provider.diff(diff_id) as stream:
                    apply_diff(stream, Path(extract_dir))
            return await self.create_layer_from_dir(Path(extract_dir))
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

    @trace
    async def create_layer_from_dir(self, path: Path) -> ImageLayer:
        fd, tmp_name = tempfile.mkstemp(prefix="squashfs-", dir=self._layer_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            await self._run_mksquashfs(path, tmp_path)
            with tmp_path.open("rb") as f:
                digest, length = create_stream_digest(f)
            tmp_path.replace(self.blob_path(digest))
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.info("Created squashfs layer %r, %d bytes", digest, length)
        return ImageLayer(
            type=ImageLayerType.SQUASHFS,
            length=length,
            hashes={HASH_ALGORITHM: digest},
        )

    async def _run_mksquashfs(self, src: Path, dst: Path) -> None:
        cmd = [*self._mksquashfs, str(src), str(dst), "-noappend"]
        logger.debug("Running command: %s", " ".join(cmd))
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        output, _ = await process.communicate()
        if process.returncode:
            raise PackagingError(
                process.returncode, output.decode(errors="replace").strip()
            )


def apply_diff(stream: IO[bytes], dest: Path) -> None:
    """Extract a diff tar stream on top of the ``dest`` tree."""
    root = os.path.realpath(dest)
    with tarfile.open(fileobj=stream, mode="r|*") as tar:
        for member in tar:
            _remove_existing(root, member)
            tar.extract(member, root, filter=_diff_filter)


def _remove_existing(root: str, member: tarfile.TarInfo) -> None:
    # entries of a later diff replace whatever an earlier diff left there
    path = os.path.join(root, member.name.lstrip("/"))
    parent = os.path.realpath(os.path.dirname(path))
    if os.path.commonpath([parent, root]) != root:
        # rejected by the extraction filter
        return
    target = os.path.join(parent, os.path.basename(path))
    if not os.path.lexists(target):
        return
    if os.path.isdir(target) and not os.path.islink(target):
        if not member.isdir():
            shutil.rmtree(target)
    else:
        os.unlink(target)


def _diff_filter(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    # members must stay inside the tree, file modes are kept as is
    filtered = tarfile.tar_filter(member, dest_path)
    return filtered.replace(mode=member.mode, deep=False)
