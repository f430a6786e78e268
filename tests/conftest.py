import asyncio
import hashlib
import io
import json
import sys
import tarfile
import textwrap
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Any, Optional, Union

import aiohttp.web
import pytest

from platform_image_builder.diff_provider import DiffProvider
from platform_image_builder.errors import DiffNotFoundError
from platform_image_builder.image import (
    HASH_ALGORITHM,
    DiffRecord,
    ImageConfig,
    ImageLayer,
    ImageLayerType,
    create_digest,
)

FAKE_MKSQUASHFS = textwrap.dedent(
    """\
    import os
    import sys

    src, dst = sys.argv[1], sys.argv[2]
    with open(dst, "wb") as out:
        for root, dirs, files in os.walk(src):
            dirs.sort()
            for name in sorted(files):
                path = os.path.join(root, name)
                out.write(os.path.relpath(path, src).encode() + b"\\0")
                if os.path.islink(path):
                    out.write(b"-> " + os.readlink(path).encode())
                else:
                    with open(path, "rb") as f:
                        out.write(f.read())
                out.write(b"\\0")
    """
)

FAILING_MKSQUASHFS = textwrap.dedent(
    """\
    import sys

    print("FATAL ERROR: no space left on device", file=sys.stderr)
    sys.exit(3)
    """
)


@dataclass(frozen=True)
class ApiAddress:
    host: str
    port: int


@asynccontextmanager
async def create_local_app_server(
    app: aiohttp.web.Application, port: int = 8080
) -> AsyncIterator[ApiAddress]:
    runner = aiohttp.web.AppRunner(app)
    try:
        await runner.setup()
        api_address = ApiAddress("127.0.0.1", port)
        site = aiohttp.web.TCPSite(runner, api_address.host, api_address.port)
        await site.start()
        yield api_address
    finally:
        await runner.shutdown()
        await runner.cleanup()


async def wait_until(predicate: Callable[[], Any], timeout: float = 5) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


TarEntry = Union[bytes, str, None]


def make_tar(entries: Mapping[str, TarEntry]) -> bytes:
    """
    Build a tar archive: bytes are regular files, "->target" strings are
    symlinks and None is a directory.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            info.mtime = 0
            if content is None:
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif isinstance(content, str):
                info.type = tarfile.SYMTYPE
                info.linkname = content.removeprefix("->")
                tar.addfile(info)
            else:
                info.size = len(content)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def make_image_archive(
    path: Path,
    layers: Sequence[Mapping[str, TarEntry]],
    config: Optional[Mapping[str, Any]] = None,
    repo_tags: Sequence[str] = ("example:latest",),
    history: Optional[Sequence[Mapping[str, Any]]] = None,
) -> list[str]:
    """Write an image archive in the docker save format, return the diff ids."""
    layer_tars = [make_tar(entries) for entries in layers]
    diff_ids = ["sha256:" + hashlib.sha256(t).hexdigest() for t in layer_tars]
    image_config = {
        "architecture": "amd64",
        "os": "linux",
        "config": dict(config or {}),
        "rootfs": {"type": "layers", "diff_ids": diff_ids},
        "history": list(history or [{"created_by": "layer"} for _ in layer_tars]),
    }
    config_data = json.dumps(image_config).encode()
    config_name = hashlib.sha256(config_data).hexdigest() + ".json"
    layer_paths = [f"{i}/layer.tar" for i in range(len(layer_tars))]
    manifest = [
        {"Config": config_name, "RepoTags": list(repo_tags), "Layers": layer_paths}
    ]
    with tarfile.open(path, "w") as tar:
        members = [
            ("manifest.json", json.dumps(manifest).encode()),
            (config_name, config_data),
            *zip(layer_paths, layer_tars),
        ]
        for name, data in members:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return diff_ids


class InMemoryDiffProvider(DiffProvider):
    def __init__(
        self,
        diffs: Optional[Mapping[str, bytes]] = None,
        history: Sequence[DiffRecord] = (),
        config: ImageConfig = ImageConfig(),
    ) -> None:
        self._diffs = dict(diffs or {})
        self._history = list(history)
        self._config = config
        self.opened: list[str] = []

    async def lookup_image(self, name: str) -> ImageConfig:
        return self._config

    async def history(self, name: str) -> list[DiffRecord]:
        return list(self._history)

    @asynccontextmanager
    async def diff(self, diff_id: str) -> AsyncIterator[IO[bytes]]:
        if diff_id not in self._diffs:
            raise DiffNotFoundError(diff_id)
        self.opened.append(diff_id)
        yield io.BytesIO(self._diffs[diff_id])


class FakePackager:
    def __init__(self, gate: Optional[asyncio.Event] = None) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._gate = gate

    async def create_layer(self, diff_ids: Sequence[str]) -> ImageLayer:
        self.calls.append(tuple(diff_ids))
        if self._gate:
            await self._gate.wait()
        return ImageLayer(
            type=ImageLayerType.SQUASHFS,
            length=len(diff_ids),
            hashes={HASH_ALGORITHM: create_digest(" ".join(diff_ids))},
        )


@pytest.fixture
def layer_dir(tmp_path: Path) -> Path:
    path = tmp_path / "layers"
    path.mkdir()
    return path


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def mksquashfs(tmp_path: Path) -> tuple[str, ...]:
    script = tmp_path / "mksquashfs.py"
    script.write_text(FAKE_MKSQUASHFS)
    return (sys.executable, str(script))


@pytest.fixture
def failing_mksquashfs(tmp_path: Path) -> tuple[str, ...]:
    script = tmp_path / "failing_mksquashfs.py"
    script.write_text(FAILING_MKSQUASHFS)
    return (sys.executable, str(script))
