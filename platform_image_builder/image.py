from __future__ import annotations

import enum
import hashlib
import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import IO, Any, Optional


HASH_ALGORITHM = "sha512"
HASH_CHUNK_SIZE = 1024 * 1024  # 1 MB

DEFAULT_ENTRYPOINT = "_default"


def create_digest(data: str | bytes) -> str:
    data = data.encode() if isinstance(data, str) else data
    return hashlib.sha512(data).hexdigest()


def create_stream_digest(
    stream: IO[bytes], chunk_size: int = HASH_CHUNK_SIZE
) -> tuple[str, int]:
    """Return the SHA-512 hex digest and byte length of a binary stream."""
    h = hashlib.sha512()
    length = 0
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        h.update(chunk)
        length += len(chunk)
    return h.hexdigest(), length


def create_chain_id(*diff_ids: str) -> str:
    """
    https://github.com/opencontainers/image-spec/blob/main/config.md#layer-chainid
    """
    chain_id = diff_ids[0]
    for diff_id in diff_ids[1:]:
        digest = hashlib.sha256(f"{chain_id} {diff_id}".encode()).hexdigest()
        chain_id = "sha256:" + digest
    return chain_id


class ImageManifestType(str, enum.Enum):
    V1 = "application/vnd.flynn.image.manifest.v1+json"


class ImageLayerType(str, enum.Enum):
    SQUASHFS = "squashfs"


class ArtifactType(str, enum.Enum):
    FLYNN = "flynn"


@dataclass(frozen=True)
class DiffRecord:
    id: str
    tags: frozenset[str] = frozenset()


@dataclass(frozen=True)
class LayerChain:
    diff_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.diff_ids:
            raise ValueError("empty layer chain")

    @property
    def chain_id(self) -> str:
        return self.diff_ids[-1]


@dataclass(frozen=True)
class ImageConfig:
    working_dir: str = ""
    env: Sequence[str] = ()
    entrypoint: Sequence[str] = ()
    cmd: Sequence[str] = ()

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ImageConfig:
        return cls(
            working_dir=payload.get("WorkingDir") or "",
            env=tuple(payload.get("Env") or ()),
            entrypoint=_parse_command(payload.get("Entrypoint")),
            cmd=_parse_command(payload.get("Cmd")),
        )


def _parse_command(value: str | Iterable[str] | None) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class ImageLayer:
    type: ImageLayerType
    length: int
    hashes: Mapping[str, str]
    url: Optional[str] = None

    @property
    def digest(self) -> str:
        return self.hashes[HASH_ALGORITHM]

    def with_url(self, url: str) -> ImageLayer:
        return replace(self, url=url)

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ImageLayer:
        return cls(
            type=ImageLayerType(payload["type"]),
            length=int(payload["length"]),
            hashes=dict(payload["hashes"]),
            url=payload.get("url") or None,
        )

    def to_primitive(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "length": self.length,
            "hashes": dict(self.hashes),
        }
        if self.url:
            result["url"] = self.url
        return result


@dataclass(frozen=True)
class ImageEntrypoint:
    working_dir: str = ""
    env: Mapping[str, str] = field(default_factory=dict)
    args: Sequence[str] = ()

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ImageEntrypoint:
        return cls(
            working_dir=payload.get("working_dir", ""),
            env=dict(payload.get("env") or {}),
            args=tuple(payload.get("args") or ()),
        )

    def to_primitive(self) -> dict[str, Any]:
        return {
            "working_dir": self.working_dir,
            "env": dict(self.env),
            "args": list(self.args),
        }


@dataclass(frozen=True)
class ImagePlatform:
    architecture: str = "amd64"
    os: str = "linux"

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ImagePlatform:
        return cls(architecture=payload["architecture"], os=payload["os"])

    def to_primitive(self) -> dict[str, Any]:
        return {"architecture": self.architecture, "os": self.os}


DEFAULT_PLATFORM = ImagePlatform()


@dataclass(frozen=True)
class ImageRootfs:
    platform: ImagePlatform = DEFAULT_PLATFORM
    layers: Sequence[ImageLayer] = ()

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ImageRootfs:
        return cls(
            platform=ImagePlatform.parse(payload["platform"]),
            layers=tuple(ImageLayer.parse(p) for p in payload.get("layers") or ()),
        )

    def to_primitive(self) -> dict[str, Any]:
        return {
            "platform": self.platform.to_primitive(),
            "layers": [layer.to_primitive() for layer in self.layers],
        }


@dataclass(frozen=True)
class ImageManifest:
    type: ImageManifestType = ImageManifestType.V1
    entrypoints: Mapping[str, ImageEntrypoint] = field(default_factory=dict)
    rootfs: Sequence[ImageRootfs] = ()

    @property
    def layers(self) -> Sequence[ImageLayer]:
        return self.rootfs[0].layers if self.rootfs else ()

    def with_layers(self, layers: Iterable[ImageLayer]) -> ImageManifest:
        rootfs = list(self.rootfs)
        rootfs[0] = replace(rootfs[0], layers=tuple(layers))
        return replace(self, rootfs=tuple(rootfs))

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> ImageManifest:
        return cls(
            type=ImageManifestType(payload["type"]),
            entrypoints={
                name: ImageEntrypoint.parse(p)
                for name, p in (payload.get("entrypoints") or {}).items()
            },
            rootfs=tuple(ImageRootfs.parse(p) for p in payload.get("rootfs") or ()),
        )

    def to_primitive(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "entrypoints": {
                name: e.to_primitive() for name, e in self.entrypoints.items()
            },
            "rootfs": [r.to_primitive() for r in self.rootfs],
        }

    def to_json(self) -> bytes:
        # canonical form, the manifest is addressed by the digest of these bytes
        return json.dumps(
            self.to_primitive(), sort_keys=True, separators=(",", ":")
        ).encode()

    @property
    def digest(self) -> str:
        return create_digest(self.to_json())


@dataclass(frozen=True)
class Artifact:
    uri: str
    manifest: ImageManifest
    type: ArtifactType = ArtifactType.FLYNN
    meta: Mapping[str, str] = field(default_factory=dict)
    id: Optional[str] = None

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> Artifact:
        return cls(
            id=payload.get("id") or None,
            type=ArtifactType(payload["type"]),
            uri=payload["uri"],
            meta=dict(payload.get("meta") or {}),
            manifest=ImageManifest.parse(payload["manifest"]),
        )

    def to_primitive(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "type": self.type.value,
            "uri": self.uri,
            "meta": dict(self.meta),
            "manifest": self.manifest.to_primitive(),
        }
        if self.id:
            result["id"] = self.id
        return result
