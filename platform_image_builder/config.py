from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from yarl import URL

from .image import DEFAULT_PLATFORM, ImagePlatform


@dataclass(frozen=True)
class BlobstoreConfig:
    url: URL = URL("http://blobstore.discoverd")
    connect_attempts: int = 30
    connect_retry_delay_s: float = 0.1


@dataclass(frozen=True)
class ControllerConfig:
    url: URL = URL("http://controller.discoverd")
    key: str = field(default="", repr=False)


@dataclass(frozen=True)
class DockerConfig:
    url: Optional[str] = None


@dataclass(frozen=True)
class SlugConfig:
    runner_artifact_id: str
    artifact_id: Optional[str] = None


@dataclass(frozen=True)
class Config:
    layer_dir: Path = Path("/var/lib/flynn/layer-cache")
    tmp_dir: Optional[Path] = None
    mksquashfs: Sequence[str] = ("mksquashfs",)
    platform: ImagePlatform = DEFAULT_PLATFORM
    blobstore: BlobstoreConfig = field(default_factory=BlobstoreConfig)
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    docker: DockerConfig = field(default_factory=DockerConfig)
    slug: Optional[SlugConfig] = None
