import os
import shlex
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

from yarl import URL

from .config import (
    BlobstoreConfig,
    Config,
    ControllerConfig,
    DockerConfig,
    SlugConfig,
)
from .image import ImagePlatform


class EnvironConfigFactory:
    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = os.environ if environ is None else environ

    def create(self) -> Config:
        tmp_dir = self._environ.get("NP_TMP_DIR")
        mksquashfs = self._environ.get("NP_MKSQUASHFS")
        return Config(
            layer_dir=Path(self._environ.get("NP_LAYER_DIR", str(Config.layer_dir))),
            tmp_dir=Path(tmp_dir) if tmp_dir else None,
            mksquashfs=(
                tuple(shlex.split(mksquashfs)) if mksquashfs else Config.mksquashfs
            ),
            platform=self.create_platform(),
            blobstore=self.create_blobstore(),
            controller=self.create_controller(),
            docker=self.create_docker(),
            slug=self.create_slug(),
        )

    def create_platform(self) -> ImagePlatform:
        return ImagePlatform(
            architecture=self._environ.get(
                "NP_PLATFORM_ARCHITECTURE", ImagePlatform.architecture
            ),
            os=self._environ.get("NP_PLATFORM_OS", ImagePlatform.os),
        )

    def create_blobstore(self) -> BlobstoreConfig:
        return BlobstoreConfig(
            url=URL(self._environ.get("NP_BLOBSTORE_URL", str(BlobstoreConfig.url))),
            connect_attempts=int(
                self._environ.get(
                    "NP_BLOBSTORE_CONNECT_ATTEMPTS", BlobstoreConfig.connect_attempts
                )
            ),
            connect_retry_delay_s=float(
                self._environ.get(
                    "NP_BLOBSTORE_CONNECT_RETRY_DELAY",
                    BlobstoreConfig.connect_retry_delay_s,
                )
            ),
        )

    def create_controller(self) -> ControllerConfig:
        return ControllerConfig(
            url=URL(
                self._environ.get("NP_CONTROLLER_URL", str(ControllerConfig.url))
            ),
            key=self._environ.get("NP_CONTROLLER_KEY", ControllerConfig.key),
        )

    def create_docker(self) -> DockerConfig:
        return DockerConfig(url=self._environ.get("NP_DOCKER_URL"))

    def create_slug(self) -> Optional[SlugConfig]:
        if "NP_SLUGRUNNER_ARTIFACT_ID" not in self._environ:
            return None

        return SlugConfig(
            runner_artifact_id=self._environ["NP_SLUGRUNNER_ARTIFACT_ID"],
            artifact_id=self._environ.get("NP_SLUG_ARTIFACT_ID"),
        )
