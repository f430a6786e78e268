from typing import Optional


class ImageBuilderError(Exception):
    pass


class ConfigError(ImageBuilderError):
    pass


class ImageNotFoundError(ImageBuilderError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Image {name!r} not found")


class DiffNotFoundError(ImageBuilderError):
    def __init__(self, diff_id: str) -> None:
        super().__init__(f"Diff {diff_id!r} not found")


class PackagingError(ImageBuilderError):
    def __init__(self, returncode: int, output: str) -> None:
        super().__init__(f"mksquashfs error: exit status {returncode}: {output}")
        self.returncode = returncode
        self.output = output


class UploadError(ImageBuilderError):
    def __init__(self, url: str, status: int, reason: Optional[str] = None) -> None:
        message = f"Unexpected HTTP status {status} uploading {url}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.url = url
        self.status = status


class ControllerError(ImageBuilderError):
    pass


class ArtifactNotFoundError(ControllerError):
    def __init__(self, artifact_id: str) -> None:
        super().__init__(f"Artifact {artifact_id!r} not found")
