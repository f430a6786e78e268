from dataclasses import dataclass

from docker_image.reference import (
    InvalidReference as _InvalidImageReference,
    Reference as _ImageReference,
)


@dataclass(frozen=True)
class ImageReference:
    """
    https://github.com/docker/distribution/blob/master/reference/reference.go
    """

    domain: str = ""
    path: str = ""
    tag: str = ""
    digest: str = ""

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("blank reference path")

    @property
    def repository(self) -> str:
        if self.domain:
            return f"{self.domain}/{self.path}"
        return self.path

    def __str__(self) -> str:
        result = self.repository
        if self.tag:
            result += f":{self.tag}"
        if self.digest:
            result += f"@{self.digest}"
        return result

    @classmethod
    def parse(cls, ref_str: str) -> "ImageReference":
        try:
            ref = _ImageReference.parse_normalized_named(ref_str)
        except _InvalidImageReference as exc:
            raise ValueError(str(exc))
        domain, path = ref.split_hostname()
        digest = ref.get("digest") or ""
        tag = ref.get("tag") or ("" if digest else "latest")
        return cls(domain=domain, path=path, tag=tag, digest=digest)
