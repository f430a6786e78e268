import json
import logging
from types import TracebackType
from typing import Any, Optional

import aiohttp
from neuro_logging import trace
from yarl import URL

from .config import ControllerConfig
from .errors import ArtifactNotFoundError, ControllerError
from .image import Artifact

logger = logging.getLogger(__name__)


class ControllerClient:
    def __init__(
        self,
        config: ControllerConfig,
        trace_configs: Optional[list[aiohttp.TraceConfig]] = None,
    ) -> None:
        self._config = config
        self._trace_configs = trace_configs
        self._client: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "ControllerClient":
        await self._init()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()

    async def _init(self) -> None:
        self._client = aiohttp.ClientSession(
            auth=aiohttp.BasicAuth("", self._config.key),
            trace_configs=self._trace_configs,
        )

    async def aclose(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    @property
    def _artifacts_url(self) -> URL:
        return self._config.url / "artifacts"

    @trace
    async def get_artifact(self, artifact_id: str) -> Artifact:
        assert self._client, "client is not initialized"
        async with self._client.get(self._artifacts_url / artifact_id) as resp:
            if resp.status == 404:
                raise ArtifactNotFoundError(artifact_id)
            await self._raise_for_status(resp)
            payload = await resp.json()
        return Artifact.parse(payload)

    @trace
    async def create_artifact(self, artifact: Artifact) -> Artifact:
        assert self._client, "client is not initialized"
        payload = artifact.to_primitive()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Creating artifact:\n%s", json.dumps(payload, indent=2))
        async with self._client.post(self._artifacts_url, json=payload) as resp:
            await self._raise_for_status(resp)
            resp_payload: dict[str, Any] = await resp.json()
        created = Artifact.parse(resp_payload)
        logger.info("Created artifact %r (%s)", created.id, created.uri)
        return created

    @classmethod
    async def _raise_for_status(cls, response: aiohttp.ClientResponse) -> None:
        if response.ok:
            return
        content = await response.text()
        raise ControllerError(
            f"Unexpected controller response {response.status}: {content}"
        )
