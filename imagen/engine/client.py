"""
HTTP client for the node-graph compute engine (ComfyUI API).

This is the only place the server talks HTTP to the engine. Progress for a
submitted job arrives separately over the engine's WebSocket (see
``imagen.engine.events``); whether a job finished is always decided here, by
polling ``/history/{job_id}``.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from imagen import config
from imagen.core.errors import (
    EngineNotInitializedError,
    EngineTimeoutError,
    SubmissionError,
    UploadError,
)

logger = logging.getLogger(__name__)

CLIENT_ID = f"imagen-server-{int(time.time() * 1000)}"

# Node class types that represent substantial work; each one counts as a
# progress step.
IMPORTANT_NODE_TYPES = frozenset(
    {
        "KSampler",
        "KSamplerAdvanced",
        "VAEDecode",
        "VAEEncode",
        "CLIPTextEncode",
        "VAEEncodeForInpaint",
        "SamplerCustomAdvanced",
        "SaveAnimatedWEBP",
        "VHS_VideoCombine",
        "stable-audio-open-generate",
        "TextEncodeAceStepAudio1.5",
        "Qwen3VoiceDesign",
        "Qwen3VoiceClone",
        "UnifiedTTSTextNode",
        "HeartMuLa_Generate",
    }
)

_AUDIO_CONTENT_TYPES = {
    "mp3": "audio/mpeg",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
    "flac": "audio/flac",
}


@dataclass
class UploadResult:
    filename: str
    kind: str
    response: str = ""


@dataclass
class CompletionStatus:
    completed: bool
    errored: bool = False
    data: dict[str, Any] = field(default_factory=dict)


class EngineClient:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url: str | None = None
        self._transport = transport

    def initialize(self, base_url: str | None = None) -> None:
        self.base_url = (base_url or config.COMFYUI_API_URL).rstrip("/")
        logger.info("Engine client initialized with API path: %s", self.base_url)

    @property
    def initialized(self) -> bool:
        return self.base_url is not None

    def _require_base_url(self) -> str:
        if self.base_url is None:
            raise EngineNotInitializedError(
                "Engine client not initialized, call initialize() first"
            )
        return self.base_url

    def _client(self, timeout: float = 30.0) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    async def upload_media(
        self,
        data: bytes,
        filename: str,
        kind: str = "image",
        storage_scope: str = "input",
        overwrite: bool = False,
    ) -> UploadResult:
        """Upload a file into the engine's storage.

        The engine accepts every media kind on ``/upload/image`` under the
        ``image`` form field.
        """
        base_url = self._require_base_url()
        if kind == "audio":
            ext = filename.rsplit(".", 1)[-1].lower()
            content_type = _AUDIO_CONTENT_TYPES.get(ext, "audio/mpeg")
        else:
            content_type = "image/png"

        logger.info("Uploading %s to engine: %s (type: %s)", kind, filename, storage_scope)
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{base_url}/upload/image",
                    files={"image": (filename, data, content_type)},
                    data={"type": storage_scope, "overwrite": str(overwrite).lower()},
                )
        except httpx.HTTPError as e:
            raise UploadError(f"Request failed for {filename}: {e}")

        if not resp.is_success:
            raise UploadError(
                f"Engine upload failed: {resp.status_code} {resp.reason_phrase}",
                details=resp.text,
            )
        return UploadResult(filename=filename, kind=kind, response=resp.text)

    async def submit(self, graph: dict[str, Any], client_id: str = CLIENT_ID) -> str:
        base_url = self._require_base_url()
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{base_url}/prompt",
                    json={"prompt": graph, "client_id": client_id},
                )
        except httpx.HTTPError as e:
            raise SubmissionError(f"Failed to submit workflow to engine: {e}")

        if not resp.is_success:
            raise SubmissionError(
                f"Engine rejected workflow: {resp.status_code} {resp.reason_phrase}",
                details=resp.text,
            )
        try:
            job_id = resp.json().get("prompt_id")
        except ValueError:
            job_id = None
        if not job_id:
            raise SubmissionError("Engine response did not include a prompt_id", details=resp.text)

        logger.info("Submitted workflow to engine, job id %s", job_id)
        return job_id

    async def await_completion(
        self,
        job_id: str,
        max_attempts: int | None = None,
        interval: float | None = None,
    ) -> CompletionStatus:
        """Poll ``/history/{job_id}`` until the job completes or reports an error.

        Failed status checks are logged and retried within the same attempt
        budget. Raises ``EngineTimeoutError`` once the budget is spent.
        """
        base_url = self._require_base_url()
        max_attempts = config.ENGINE_POLL_ATTEMPTS if max_attempts is None else max_attempts
        interval = config.ENGINE_POLL_INTERVAL if interval is None else interval

        async with self._client() as client:
            for attempt in range(max_attempts):
                try:
                    resp = await client.get(f"{base_url}/history/{job_id}")
                    resp.raise_for_status()
                    entry = resp.json().get(job_id)
                    if entry:
                        status = entry.get("status") or {}
                        if status.get("completed"):
                            logger.info("Job %s completed successfully", job_id)
                            return CompletionStatus(completed=True, data=entry)
                        if status.get("status_str") == "error":
                            logger.warning("Job %s failed with error", job_id)
                            return CompletionStatus(completed=False, errored=True, data=entry)
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(
                        "Error checking job status (attempt %d): %s", attempt + 1, e
                    )
                await asyncio.sleep(interval)

        raise EngineTimeoutError(
            f"Job {job_id} did not complete within {max_attempts * interval:g} seconds"
        )

    async def free_memory(self) -> None:
        """Ask the engine to unload models and release memory. Failures are only logged."""
        if self.base_url is None:
            return
        logger.info("Freeing engine memory...")
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.base_url}/free",
                    json={"unload_models": True, "free_memory": True},
                )
            if resp.is_success:
                logger.info("Engine memory freed successfully")
            else:
                logger.warning(
                    "Failed to free engine memory: %s %s", resp.status_code, resp.reason_phrase
                )
        except httpx.HTTPError as e:
            logger.error("Error freeing engine memory: %s", e)
