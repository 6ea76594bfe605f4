import asyncio
import json
import logging

import websockets

from imagen import config
from imagen.core.progress import ProgressChannel
from imagen.engine.client import CLIENT_ID

logger = logging.getLogger(__name__)


class EngineEventListener:
    """Relays the engine's WebSocket execution events into the progress channel.

    Events only ever move progress forward. Job success and failure are
    decided by the client's history poll, never here.
    """

    def __init__(
        self,
        channel: ProgressChannel,
        base_url: str | None = None,
        client_id: str = CLIENT_ID,
        reconnect_delay: float | None = None,
    ):
        self.channel = channel
        base_url = (base_url or config.COMFYUI_API_URL).rstrip("/")
        self.url = base_url.replace("http", "ws", 1) + f"/ws?clientId={client_id}"
        self.reconnect_delay = (
            config.WS_RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )

    async def run(self):
        while True:
            logger.info("Connecting to engine WebSocket at %s", self.url)
            try:
                async with websockets.connect(self.url, max_size=None) as ws:
                    logger.info("Connected to engine WebSocket")
                    async for raw in ws:
                        if isinstance(raw, bytes):
                            # Binary frames carry preview images
                            continue
                        self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Engine WebSocket unavailable: %s", e)
            logger.info(
                "Engine WebSocket closed, reconnecting in %ss", self.reconnect_delay
            )
            await asyncio.sleep(self.reconnect_delay)

    def handle_message(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.error("Unparseable engine message: %s", raw[:200])
            return

        kind = message.get("type")
        data = message.get("data") or {}
        job_id = data.get("prompt_id")

        if kind == "execution_start":
            logger.info("Execution started for job %s", job_id)
        elif kind == "executing":
            self._on_executing(job_id, data.get("node"))
        elif kind == "progress":
            self._on_progress(job_id, data)
        elif kind == "execution_cached":
            logger.debug("Cached nodes for job %s: %s", job_id, data.get("nodes"))
        elif kind == "execution_error":
            logger.error("Engine reported execution error for job %s: %s", job_id, data)
        elif kind == "execution_success":
            logger.info("Execution succeeded for job %s", job_id)

    def _on_executing(self, job_id: str | None, node: str | None):
        if job_id is None:
            return
        if node is None:
            logger.info("Execution finished for job %s", job_id)
            return
        # A newly started node has made no progress of its own yet
        progress = {"value": 0, "max": 0, "percentage": 0}
        self.channel.emit_progress(job_id, progress, node_id=node)

    def _on_progress(self, job_id: str | None, data: dict):
        if job_id is None:
            return
        value, maximum = data.get("value", 0), data.get("max", 0)
        progress = {
            "value": value,
            "max": maximum,
            "percentage": round(value / maximum * 100) if maximum else 0,
        }
        self.channel.emit_progress(job_id, progress, node_id=data.get("node"))
