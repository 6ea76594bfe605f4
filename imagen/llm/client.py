import base64
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from imagen import config
from imagen.core.conditions import is_blank
from imagen.core.errors import PromptTaskError
from imagen.core.session import EngineSessionState
from imagen.core.workflows import TaskSpec

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def fill_placeholders(text: str, data: dict[str, Any], target: str | None = None) -> str:
    """Replace ``{{field}}`` markers with values from ``data``.

    Every referenced field must be present and non-blank.
    """
    missing = []

    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if is_blank(data.get(key)):
            missing.append(key)
            return match.group(0)
        return str(data[key])

    filled = _PLACEHOLDER.sub(_replace, text)
    if missing:
        placeholders = ", ".join(f"{{{{{key}}}}}" for key in missing)
        raise PromptTaskError(
            f'Generation task for "{target}": missing required data for placeholders: {placeholders}'
        )
    return filled


class LLMClient:
    """Client for an Ollama-compatible text/vision model server."""

    def __init__(
        self,
        session: EngineSessionState,
        base_url: str | None = None,
        use_cpu: bool | None = None,
        logs_dir: str | Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session = session
        self.base_url = (base_url or config.OLLAMA_API_URL).rstrip("/")
        self.use_cpu = config.OLLAMA_USE_CPU if use_cpu is None else use_cpu
        self.logs_dir = Path(logs_dir or config.LOGS_DIR)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # Model loading can take minutes on a cold start
        return httpx.AsyncClient(transport=self._transport, timeout=600.0)

    async def unload_model(self, model: str) -> None:
        logger.info("Unloading model: %s", model)
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.base_url}/api/generate", json={"model": model, "keep_alive": 0}
                )
            if resp.is_success:
                logger.info("Model %s unloaded successfully", model)
            else:
                logger.warning("Failed to unload model %s: %s", model, resp.status_code)
        except httpx.HTTPError as e:
            logger.error("Error unloading model %s: %s", model, e)

    async def list_models(self) -> list[str]:
        async with self._client() as client:
            resp = await client.get(f"{self.base_url}/api/tags")
        resp.raise_for_status()
        return [m["name"] for m in resp.json().get("models", [])]

    async def send_text_prompt(self, prompt: str, model: str, target: str | None = None) -> str:
        if not prompt:
            raise PromptTaskError("Prompt is required")
        return await self._generate({"model": model, "prompt": prompt}, target)

    async def send_image_prompt(
        self, image_path: str, prompt: str, model: str, target: str | None = None
    ) -> str:
        path = Path(image_path)
        if not path.is_file():
            raise PromptTaskError(f"Image file not found: {image_path}")
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        return await self._generate(
            {"model": model, "prompt": prompt, "images": [encoded]},
            target,
            image_path=image_path,
        )

    async def _generate(
        self, payload: dict[str, Any], target: str | None, image_path: str | None = None
    ) -> str:
        model = payload["model"]
        previous = self.session.switch_model(model)
        if previous:
            logger.info("Model changed from %s to %s, unloading previous model", previous, model)
            await self.unload_model(previous)

        payload = {**payload, "stream": False}
        if self.use_cpu:
            payload["options"] = {"num_gpu": 0}

        logger.info("Sending prompt to %s", model)
        try:
            async with self._client() as client:
                resp = await client.post(f"{self.base_url}/api/generate", json=payload)
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise PromptTaskError(f"Model request failed: {e}")
        if not isinstance(body, dict):
            raise PromptTaskError(f"Unexpected response from {model}: expected a JSON object")
        text = str(body.get("response") or "").strip()

        if not text:
            raise PromptTaskError(f"No response received from {model}")

        self._log_prompt(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "type": "image" if image_path else "text",
                "model": model,
                "imagePath": image_path,
                "prompt": payload["prompt"],
                "response": text,
                "to": target,
            }
        )
        return text

    def reset_prompt_log(self) -> None:
        """Start a fresh prompt log for a new top-level run."""
        path = self.logs_dir / "sent-prompt.json"
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            path.write_text("[]", encoding="utf-8")
        except OSError as e:
            logger.warning("Could not reset prompt log: %s", e)

    def _log_prompt(self, entry: dict[str, Any]) -> None:
        path = self.logs_dir / "sent-prompt.json"
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
            entries = json.loads(path.read_text(encoding="utf-8")) if path.exists() else []
            entries.append(entry)
            path.write_text(json.dumps(entries, indent=2), encoding="utf-8")
        except (OSError, ValueError) as e:
            logger.warning("Could not write prompt log: %s", e)

    async def apply_prompt_task(self, task: TaskSpec, data: dict[str, Any]) -> None:
        """Run a prompt or template task, writing the result to ``data[task.to]``."""
        target = task.to
        if not target:
            raise PromptTaskError('Generation task missing required "to" field')

        text = fill_placeholders(task.prompt or task.template or "", data, target)

        if task.prompt is None:
            data[target] = text
            logger.info("Stored template result in %s", target)
            return

        if not task.model:
            raise PromptTaskError(
                f'Generation task for "{target}": "model" is required when using "prompt"'
            )

        if task.image_path:
            image_path = data.get(task.image_path)
            if not image_path:
                raise PromptTaskError(
                    f"Generation task for \"{target}\": image path field "
                    f"'{task.image_path}' not found in data"
                )
            response = await self.send_image_prompt(image_path, text, task.model, target)
        else:
            response = await self.send_text_prompt(text, task.model, target)

        data[target] = response
        logger.info("Stored response in %s", target)
