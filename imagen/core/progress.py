"""
Progress channel: the registry of in-flight generation runs and the push
stream their subscribers read.

A client usually subscribes after the generation request has returned, so
work may already have emitted events. Every event emitted while a run has no
subscriber is kept in a bounded per-run FIFO; the next subscriber receives
that backlog in order before live events. Engine events arrive keyed by the
engine's job id, orchestrator events by task id, so lookups accept either.

Progress is step based. A run's ``total_steps`` counts countable tasks and
the important nodes of its graph. When an engine event names an important
node that has not been counted yet, the step counter advances once, and the
node's own percentage is interpolated inside that step.
"""

import asyncio
import logging
import random
import string
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any

from imagen import config
from imagen.core.models import EventStatus, GenerationRun, RunPhase

logger = logging.getLogger(__name__)

_CLOSE = object()

_NODE_LABELS = [
    (("KSampler", "Sampler"), "Sampling image..."),
    (("VAE Decode", "VAEDecode"), "Decoding image..."),
    (("VAE Encode", "VAEEncode"), "Encoding image..."),
    (("Save",), "Saving image..."),
    (("CLIP", "Encode"), "Encoding prompt..."),
    (("Checkpoint", "Loader"), "Loading model..."),
    (("Upscale",), "Upscaling image..."),
]


def generate_task_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"task_{int(time.time() * 1000)}_{suffix}"


def node_label(graph: dict[str, Any] | None, node_id: str | None) -> str:
    if not node_id or not graph or node_id not in graph:
        return "Processing..."
    node = graph.get(node_id) or {}
    title = (node.get("_meta") or {}).get("title") or node.get("class_type") or node_id
    for patterns, label in _NODE_LABELS:
        if any(p in title for p in patterns):
            return label
    return f"Processing {title}..."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Subscription:
    """One attached client. Iterate it to receive events; it ends after a terminal event."""

    def __init__(self, channel: "ProgressChannel", task_id: str):
        self.task_id = task_id
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, event: dict) -> None:
        self._queue.put_nowait(event)

    def close(self) -> None:
        self._queue.put_nowait(_CLOSE)

    async def get(self) -> dict | None:
        event = await self._queue.get()
        return None if event is _CLOSE else event

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        try:
            while True:
                event = await self.get()
                if event is None:
                    return
                yield event
                if event["status"] != EventStatus.IN_PROGRESS.value:
                    return
        finally:
            self._channel.unsubscribe(self)


class ProgressChannel:
    def __init__(self, cleanup_delay: float | None = None, buffer_size: int | None = None):
        self.cleanup_delay = (
            config.TASK_CLEANUP_DELAY if cleanup_delay is None else cleanup_delay
        )
        self.buffer_size = config.EVENT_BUFFER_SIZE if buffer_size is None else buffer_size
        self._runs: dict[str, GenerationRun] = {}
        self._job_index: dict[str, str] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

    # ── Run registry ────────────────────────────────────────────────────────

    def create_run(self, task_id: str, **metadata) -> GenerationRun:
        run = GenerationRun(
            task_id=task_id, buffer=deque(maxlen=self.buffer_size), **metadata
        )
        self._runs[task_id] = run
        return run

    def get_run(self, task_or_job_id: str) -> GenerationRun | None:
        task_id = self._job_index.get(task_or_job_id, task_or_job_id)
        return self._runs.get(task_id)

    def update_run(self, task_id: str, **fields) -> None:
        run = self._runs.get(task_id)
        if run is None:
            return
        if run.phase.terminal:
            logger.debug("Ignoring update for finished task %s", task_id)
            return
        for key, value in fields.items():
            if not hasattr(run, key):
                raise ValueError(f"GenerationRun has no field '{key}'")
            setattr(run, key, value)

    def delete_run(self, task_id: str) -> None:
        handle = self._cleanup_handles.pop(task_id, None)
        if handle:
            handle.cancel()
        run = self._runs.pop(task_id, None)
        if run is None:
            return
        if run.job_id:
            self._job_index.pop(run.job_id, None)
        for subscription in list(run.subscribers):
            subscription.close()
        run.subscribers.clear()
        logger.info("Cleaned up task %s", task_id)

    def link_external_job_id(self, task_id: str, job_id: str) -> None:
        run = self._runs.get(task_id)
        if run is None:
            return
        if run.job_id and run.job_id != job_id:
            self._job_index.pop(run.job_id, None)
        run.job_id = job_id
        self._job_index[job_id] = task_id

    # ── Step counter ────────────────────────────────────────────────────────

    def advance_step(self, task_id: str, count: int = 1) -> int:
        run = self._runs.get(task_id)
        if run is None:
            return 0
        if not run.phase.terminal:
            run.current_step = min(run.current_step + count, run.total_steps)
        return run.current_step

    def set_step(self, task_id: str, value: int) -> int:
        """Resynchronise the counter; it never moves backwards or past the total."""
        run = self._runs.get(task_id)
        if run is None:
            return 0
        if not run.phase.terminal:
            run.current_step = max(run.current_step, min(value, run.total_steps))
        return run.current_step

    def step_progress(self, task_id: str) -> dict[str, int]:
        run = self._runs.get(task_id)
        if run is None or not run.total_steps:
            return {"percentage": 0, "value": 0, "max": 0}
        return {
            "percentage": round(run.current_step / run.total_steps * 100),
            "value": run.current_step,
            "max": run.total_steps,
        }

    # ── Emission ────────────────────────────────────────────────────────────

    def emit_progress(
        self,
        task_or_job_id: str,
        progress: dict[str, Any] | None = None,
        label: str | None = None,
        node_id: str | None = None,
    ) -> None:
        run = self.get_run(task_or_job_id)
        if run is None or run.phase.terminal:
            return

        progress = progress or {}
        percentage = progress.get("percentage", run.percentage)
        value = progress.get("value", run.current_step)
        maximum = progress.get("max", run.total_steps)

        if node_id is not None:
            label = node_label(run.graph, node_id)
            value, maximum = run.current_step, run.total_steps
            if node_id in run.important_nodes and run.total_steps:
                if node_id not in run.processed_nodes:
                    run.processed_nodes.add(node_id)
                    run.current_step = min(run.current_step + 1, run.total_steps)
                node_fraction = (progress.get("percentage") or 0) / 100
                base = (run.current_step - 1) / run.total_steps
                percentage = round((base + node_fraction / run.total_steps) * 100)
                value = run.current_step
            else:
                percentage = run.percentage

        percentage = max(0, min(100, int(percentage)))
        run.percentage = percentage
        run.label = label or "Processing..."

        self._dispatch(
            run,
            self._message(
                run,
                EventStatus.IN_PROGRESS,
                {
                    "percentage": percentage,
                    "currentStep": run.label,
                    "currentValue": value,
                    "maxValue": maximum,
                },
            ),
        )

    def emit_completion(self, task_or_job_id: str, result: dict[str, Any]) -> None:
        run = self.get_run(task_or_job_id)
        if run is None or run.phase.terminal:
            return
        maximum = result.get("totalSteps") or run.total_steps or 1
        run.current_step = run.total_steps
        run.percentage = 100
        run.label = "Complete"
        run.result = result
        run.phase = RunPhase.COMPLETED
        self._dispatch(run, self._terminal_message(run, maximum))
        self._schedule_cleanup(run.task_id)

    def emit_error(self, task_or_job_id: str, message: str, details: str | None = None) -> None:
        run = self.get_run(task_or_job_id)
        if run is None or run.phase.terminal:
            return
        run.label = "Failed"
        run.error = {
            "message": message or "Generation failed",
            "details": details or "Unknown error",
        }
        run.phase = RunPhase.FAILED
        self._dispatch(run, self._terminal_message(run))
        self._schedule_cleanup(run.task_id)

    # ── Subscriptions ───────────────────────────────────────────────────────

    def subscribe(self, task_id: str) -> Subscription | None:
        run = self._runs.get(task_id)
        if run is None:
            return None

        subscription = Subscription(self, task_id)
        if run.buffer:
            logger.info(
                "Replaying %d buffered message(s) for task %s", len(run.buffer), task_id
            )
            for event in run.buffer:
                subscription.push(event)
            run.buffer.clear()
        elif run.phase.terminal:
            subscription.push(self._terminal_message(run))
        else:
            subscription.push(
                self._message(
                    run,
                    EventStatus.IN_PROGRESS,
                    {
                        "percentage": run.percentage,
                        "currentStep": run.label,
                        "currentValue": run.current_step,
                        "maxValue": run.total_steps,
                    },
                )
            )
        run.subscribers.add(subscription)
        logger.info("Client subscribed to task %s", task_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        run = self._runs.get(subscription.task_id)
        if run is not None:
            run.subscribers.discard(subscription)

    # ── Internals ───────────────────────────────────────────────────────────

    def _dispatch(self, run: GenerationRun, message: dict) -> None:
        if not run.subscribers:
            run.buffer.append(message)
            return
        for subscription in list(run.subscribers):
            subscription.push(message)

    def _message(self, run: GenerationRun, status: EventStatus, progress: dict, **extra) -> dict:
        return {
            "taskId": run.task_id,
            "status": status.value,
            "progress": progress,
            **extra,
            "timestamp": _now(),
        }

    def _terminal_message(self, run: GenerationRun, maximum: int | None = None) -> dict:
        if run.phase == RunPhase.FAILED:
            return self._message(
                run,
                EventStatus.ERROR,
                {"percentage": 0, "currentStep": "Failed", "currentValue": 0, "maxValue": 0},
                error=run.error,
            )
        maximum = maximum or (run.result or {}).get("totalSteps") or run.total_steps or 1
        return self._message(
            run,
            EventStatus.COMPLETED,
            {
                "percentage": 100,
                "currentStep": "Complete",
                "currentValue": maximum,
                "maxValue": maximum,
            },
            result=run.result,
        )

    def _schedule_cleanup(self, task_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._cleanup_handles[task_id] = loop.call_later(
            self.cleanup_delay, self.delete_run, task_id
        )
