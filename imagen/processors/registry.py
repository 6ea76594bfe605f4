"""
Process task dispatch.

Workflow JSON names a process by string; the name is resolved to a
``ProcessKind`` once and every kind has exactly one handler. Handlers share
the signature ``async (parameters, generation_data, context) -> None``,
mutate ``generation_data`` in place and raise ``ProcessTaskError`` when they
cannot do their job.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable

from imagen.core.errors import ProcessTaskError
from imagen.processors import crossfade, crossfade_audio, extract_media, extract_texts, nested
from imagen.processors.kinds import ProcessKind, resolve_process_kind

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any], dict[str, Any], "ExecutionContext"], Awaitable[None]]


@dataclass
class ExecutionContext:
    storage_dir: Path
    # Runs a named workflow silently and returns its result data
    run_workflow: Callable[[str, dict[str, Any]], Awaitable[dict[str, Any]]] | None = None
    # Uploads (data, filename, kind) to the engine and returns the stored name
    upload: Callable[[bytes, str, str], Awaitable[str]] | None = None
    extras: dict[str, Any] = field(default_factory=dict)


PROCESS_HANDLERS: dict[ProcessKind, Handler] = {
    ProcessKind.EXTRACT_TEXT_OUTPUTS: extract_texts.extract_output_texts,
    ProcessKind.EXTRACT_MEDIA_FROM_TEXT_POINTER: extract_media.extract_output_media,
    ProcessKind.LOOP_CROSSFADE: crossfade.crossfade_video_frames,
    ProcessKind.AUDIO_CROSSFADE: crossfade_audio.crossfade_audio_clip,
    ProcessKind.EXECUTE_WORKFLOW: nested.execute_workflow,
}

_unhandled = set(ProcessKind) - set(PROCESS_HANDLERS)
if _unhandled:
    raise RuntimeError(f"Process kinds without a handler: {sorted(k.value for k in _unhandled)}")


async def run_process(
    process: str | ProcessKind,
    parameters: dict[str, Any],
    generation_data: dict[str, Any],
    context: ExecutionContext,
) -> None:
    kind = process if isinstance(process, ProcessKind) else resolve_process_kind(process)
    logger.info("Running process %s", kind.value)
    try:
        await PROCESS_HANDLERS[kind](parameters or {}, generation_data, context)
    except ProcessTaskError:
        raise
    except OSError as e:
        raise ProcessTaskError(f"{kind.value} failed: {e}")
