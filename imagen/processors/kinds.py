from enum import Enum

from imagen.core.errors import ProcessTaskError


class ProcessKind(str, Enum):
    """Process handlers a workflow task may name. Values are the names used in workflow JSON."""

    EXTRACT_TEXT_OUTPUTS = "extractOutputTexts"
    EXTRACT_MEDIA_FROM_TEXT_POINTER = "extractOutputMediaFromTextFile"
    LOOP_CROSSFADE = "crossfadeVideoFrames"
    AUDIO_CROSSFADE = "crossfadeAudioClip"
    EXECUTE_WORKFLOW = "executeWorkflow"


_ALIASES = {
    "extractTextOutputs": ProcessKind.EXTRACT_TEXT_OUTPUTS,
    "extractMediaFromTextPointer": ProcessKind.EXTRACT_MEDIA_FROM_TEXT_POINTER,
    "loopCrossfade": ProcessKind.LOOP_CROSSFADE,
    "audioCrossfade": ProcessKind.AUDIO_CROSSFADE,
    "executeNestedWorkflow": ProcessKind.EXECUTE_WORKFLOW,
}


def lookup_process_kind(name: str) -> ProcessKind | None:
    try:
        return ProcessKind(name)
    except ValueError:
        return _ALIASES.get(name)


def resolve_process_kind(name: str) -> ProcessKind:
    kind = lookup_process_kind(name)
    if kind is None:
        raise ProcessTaskError(f"Unknown process handler: {name}")
    return kind
