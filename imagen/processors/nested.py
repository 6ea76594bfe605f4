"""
executeWorkflow: run another workflow as a step of the current one.

The child receives a fresh request built from ``inputMapping`` rules:

* ``{"from": a, "to": b}`` copies a field;
* ``{"image": key, "toMediaInput": i}`` uploads the file at ``key`` (or the
  parent's own output when ``key`` is ``"generated"``) and passes it as
  ``image_{i}_filename`` together with its description, summary, tags, name,
  uid and imageFormat;
* ``{"audio": key, "toMediaInput": i}`` does the same for audio as
  ``audio_{i}``.

After the child completes, ``outputMapping`` copies result fields back and the
child's media paths replace the parent's.
"""

import logging
import random
from pathlib import Path

from imagen.core.errors import ImagenError, NestedWorkflowError, ProcessTaskError

logger = logging.getLogger(__name__)

MAX_SEED = 4294967295

_IMAGE_METADATA = ("description", "summary", "tags", "name", "uid", "imageFormat")
_AUDIO_METADATA = ("description", "summary", "tags", "name", "uid")
_BLANK_DEFAULTS = ("tags", "prompt", "description", "summary", "name")


def new_seed(parent_seed=None) -> int:
    seed = random.randint(0, MAX_SEED)
    while parent_seed is not None and str(seed) == str(parent_seed):
        seed = random.randint(0, MAX_SEED)
    return seed


async def _map_media(mapping, kind, generation_data, request, context):
    source = mapping[kind]
    own_output = "saveImagePath" if kind == "image" else "saveAudioPath"
    key = own_output if source == "generated" else source
    media_path = generation_data.get(key)
    if not media_path:
        return

    index = mapping["toMediaInput"]
    path = Path(media_path)
    try:
        stored_name = await context.upload(path.read_bytes(), path.name, kind)
    except (ImagenError, OSError) as e:
        raise ProcessTaskError(f"Failed to upload {kind} for nested workflow: {e}")

    if kind == "image":
        request[f"image_{index}_filename"] = stored_name
        metadata = _IMAGE_METADATA
    else:
        request[f"audio_{index}"] = stored_name
        metadata = _AUDIO_METADATA

    for name in metadata:
        source_field = name if key == own_output else f"{key}_{name}"
        if source_field in generation_data:
            request[f"{kind}_{index}_{name}"] = generation_data[source_field]
    logger.info("Mapped %s %s -> %s_%s (%s)", kind, key, kind, index, stored_name)


async def execute_workflow(parameters, generation_data, context):
    target = parameters.get("workflow")
    if not target:
        raise ProcessTaskError('executeWorkflow requires "workflow" parameter')
    if context.run_workflow is None or context.upload is None:
        raise ProcessTaskError("Nested workflow execution is not available here")

    logger.info("Executing nested workflow: %s", target)
    try:
        request = {"workflow": target, "seed": new_seed(generation_data.get("seed"))}

        for mapping in parameters.get("inputMapping", []):
            if mapping.get("from") and mapping.get("to"):
                if mapping["from"] in generation_data:
                    request[mapping["to"]] = generation_data[mapping["from"]]
            elif mapping.get("image") and "toMediaInput" in mapping:
                await _map_media(mapping, "image", generation_data, request, context)
            elif mapping.get("audio") and "toMediaInput" in mapping:
                await _map_media(mapping, "audio", generation_data, request, context)

        for name in _BLANK_DEFAULTS:
            if request.get(name) is None:
                request[name] = ""

        result = await context.run_workflow(target, request)
        if not result:
            raise ProcessTaskError("Nested workflow did not produce a result")
    except NestedWorkflowError:
        raise
    except ImagenError as e:
        raise NestedWorkflowError(target, e.message)

    for mapping in parameters.get("outputMapping", []):
        if mapping.get("from") and mapping.get("to") and mapping["from"] in result:
            generation_data[mapping["to"]] = result[mapping["from"]]

    if result.get("imageUrl"):
        generation_data["imageUrl"] = result["imageUrl"]
        generation_data["saveImagePath"] = result.get("saveImagePath")
    if result.get("audioUrl"):
        generation_data["audioUrl"] = result["audioUrl"]
        generation_data["saveAudioPath"] = result.get("saveAudioPath")

    logger.info("Nested workflow %s completed", target)
