import asyncio
import logging
from pathlib import Path

from PIL import Image, ImageSequence

from imagen.core.errors import ProcessTaskError

logger = logging.getLogger(__name__)


def create_loop_fade(path: Path, blend_frames: int) -> bool:
    """Blend the last ``blend_frames`` frames of an animation into its first ones.

    The tail frames are folded into the head, so the animation gets shorter
    by ``blend_frames`` and its end flows into its start. Returns False
    without touching the file when the blend would cover half the frames or
    more.
    """
    with Image.open(path) as img:
        frame_count = getattr(img, "n_frames", 1)
        if blend_frames < 1 or blend_frames >= frame_count / 2:
            return False

        frames, durations = [], []
        for frame in ImageSequence.Iterator(img):
            frames.append(frame.convert("RGBA"))
            durations.append(frame.info.get("duration", img.info.get("duration", 100)))
        image_format = img.format
        loop = img.info.get("loop", 0)

    head = [
        Image.blend(
            frames[frame_count - blend_frames + i],
            frames[i],
            (i + 1) / (blend_frames + 1),
        )
        for i in range(blend_frames)
    ]
    result = head + frames[blend_frames : frame_count - blend_frames]
    result_durations = durations[: frame_count - blend_frames]

    save_kwargs = {}
    if image_format == "WEBP":
        save_kwargs["lossless"] = True
    result[0].save(
        path,
        format=image_format,
        save_all=True,
        append_images=result[1:],
        duration=result_durations,
        loop=loop,
        **save_kwargs,
    )
    return True


async def crossfade_video_frames(parameters, generation_data, context):
    blend_frames = int(parameters.get("blendFrames", 10))
    save_path = generation_data.get("saveImagePath")
    if not save_path or not Path(save_path).is_file():
        raise ProcessTaskError(f"Cannot apply crossfade: file not found at {save_path}")

    logger.info("Applying loop fade blending with %d frames", blend_frames)
    blended = await asyncio.to_thread(create_loop_fade, Path(save_path), blend_frames)
    if blended:
        logger.info("Applied loop crossfade to %s", save_path)
    else:
        logger.warning(
            "blendFrames (%d) covers half the animation or more, skipping crossfade",
            blend_frames,
        )
