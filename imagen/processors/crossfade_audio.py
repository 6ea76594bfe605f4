import logging
import os
from pathlib import Path

from imagen.core.errors import ProcessTaskError
from imagen.processors.commands import run_command

logger = logging.getLogger(__name__)


async def read_duration(path: Path) -> float:
    ok, output = await run_command(
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=noprint_wrappers=1:nokey=1",
        str(path),
    )
    if not ok:
        raise ProcessTaskError(f"Could not read audio duration: {output}")
    try:
        return float(output)
    except ValueError:
        raise ProcessTaskError(f"Could not determine audio duration for: {path}")


def crossfade_filter(duration: float, blend: float) -> str:
    end_mid = duration - blend
    return "; ".join(
        [
            "[0:a]asplit=3[a1][a2][a3]",
            f"[a1]atrim=0:{blend},asetpts=PTS-STARTPTS[head]",
            f"[a2]atrim={blend}:{end_mid},asetpts=PTS-STARTPTS[middle]",
            f"[a3]atrim={end_mid},asetpts=PTS-STARTPTS[tail]",
            f"[head]afade=t=in:st=0:d={blend}:curve=tri[head_faded]",
            f"[tail]afade=t=out:st=0:d={blend}:curve=tri[tail_faded]",
            "[head_faded][tail_faded]amix=inputs=2:duration=longest:normalize=0[blended]",
            "[blended][middle]concat=n=2:v=0:a=1[out]",
        ]
    )


async def crossfade_audio_clip(parameters, generation_data, context):
    """Mix the clip's tail into its head and drop the tail so it loops cleanly."""
    blend = float(parameters.get("blendDuration", 3))
    save_path = generation_data.get("saveAudioPath")
    if not save_path:
        raise ProcessTaskError("crossfadeAudioClip requires saveAudioPath")
    path = Path(save_path)
    if not path.is_file():
        raise ProcessTaskError(f"Cannot apply audio crossfade: file not found at {path}")

    duration = await read_duration(path)
    if blend >= duration / 2:
        logger.warning(
            "blendDuration (%ss) >= half of audio duration (%ss), skipping crossfade",
            blend,
            duration / 2,
        )
        return

    temp_path = path.with_name(f"_crossfade_temp{path.suffix}")
    logger.info("Crossfading %s: duration=%.2fs blend=%ss", path.name, duration, blend)
    try:
        ok, output = await run_command(
            "ffmpeg", "-y",
            "-i", str(path),
            "-filter_complex", crossfade_filter(duration, blend),
            "-map", "[out]",
            str(temp_path),
        )
        if not ok:
            raise ProcessTaskError(f"Audio crossfade failed: {output}")
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
