import logging
import shutil
from pathlib import Path

from imagen.core.errors import ProcessTaskError

logger = logging.getLogger(__name__)


async def extract_output_media(parameters, generation_data, context):
    """Follow a text file the engine wrote that names the real output file.

    The named file's extension is replaced with ``imageFormat`` and the file
    is copied to ``saveImagePath``.
    """
    filename = parameters.get("filename")
    if not filename:
        raise ProcessTaskError('extractOutputMediaFromTextFile requires "filename" parameter')

    image_format = generation_data.get("imageFormat")
    if not image_format:
        raise ProcessTaskError("imageFormat is required to determine output file extension")

    save_path = generation_data.get("saveImagePath")
    if not save_path:
        raise ProcessTaskError("extractOutputMediaFromTextFile requires saveImagePath")

    pointer = Path(filename)
    if not pointer.is_absolute():
        pointer = context.storage_dir / pointer
    try:
        output_path = Path(pointer.read_text(encoding="utf-8").strip())
    except FileNotFoundError:
        raise ProcessTaskError(f"Output pointer file not found: {pointer}")

    output_path = output_path.with_suffix(f".{image_format}")
    logger.info("Extracted output path: %s", output_path)

    if not output_path.is_file():
        raise ProcessTaskError(f"Output file not found at extracted path: {output_path}")

    shutil.copyfile(output_path, save_path)
    logger.info("Copied %s to %s", output_path, save_path)
