import logging

from imagen.core.errors import ProcessTaskError

logger = logging.getLogger(__name__)


async def extract_output_texts(parameters, generation_data, context):
    """Copy ``<storage>/<name>.txt`` into ``generation_data[name]`` for each listed property."""
    properties = parameters.get("properties")
    if not isinstance(properties, list):
        raise ProcessTaskError('extractOutputTexts requires "properties" parameter as array')

    logger.info("Extracting text content from %d file(s)", len(properties))
    for name in properties:
        path = context.storage_dir / f"{name}.txt"
        try:
            content = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise ProcessTaskError(f"Output text file not found: {path}")
        except UnicodeDecodeError:
            raise ProcessTaskError(f"Output text file is not valid UTF-8: {path}")
        generation_data[name] = content
        logger.info("Extracted %s: %s", name, content[:100])
