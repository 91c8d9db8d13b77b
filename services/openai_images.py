# services/openai_images.py
from __future__ import annotations

import base64
import logging

from openai import AsyncOpenAI

from api.app.config import get_settings

logger = logging.getLogger(__name__)

ASPECT_SIZES = {
    "9:16": "1024x1536",
    "16:9": "1536x1024",
    "1:1": "1024x1024",
}


async def generate_image(prompt: str, aspect_ratio: str = "9:16") -> bytes:
    """Generate a single image for `prompt` and return the PNG bytes."""
    settings = get_settings()
    client = AsyncOpenAI(api_key=settings.openai_api_key)
    size = ASPECT_SIZES.get(aspect_ratio, settings.openai_image_size)

    logger.info("Image: generating %s (%s) with model=%s", aspect_ratio, size, settings.openai_image_model)
    response = await client.images.generate(
        model=settings.openai_image_model,
        prompt=prompt,
        size=size,
        n=1,
    )
    if not response.data or not response.data[0].b64_json:
        raise RuntimeError("No image data in response")

    data = base64.b64decode(response.data[0].b64_json)
    logger.info("Image: received %d bytes", len(data))
    return data
