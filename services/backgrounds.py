# services/backgrounds.py
"""
Background image per (city, condition).

Images are stored under a deterministic key, so each combination is
generated once and reused afterwards. Only real generations count
against the daily generation quota.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from jobs.errors import GenerationLimitError
from jobs.ids import slugify
from services import generation_limit
from services.artifact_store import ArtifactStore
from services.openai_images import generate_image

logger = logging.getLogger(__name__)

ImageGenerator = Callable[[str, str], Awaitable[bytes]]

CONDITION_DESCRIPTIONS = {
    "sunny": "bright sunny day with clear blue sky",
    "cloudy": "overcast sky with soft diffused light",
    "rain": "gentle rainfall with wet reflective surfaces",
    "storm": "dramatic storm with dark clouds and lightning",
}


@dataclass(frozen=True)
class BackgroundAsset:
    name: str
    url: str
    reused: bool

    @property
    def filename(self) -> str:
        return self.name.rsplit("/", 1)[-1]


def background_key(city: str, condition: str, prefix: str = "") -> str:
    name = f"{slugify(city)}-{condition}.png"
    return f"{prefix.rstrip('/')}/{name}" if prefix else name


def build_prompt(city: str, condition: str) -> str:
    weather = CONDITION_DESCRIPTIONS.get(condition, "current weather conditions")
    return (
        f"Create a 45° top-down isometric miniature 3D diorama scene of {city}, "
        "featuring its most iconic landmarks and architectural elements. "
        "Use soft, refined textures with realistic PBR materials and gentle, lifelike "
        f"lighting and shadows. Show {weather} integrated into the city environment "
        "to create an immersive atmospheric mood.\n\n"
        "IMPORTANT:\n"
        "- NO text, NO titles, NO labels, NO numbers on the image\n"
        "- Focus on the most important points of interest in the city\n"
        "- Vertical portrait orientation (9:16 aspect ratio)\n"
        "- Leave top 40% relatively clear for text overlay\n"
        "- Focus detail in center and lower portions"
    )


async def resolve_background(
    db: AsyncSession,
    store: ArtifactStore,
    city: str,
    condition: str,
    *,
    prefix: str = "",
    limit: int | None = None,
    generate: ImageGenerator = generate_image,
) -> BackgroundAsset:
    """Reuse the stored image for (city, condition), or generate it within quota."""
    name = background_key(city, condition, prefix)

    if await store.exists(name):
        await generation_limit.increment_reused(db)
        logger.info("Reusing background %s", name)
        return BackgroundAsset(name=name, url=store.public_url(name), reused=True)

    if not await generation_limit.can_generate_image(db, limit=limit):
        info = await generation_limit.get_limit_info(db, limit=limit)
        raise GenerationLimitError(info["max_daily"])

    data = await generate(build_prompt(city, condition), "9:16")
    uploaded = await store.put_bytes(
        name,
        data,
        {
            "city": city,
            "condition": condition,
            "generated-at": datetime.now(timezone.utc).isoformat(),
        },
    )
    await generation_limit.increment_generated(db, limit=limit)
    logger.info("Generated background %s", name)
    return BackgroundAsset(name=name, url=uploaded.url, reused=False)
