# jobs/ids.py
from __future__ import annotations

import re
import unicodedata
from datetime import datetime

_NON_SLUG = re.compile(r"[^a-z0-9]+")
MAX_SLUG_LENGTH = 48


def slugify(value: str) -> str:
    """ASCII, lowercase, hyphen-separated. Never empty."""
    ascii_value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    slug = _NON_SLUG.sub("-", ascii_value.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    return slug or "job"


def epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def make_job_id(subject: str, submitted_at: datetime) -> str:
    return f"{slugify(subject)}-{epoch_ms(submitted_at)}"
