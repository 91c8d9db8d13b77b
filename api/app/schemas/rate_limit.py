# api/app/schemas/rate_limit.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ResetsIn(BaseModel):
    hours: int
    minutes: int
    seconds: int


class RateLimitStatus(BaseModel):
    limit: int
    current: int
    remaining: int
    is_allowed: bool
    resets_at: datetime
    resets_in: ResetsIn


class DailyCount(BaseModel):
    count: int


class GenerationLimitInfo(BaseModel):
    max_daily: int
    used: int
    remaining: int
    reused: int
    can_generate: bool
