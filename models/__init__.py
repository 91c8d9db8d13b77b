from models.base import Base
from models.event import Event
from models.generation_stats import GenerationStats
from models.job import Job
from models.rate_counter import RateCounter
from models.video import Video

__all__ = [
    "Base",
    "Event",
    "GenerationStats",
    "Job",
    "RateCounter",
    "Video",
]
