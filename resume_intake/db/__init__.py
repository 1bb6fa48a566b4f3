from .base import Base, utcnow
from .engine import DatabaseEngine
from .models import EnrichmentJob, ImportItem, ImportRun, Job, JobApplication, Resume

__all__ = [
    "Base",
    "DatabaseEngine",
    "EnrichmentJob",
    "ImportItem",
    "ImportRun",
    "Job",
    "JobApplication",
    "Resume",
    "utcnow",
]
