from __future__ import annotations

from enum import Enum


class CrawlerError(Exception):
    """Base class for every error raised by the crawl engine."""

    code = "EXECUTION_ERROR"


class SessionErrorKind(str, Enum):
    UNAVAILABLE = "SESSION_UNAVAILABLE"
    NAVIGATION_TIMEOUT = "NAVIGATION_TIMEOUT"
    NAVIGATION_FAILED = "NAVIGATION_FAILED"


class SessionError(CrawlerError):
    def __init__(self, kind: SessionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.kind.value


class ExtractionError(CrawlerError):
    """The rendered page could not be read (layout changed, DOM detached...)."""

    code = "EXTRACTION_FAILED"


class PersistenceError(CrawlerError):
    code = "PERSISTENCE_FAILED"


class ExclusivityError(CrawlerError):
    """Raised synchronously to callers of submit/cancel/status, never mid-run."""

    code = "EXCLUSIVITY"


class ConflictError(ExclusivityError):
    code = "CONFLICT"

    def __init__(self, target_id: str, job_id: str) -> None:
        super().__init__(f"Target {target_id!r} already has a running job ({job_id})")
        self.target_id = target_id
        self.job_id = job_id


class CapacityError(ExclusivityError):
    code = "CAPACITY"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Concurrent job limit reached: {limit}")
        self.limit = limit


class NotFoundError(ExclusivityError):
    code = "NOT_FOUND"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"No such job: {job_id}")
        self.job_id = job_id
