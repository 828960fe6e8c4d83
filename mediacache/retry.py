"""Retry policy shared by the job queue and the media download client.

One object holds both budgets so the total number of download attempts a URL
gets is explicit: ``attempts * download_attempts``.
"""
from dataclasses import dataclass

from mediacache.settings import settings


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3  # job attempts before the job is terminally failed
    backoff_base: float = 2.0  # seconds, doubled per failed attempt
    backoff_max: float = 60.0
    download_attempts: int = 1  # HTTP attempts within one job attempt
    download_backoff_max: float = 5.0
    download_timeout: float = 30.0

    def __post_init__(self):
        if self.attempts < 1 or self.download_attempts < 1:
            raise ValueError("attempt budgets must be >= 1")

    @property
    def total_download_attempts(self) -> int:
        return self.attempts * self.download_attempts

    def job_backoff(self, attempts_made: int) -> float:
        """Delay before the next attempt after ``attempts_made`` failures."""
        if attempts_made < 1:
            return 0.0
        return min(self.backoff_base * (2 ** (attempts_made - 1)), self.backoff_max)

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            attempts=settings.QUEUE_ATTEMPTS,
            backoff_base=settings.QUEUE_BACKOFF_DELAY_MS / 1000,
            backoff_max=settings.QUEUE_BACKOFF_MAX_MS / 1000,
            download_attempts=settings.DOWNLOAD_ATTEMPTS,
            download_backoff_max=settings.DOWNLOAD_BACKOFF_MAX_SECONDS,
            download_timeout=settings.DOWNLOAD_TIMEOUT_SECONDS,
        )
