from datetime import datetime, timezone
from typing import Optional


class CrawlerException(Exception):
    """Base exception for all crawler-related errors."""
    pass


class ConfigError(CrawlerException):
    """Raised when the workspace configuration or environment is invalid."""
    pass


class AuthError(CrawlerException):
    """Raised when provider credentials are invalid or expired. Never retried."""
    pass


class TransientError(CrawlerException):
    """Raised on network failures, timeouts and 5xx responses."""
    pass


class RateLimitExceededException(CrawlerException):
    """Raised when a provider (or the local lease pool) refuses more requests."""
    # Slack added on top of a provider reset time before retrying
    RESET_GRACE_SECONDS = 5

    def __init__(
        self,
        reset_at: Optional[str] = None,
        retry_after: Optional[float] = None,
        message: str = "Provider API rate limit exceeded.",
    ):
        self.reset_at = reset_at
        self.retry_after = retry_after
        if reset_at:
            message = f"{message} Resets at: {reset_at}"
        elif retry_after is not None:
            message = f"{message} Retry after: {retry_after:.0f}s"
        super().__init__(message)

    def wait_seconds(self) -> Optional[float]:
        """Wait suggested by the provider, from Retry-After or the quota reset time."""
        if self.retry_after is not None:
            return max(float(self.retry_after), 0.0)
        if not self.reset_at:
            return None
        try:
            reset_time = datetime.fromisoformat(self.reset_at.replace("Z", "+00:00"))
        except ValueError:
            return None
        if reset_time.tzinfo is None:
            reset_time = reset_time.replace(tzinfo=timezone.utc)
        now = datetime.now(timezone.utc)
        return max((reset_time - now).total_seconds() + self.RESET_GRACE_SECONDS, 1)


class SchemaError(CrawlerException):
    """Raised when a provider payload does not have the expected shape."""
    pass


class UnsupportedRecord(CrawlerException):
    """Raised by a translator for raw record subtypes it does not model."""
    def __init__(self, subtype: str):
        self.subtype = subtype
        super().__init__(f"Unsupported record subtype: {subtype}")


class StoreUnavailable(CrawlerException):
    """Raised when the document or checkpoint store cannot be reached."""
    pass


class StoreRejected(CrawlerException):
    """Raised when the store refuses a specific document."""
    def __init__(self, document_id: str, reason: str):
        self.document_id = document_id
        self.reason = reason
        super().__init__(f"Document {document_id} rejected: {reason}")


class CrawlCancelled(CrawlerException):
    """Raised between pages when a crawl is cooperatively cancelled."""
    pass
