from typing import Optional

RATE_LIMITED_STATUS = 403
NOT_FOUND_STATUS = 404


class ExplorerException(Exception):
    """Base exception for all explorer-related errors."""
    pass

class GitHubApiError(ExplorerException):
    """Raised when a GitHub API call fails, optionally carrying the HTTP status."""
    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message
        self.status = status
        super().__init__(message)

    @property
    def is_rate_limited(self) -> bool:
        return self.status == RATE_LIMITED_STATUS

    @property
    def is_not_found(self) -> bool:
        return self.status == NOT_FOUND_STATUS

class InvalidPayloadError(GitHubApiError, ValueError):
    """Raised when the API returns data that cannot be turned into a domain model."""
    pass
