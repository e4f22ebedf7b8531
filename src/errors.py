"""
Error Taxonomy Module.

Defines the errors raised while talking to GitHub and the helpers that map
HTTP statuses and PyGithub exceptions onto them. Callers use the error type to
decide between re-authentication, serving cached data, or reporting a
per-repository error.
"""

from enum import Enum
from typing import Optional

from github import GithubException, RateLimitExceededException

RATE_LIMIT_MESSAGE = "GitHub API rate limit exceeded"
GENERIC_FAILURE_MESSAGE = "Failed to fetch repository data"

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limited", "abuse detection")


class ErrorType(str, Enum):
    """
    Classification of per-repository failures.

    Attributes:
        AUTH: Credential invalid or expired, caller must re-authenticate
        FORBIDDEN: Credential valid but lacks access
        RATE_LIMIT: GitHub quota exhausted
        NOT_FOUND: Repository, release or tag missing
        UPSTREAM: Any other transport or HTTP failure
    """

    AUTH = "auth"
    FORBIDDEN = "forbidden"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    UPSTREAM = "upstream"


class DashboardError(Exception):
    """Base class for GitHub access failures."""

    error_type = ErrorType.UPSTREAM
    user_message = GENERIC_FAILURE_MESSAGE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class AuthError(DashboardError):
    """Credential rejected (401) or lacking access (403)."""

    @property
    def requires_reauth(self) -> bool:
        return self.status_code == 401

    @property
    def error_type(self) -> ErrorType:
        return ErrorType.AUTH if self.requires_reauth else ErrorType.FORBIDDEN

    @property
    def user_message(self) -> str:
        if self.requires_reauth:
            return "Authentication failed. Please check your GitHub token is valid."
        return (
            "Access forbidden. Please check your GitHub token has access "
            "to this private repository."
        )


class RateLimitError(DashboardError):
    """GitHub API quota exhausted."""

    error_type = ErrorType.RATE_LIMIT
    user_message = RATE_LIMIT_MESSAGE


class NotFoundError(DashboardError):
    """Requested GitHub resource does not exist."""

    error_type = ErrorType.NOT_FOUND
    user_message = "Repository not found. Please check the owner and repository name."


class UpstreamError(DashboardError):
    """Any other transport or HTTP failure."""

    @property
    def transient(self) -> bool:
        return self.status_code is None or self.status_code >= 500


def is_rate_limited(message: Optional[str], status_code: Optional[int] = None) -> bool:
    """
    Check an upstream error for rate limit indicators.

    Args:
        message (Optional[str]): Error message returned by GitHub
        status_code (Optional[int]): HTTP status code, if any

    Returns:
        bool: True if the failure is caused by an exhausted quota
    """
    if status_code == 429:
        return True
    text = (message or "").lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def classify_status(status_code: Optional[int], message: str) -> DashboardError:
    """
    Map an HTTP status and message to a dashboard error.

    Args:
        status_code (Optional[int]): HTTP status code, None for transport errors
        message (str): Upstream error message

    Returns:
        DashboardError: The matching error instance
    """
    if is_rate_limited(message, status_code):
        return RateLimitError(message, status_code or 403)
    if status_code in (401, 403):
        return AuthError(message, status_code)
    if status_code == 404:
        return NotFoundError(message, status_code)
    return UpstreamError(message, status_code)


def from_github_exception(exc: GithubException) -> DashboardError:
    """
    Convert a PyGithub exception to a dashboard error.

    Args:
        exc (GithubException): Exception raised by PyGithub

    Returns:
        DashboardError: The matching error instance
    """
    data = exc.data if isinstance(exc.data, dict) else {}
    message = data.get("message") or str(exc)
    if isinstance(exc, RateLimitExceededException):
        return RateLimitError(message, exc.status)
    return classify_status(exc.status, message)
