"""
Defines custom exceptions for the application to allow for more specific error handling.
"""


class BiliCliError(Exception):
    """Base exception for all application-specific errors."""


class ConfigurationError(BiliCliError):
    """Raised for issues related to configuration loading or validation."""


class UnsupportedUrlError(BiliCliError):
    """Raised when a URL or bare ID does not match any supported content shape."""


class InvalidRangeError(BiliCliError):
    """Raised when an episode range expression cannot be parsed or selects nothing."""


class AuthRequiredError(BiliCliError):
    """Raised when the requested content needs a logged-in session."""


class AuthExpiredError(AuthRequiredError):
    """Raised when the stored session was rejected by the API and has been invalidated."""


class QrLoginError(BiliCliError):
    """Raised when a QR login attempt expires, times out, or returns an unknown state."""


class RiskControlError(BiliCliError):
    """Raised when the API responds with an anti-automation (risk control) signal."""


class RiskControlBlockedError(RiskControlError):
    """
    Raised after repeated risk-control responses. The client is most likely blocked
    and retrying immediately would only make it worse.
    """


class TransientError(BiliCliError):
    """Raised for network failures, timeouts and 5xx responses once retries are exhausted."""


class MalformedResponseError(BiliCliError):
    """Raised when a response does not have the expected shape. Never retried."""


class ApiResponseError(BiliCliError):
    """Raised when the API returns a non-zero business code that is not otherwise classified."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


class NoMatchingStreamError(BiliCliError):
    """Raised when no stream exists at or below the requested quality tier."""


class AccessUrlExpiredError(BiliCliError):
    """Raised when a media access URL has expired. The episode must be re-resolved."""


class SegmentIntegrityError(BiliCliError):
    """Raised when a fetched segment's length does not match its manifest range."""


class DownloadFailedError(BiliCliError):
    """Raised when a download task exhausts its retries for at least one segment."""


class MergeFailureError(BiliCliError):
    """Raised when the external muxer fails or produces no usable output."""


class IoFailureError(BiliCliError):
    """Raised when a checkpoint or partial file cannot be persisted."""


class JobNotFoundError(BiliCliError):
    """Raised when an operation references an unknown job ID."""


class InvalidTransitionError(BiliCliError):
    """Raised when an episode job is asked to move to a state it cannot reach."""
