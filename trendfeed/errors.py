from __future__ import annotations

USER_FACING_PLATFORM_CODE = "DISCOVERY_UNAVAILABLE"
USER_FACING_PLATFORM_MESSAGE = "discovery temporarily unavailable"


class TrendFeedError(Exception):
    code = "INTERNAL_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class QuotaExceededError(TrendFeedError):
    code = "QUOTA_EXCEEDED"
    status_code = 429
    retryable = True

    def __init__(self, message: str, *, credential_id: int | None = None) -> None:
        super().__init__(message)
        self.credential_id = credential_id


class UserQuotaExceededError(TrendFeedError):
    code = "USER_QUOTA_EXCEEDED"
    status_code = 429
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        credential_id: int | None = None,
        user_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.credential_id = credential_id
        self.user_id = user_id


class NoCredentialAvailableError(TrendFeedError):
    code = "NO_CREDENTIAL_AVAILABLE"
    status_code = 503
    retryable = True


class CredentialNotFoundError(TrendFeedError):
    code = "CREDENTIAL_NOT_FOUND"
    status_code = 404


class InvalidApiKeyError(TrendFeedError):
    code = "INVALID_API_KEY"
    status_code = 400


class ChannelNotFoundError(TrendFeedError):
    code = "CHANNEL_NOT_FOUND"
    status_code = 404


class SubscriptionNotFoundError(TrendFeedError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404


class InvalidRequestError(TrendFeedError):
    code = "INVALID_REQUEST"
    status_code = 400


class UnauthenticatedError(TrendFeedError):
    code = "UNAUTHENTICATED"
    status_code = 401


class ForbiddenError(TrendFeedError):
    code = "FORBIDDEN"
    status_code = 403


class PlatformError(TrendFeedError):
    """Failure reported by the YouTube Data API or its transport.

    The upstream detail stays on the exception for logs; callers outside the
    service only ever see the flattened `DISCOVERY_UNAVAILABLE` error.
    """

    code = "PLATFORM_API_ERROR"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        http_status: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.http_status = http_status
        self.reason = reason


class PlatformAuthError(PlatformError):
    code = "PLATFORM_AUTH_ERROR"
    retryable = False


class PlatformQuotaExceededError(PlatformError):
    code = "PLATFORM_QUOTA_EXCEEDED"


class PlatformApiError(PlatformError):
    code = "PLATFORM_API_ERROR"


def public_error_payload(error: TrendFeedError) -> dict[str, object]:
    if isinstance(error, PlatformError):
        return {
            "code": USER_FACING_PLATFORM_CODE,
            "message": USER_FACING_PLATFORM_MESSAGE,
            "retryable": error.retryable,
        }
    return {
        "code": error.code,
        "message": error.message,
        "retryable": error.retryable,
    }
