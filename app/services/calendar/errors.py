"""
Provider error taxonomy.

The job queue retries errors with recoverable=True and fails the job
immediately otherwise.
"""


class GoogleCalendarError(Exception):
    """Custom exception for Google Calendar API errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


class TransientProviderError(GoogleCalendarError):
    """Rate limiting, 5xx responses and network failures."""

    def __init__(self, message: str, **kwargs):
        kwargs["recoverable"] = True
        super().__init__(message, **kwargs)


class InvalidCredentialError(GoogleCalendarError):
    """Credentials rejected or unrefreshable. The user must reconnect."""

    def __init__(self, message: str, user_id: str | None = None, **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, **kwargs)
        self.user_id = user_id


class NoCredentialError(InvalidCredentialError):
    """No stored credentials for the user."""
