"""Error taxonomy shared by services, API handlers and workers."""


class CrosspostError(RuntimeError):
    error_code: str = "crosspost_error"
    status_code: int = 500

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class AuthError(CrosspostError):
    error_code = "auth_error"
    status_code = 401


class StateError(CrosspostError):
    """Invalid, expired or replayed OAuth state."""

    error_code = "invalid_state"
    status_code = 400


class TokenExchangeError(CrosspostError):
    """Provider rejected the code or credentials. Never retried with the same code."""

    error_code = "token_exchange_failed"
    status_code = 400


class ProfileFetchError(CrosspostError):
    error_code = "profile_fetch_failed"
    status_code = 502


class ValidationError(CrosspostError):
    """Content or platform constraint violated before dispatch."""

    error_code = "validation_error"
    status_code = 422


class DispatchError(CrosspostError):
    error_code = "dispatch_failed"
    status_code = 502


class PersistenceError(CrosspostError):
    error_code = "persistence_error"
    status_code = 500


class NotFoundError(CrosspostError):
    error_code = "not_found"
    status_code = 404


class ReconnectRequiredError(CrosspostError):
    error_code = "reconnect_required"
    status_code = 409


class RefreshInProgressError(CrosspostError):
    error_code = "refresh_in_progress"
    status_code = 409


class PlatformNotConfiguredError(CrosspostError):
    error_code = "platform_not_configured"
    status_code = 503


class PlatformClientError(CrosspostError):
    """A bound platform client factory could not build a client."""

    error_code = "platform_client_unavailable"
    status_code = 502
