from __future__ import annotations

from typing import List, Optional


class OAuthVaultError(RuntimeError):
    """Base for every error the OAuth core raises on purpose.

    `code` is stable and safe to put in an audit row or an HTTP body.
    `public_message` is the only text a caller ever sees.
    """

    code = "InternalError"
    public_message = "OAuth operation failed"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class ValidationError(OAuthVaultError):
    code = "ValidationError"
    public_message = "Invalid request"


class UnsupportedPlatform(ValidationError):
    code = "UnsupportedPlatform"
    public_message = "Unsupported platform"


class ConfigurationError(ValidationError):
    code = "ConfigurationError"
    public_message = "OAuth is not configured for this platform"


class StateError(OAuthVaultError):
    public_message = "Invalid or expired OAuth state"

    NOT_FOUND = "StateNotFound"
    EXPIRED = "StateExpired"
    MISMATCH = "StateMismatch"
    REPLAY = "StateReplay"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.reason


class ScopeError(OAuthVaultError):
    code = "InsufficientScope"
    public_message = "The platform did not grant the required permissions"

    def __init__(self, missing: List[str]):
        super().__init__(f"missing scopes: {' '.join(missing)}")
        self.missing = list(missing)


class EncryptionError(OAuthVaultError):
    code = "EncryptionError"


class DecryptionError(EncryptionError):
    code = "DecryptionError"


class RateLimitError(OAuthVaultError):
    code = "RateLimited"
    public_message = "Too many OAuth requests, retry later"

    def __init__(self, retry_after: int, endpoint_class: str = ""):
        super().__init__(f"rate limit exceeded for {endpoint_class or 'endpoint'}")
        self.retry_after = max(0, int(retry_after))
        self.endpoint_class = endpoint_class


class UpstreamError(OAuthVaultError):
    code = "UpstreamError"
    public_message = "Service unavailable, try again later"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code
        # raw platform body, audit trail only
        self.detail = detail


class TokenNotFound(OAuthVaultError):
    code = "TokenNotFound"
    public_message = "No connected account for this platform"


class ReconnectRequired(OAuthVaultError):
    code = "ReconnectRequired"
    public_message = "The account must be reconnected"


class AuditError(OAuthVaultError):
    code = "AuditError"
