from __future__ import annotations


class AccessVaultError(Exception):
    """Base error for AccessVault."""


class ProviderConfigError(AccessVaultError):
    """Missing or invalid provider configuration."""


class ProviderAPIError(AccessVaultError):
    """Non-2xx response or transport failure from an external provider API."""

    def __init__(self, provider: str, status_code: int | None, body: str) -> None:
        self.provider = provider
        self.status_code = status_code
        self.body = body
        if status_code is None:
            message = f"{provider} request failed: {body}"
        else:
            message = f"{provider} API error {status_code}: {body}"
        super().__init__(message)


class IntegrationNotFoundError(AccessVaultError):
    """No provider integration is configured for the organization."""


class PermissionDeniedError(AccessVaultError):
    """Caller role does not permit the requested operation."""


class InputValidationError(AccessVaultError):
    """Malformed input rejected before any remote call."""


class NotFoundError(AccessVaultError):
    """Requested row does not exist or is outside the caller's scope."""


class SecretNotFoundError(NotFoundError):
    """Secret id does not exist."""


class SecretExpiredError(AccessVaultError):
    """Secret exists but its expiry has passed."""


class EnrollmentTokenInvalidError(AccessVaultError):
    """Enrollment token is unknown, already used, or no longer pending."""

    def __init__(self, message: str = "Invalid or expired enrollment token") -> None:
        super().__init__(message)


class EnrollmentTokenExpiredError(EnrollmentTokenInvalidError):
    """Enrollment token expiry has passed."""

    def __init__(self, message: str = "Enrollment token expired") -> None:
        super().__init__(message)


class SessionTokenError(AccessVaultError):
    """Session token signature or expiry check failed."""


class PollTimeoutError(AccessVaultError):
    """Polling exhausted its attempt or time budget."""
