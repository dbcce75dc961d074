from __future__ import annotations


class RenewSyncError(Exception):
    """Base error for renewsync."""


class DatabaseError(RenewSyncError):
    """Database layer failure."""


class SystemNotFoundError(RenewSyncError):
    """No local System matches the requested id."""


class ConcurrencyConflictError(RenewSyncError):
    """The system already has work in flight; callers must not mutate it now."""


class StaleSnapshotError(RenewSyncError):
    """A reconciliation snapshot is older than the configured TTL."""


class IntegrationUnavailableError(RenewSyncError):
    """External integration is unavailable (circuit open)."""


class PartnerApiError(RenewSyncError):
    """Partner platform API request failure."""


class PanelConfigError(RenewSyncError):
    """Missing or invalid panel automation configuration."""


class AutomationError(RenewSyncError):
    """Typed failure raised by the panel automation driver."""

    code = "AUTOMATION_FAILED"

    def __init__(self, message: str, *, generation_triggered: bool = False) -> None:
        super().__init__(message)
        self.message = message
        # Set once the non-idempotent generate action was clicked.
        self.generation_triggered = generation_triggered


class TransientNetworkError(AutomationError):
    """Page load or network failure that is safe to retry."""

    code = "TRANSIENT_NETWORK"


class NavigationTimeoutError(AutomationError):
    """A bounded navigation or poll deadline elapsed."""

    code = "NAVIGATION_TIMEOUT"


class LoginFailedError(AutomationError):
    """Panel rejected the session credentials."""

    code = "LOGIN_FAILED"


class AuthenticationRequiredError(AutomationError):
    """An anti-automation challenge was not cleared within the grace window."""

    code = "AUTHENTICATION_REQUIRED"


class ActionNotFoundError(AutomationError):
    """Expected panel affordance is missing; the upstream workflow changed."""

    code = "ACTION_NOT_FOUND"


class ExtractionFailedError(AutomationError):
    """Result text was captured but credentials could not be parsed."""

    code = "EXTRACTION_FAILED"


class CredentialsNotFoundError(ExtractionFailedError):
    """No extraction strategy yielded both username and password."""

    code = "CREDENTIALS_NOT_FOUND"

    def __init__(self, attempted: tuple[str, ...], *, generation_triggered: bool = False) -> None:
        super().__init__(
            f"no credentials found (tried: {', '.join(attempted)})",
            generation_triggered=generation_triggered,
        )
        self.attempted = attempted


class AutomationCancelledError(AutomationError):
    """The run was cancelled at a safe point before generation."""

    code = "CANCELLED"
