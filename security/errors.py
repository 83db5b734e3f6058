"""Exception types raised by the login protection services.

Routes catch these and translate them into generic responses; nothing
here carries policy detail meant for the end caller.
"""


class SecurityError(Exception):
    """Base for all login protection errors."""


class ConfigurationError(SecurityError):
    """Raised when a security configuration fails validation on save."""

    def __init__(self, problems):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid security configuration")


class StorageUnavailable(SecurityError):
    """The attempt ledger or lockout store could not be read or written."""


class ConcurrencyConflict(StorageUnavailable):
    """A guarded update kept losing to concurrent writers."""

    def __init__(self, address: str, attempts: int):
        self.address = address
        self.attempts = attempts
        super().__init__(f"Lockout update for {address} conflicted {attempts} times")


class TwoFactorNotProvisioned(SecurityError):
    """TOTP is required but the user has no provisioned secret."""


class NotificationDeliveryError(SecurityError):
    """An outbound notification could not be delivered."""
