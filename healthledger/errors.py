"""
Failure taxonomy shared by every HealthLedger component.
"""


class HealthLedgerError(Exception):
    """Base class for all HealthLedger failures."""


class NotFound(HealthLedgerError):
    """The requested entity does not exist."""


class Unavailable(HealthLedgerError):
    """An upstream dependency could not be reached in time."""

    dependency = "upstream"

    def __init__(self, message, dependency=None):
        super().__init__(message)
        if dependency is not None:
            self.dependency = dependency


class LedgerUnavailable(Unavailable):
    dependency = "ledger"


class ContentStoreUnavailable(Unavailable):
    dependency = "content-store"


class Unauthorized(HealthLedgerError):
    """Missing, malformed or expired credential.

    The message is fixed so callers cannot tell which of those it was.
    """

    def __init__(self, message="Invalid or expired token"):
        super().__init__(message)


class InvalidSignature(HealthLedgerError):
    """The recovered signer does not match the claimed wallet."""


class RoleNotGranted(HealthLedgerError):
    """The ledger does not grant the claimed role to the wallet."""


class Forbidden(HealthLedgerError):
    """An authenticated caller is not allowed to see the requested data."""


class PayloadRejected(HealthLedgerError):
    """Client input violates the upload or update policy."""


class Conflict(HealthLedgerError):
    """A uniqueness constraint was hit; resolved internally by upsert."""


class IdentityMismatch(HealthLedgerError):
    """A wallet is already bound to a different role or numeric identifier."""


class CacheWriteError(HealthLedgerError):
    """A cache write failed after the ledger was read successfully."""
