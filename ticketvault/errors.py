"""
Error taxonomy of the backup engine.

Everything up to and including validation is raised before the live dataset
is touched. Only FatalRestoreError can come out of the destructive step, and
it is raised after the transaction has been rolled back.
"""


class TicketVaultError(Exception):
    """Base class for every error raised by the engine."""


class AuthError(TicketVaultError):
    """Invalid password or invalid / missing second factor."""


class SecondFactorRequired(AuthError):
    """The password was right but the account needs a TOTP or recovery code.

    Kept distinct from a plain AuthError so a caller can prompt for the code
    without asking for the password again.
    """

    requires_2fa = True


class PermissionDeniedError(AuthError):
    """Authenticated, but not a system administrator."""


class ValidationError(TicketVaultError):
    """Malformed artifact, schema mismatch, orphaned reference or wrong phrase."""


class DecryptionError(TicketVaultError):
    """Authentication tag did not verify.

    A wrong password and a corrupted artifact are reported identically.
    """

    def __init__(self, message: str = "Incorrect password or corrupted data"):
        super().__init__(message)


class PartialDataError(TicketVaultError):
    """A file referenced by the backup is absent from the archive (non-fatal)."""

    def __init__(self, relative_path: str):
        super().__init__(f"File missing from archive: {relative_path}")
        self.relative_path = relative_path


class FatalRestoreError(TicketVaultError):
    """The replace or delete transaction failed; the prior dataset is intact."""


class OperationInProgressError(TicketVaultError):
    """Another destructive operation holds the system-wide lock."""

    def __init__(self, message: str = "Another destructive operation is already in progress"):
        super().__init__(message)
