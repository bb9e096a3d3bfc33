"""Error taxonomy shared by the store, migration, snapshot, and backup layers."""


class LedgerError(Exception):
    """Base class for ledger errors; ``code`` is the machine-readable result tag."""

    code = "ledger_error"


class ValidationError(LedgerError):
    """A record or document has the wrong shape and was rejected."""

    code = "invalid_record"


class TransactionError(LedgerError):
    """A multi-statement write failed and was rolled back."""

    code = "transaction_failed"


class MigrationFailure(LedgerError):
    """Legacy migration aborted; legacy data is left untouched."""

    code = "migration_failed"

    def __init__(self, message, warnings=None):
        super().__init__(message)
        self.warnings = list(warnings or [])


class AuthError(LedgerError):
    """Remote credentials are expired or revoked and need re-authorization."""

    code = "auth_failed"


class NetworkError(LedgerError):
    """Transient provider/network failure; safe to retry on the next tick."""

    code = "network_error"

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class QuotaExceeded(LedgerError):
    """No registered remote account has usable space."""

    code = "quota_exceeded"


class NoAccountError(LedgerError):
    """The remote account registry is empty or the account is unknown."""

    code = "no_account"


class InvalidBackup(ValidationError):
    """A snapshot document is unreadable or has the wrong top-level shape."""

    code = "invalid_backup"
