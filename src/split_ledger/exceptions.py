"""Custom exceptions for Split Ledger."""


class SplitLedgerError(Exception):
    """Base exception for all Split Ledger errors.

    Every subclass carries a stable ``kind`` that outer layers (CLI, MCP
    tools, an HTTP adapter) can translate into a status code.
    """

    kind = "error"


class ConfigurationError(SplitLedgerError):
    """Raised when configuration is invalid or missing."""

    kind = "configuration"


class ValidationError(SplitLedgerError):
    """Raised for malformed or inconsistent input (bad amounts, split mismatch)."""

    kind = "validation"


class NotFoundError(SplitLedgerError):
    """Raised when a referenced user, group, expense or split does not exist."""

    kind = "not_found"

    def __init__(self, entity: str, entity_id: str, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity.capitalize()} {entity_id} not found")


class AuthorizationError(SplitLedgerError):
    """Raised when the caller is not the admin, a member or a party where required."""

    kind = "authorization"


class ConsistencyError(SplitLedgerError):
    """Raised when an internal ledger invariant is violated.

    This always indicates a bug or corrupted data and is never silently
    corrected.
    """

    kind = "consistency"
