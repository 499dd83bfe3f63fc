"""Cross-cutting error kinds.

Every service module declares its own exception family; the concrete
classes also derive from one of these kinds so callers can map failures
without knowing which module raised them (e.g. NotFound -> 404,
StateConflict -> 409).
"""


class LedgerError(Exception):
    """Base class for all ledger failures."""


class NotFoundError(LedgerError):
    """Entity absent or outside the caller's tenant scope."""


class ValidationFailedError(LedgerError):
    """Malformed input: imbalance, bad amounts, missing lines."""


class StateConflictError(LedgerError):
    """Operation not allowed in the entity's current state."""


class ReferentialIntegrityError(LedgerError):
    """Referenced entity is inactive, foreign, or missing."""


class BusinessRuleViolationError(LedgerError):
    """Operation breaks a business rule (over-payment, dependents)."""
