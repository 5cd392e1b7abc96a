class LedgerError(ValueError):
    """Base class for failures reported back to the API caller."""


class NotFound(LedgerError):
    """The entity does not exist or belongs to another user."""


class ValidationFailure(LedgerError):
    pass


class ReferentialViolation(LedgerError):
    """A linked entity is missing, foreign, in use, or of the wrong type."""


class Conflict(LedgerError):
    pass


class InsufficientFunds(LedgerError):
    pass


class Unauthenticated(LedgerError):
    pass
