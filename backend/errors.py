class GameError(Exception):
    """Base class for errors surfaced to the caller of a game operation."""


class ValidationError(GameError):
    pass


class InsufficientFundsError(GameError):
    pass


class NotFoundError(GameError):
    pass


class ConcurrencyConflict(GameError):
    """Lock wait or serialization failure; the whole request may be retried."""


class PropagationFailure(GameError):
    """A referral/cell recalculation failed after the primary commit."""


class ForbiddenError(GameError):
    pass


class ConflictError(GameError):
    """The resource is already bound to another account."""
