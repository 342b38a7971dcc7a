from __future__ import annotations


class TrackingError(ValueError):
    """Base class for business rule violations raised by the production core."""


class InvalidStateError(TrackingError):
    """Operation not allowed in the current state (e.g. pausing a stopped timer)."""


class NotFoundError(TrackingError):
    """Referenced run, item, stage, checklist item, order or user does not exist."""


class CrossRunMoveError(TrackingError):
    """A card was dropped into a lane that belongs to another run or item."""


class ValidationError(TrackingError):
    pass
