"""Errors raised by the draw core. Routers map them to HTTP status codes."""


class DrawError(RuntimeError):
    """Base class for draw-core errors."""

    status_code = 400


class NoActiveDrawError(DrawError):
    """No active, frozen or queued major draw can take the entries."""

    status_code = 409


class DrawNotFoundError(DrawError):
    status_code = 404


class DrawClosedError(DrawError):
    """The draw is completed or cancelled and no longer accepts entries."""

    status_code = 409


class MiniDrawClosedError(DrawClosedError):
    """The mini draw is not active or has already reached its entry threshold."""


class MiniDrawCapacityError(DrawClosedError):
    """The credit would push the mini draw past its entry threshold."""


class ConfigurationLockedError(DrawError):
    """The draw configuration is locked and cannot be edited."""

    status_code = 423


class InvalidTransitionError(DrawError):
    status_code = 409


class WinnerSelectionError(DrawError):
    status_code = 400
