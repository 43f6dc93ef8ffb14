class CirculationError(Exception):
    """Base exception for circulation engine errors."""

    code = "circulation_error"
    status = 500

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


class NotFound(CirculationError):
    """Customer, title, copy or waitlist entry does not exist."""

    code = "not_found"
    status = 404


class ConfigurationError(CirculationError):
    """Referenced subscription plan is missing."""

    code = "configuration_error"
    status = 500


class HoldRejected(CirculationError):
    """Hold request was not admitted."""

    code = "rejected"
    status = 409


class Unavailable(HoldRejected):
    """No unbooked copy of this title exists."""

    code = "unavailable"


class AlreadyRequested(HoldRejected):
    """Title already has an outstanding request."""

    code = "already_requested"


class QuotaExceeded(HoldRejected):
    """Customer already holds the maximum number of outstanding requests."""

    code = "quota_exceeded"


class ConcurrencyConflict(CirculationError):
    """Waitlist changed underneath this operation; retry it."""

    code = "concurrency_conflict"
    status = 409


class StoreError(CirculationError):
    """Underlying store failed; nothing was applied."""

    code = "store_error"
    status = 503
