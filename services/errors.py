# services/errors.py


class RandomizationError(Exception):
    """Base class for failures the engine reports back to the caller."""
    kind = "error"

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(RandomizationError):
    kind = "validation"


class StateError(RandomizationError):
    kind = "state"


class ExhaustionError(RandomizationError):
    """No unused sealed entry is left for a stratum. Regenerate, don't retry."""
    kind = "exhausted"


class NotFoundError(RandomizationError):
    kind = "not_found"
