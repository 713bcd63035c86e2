"""
Error types raised by the rental core.

The pure calculation modules raise these directly; the database layer wraps
driver and decoding failures into them so callers can tell "no data" apart
from "computation impossible".
"""


class RentalAppError(Exception):
    """Base class for every error raised by the rental core."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidStateError(RentalAppError):
    """A record carries a status or shape this service does not understand."""

    status_code = 409


class InvalidInputError(RentalAppError):
    """Caller supplied values that cannot be priced or billed."""

    status_code = 422


class UpstreamUnavailableError(RentalAppError):
    """The document store could not be reached or failed mid-operation."""

    status_code = 503
