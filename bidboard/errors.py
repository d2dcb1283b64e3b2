"""Error taxonomy shared by the bidding, lifecycle, and settlement services."""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for failures surfaced to callers of the auction core."""


class ValidationError(LedgerError, ValueError):
    """Raised for malformed or out-of-range input. Never retried."""


class NotFound(LedgerError):
    """Raised when a referenced auction, item, or payment does not exist."""


class ItemNotFound(NotFound):
    pass


class Unauthorized(LedgerError):
    """Raised when a payer does not hold every item in a settlement request."""


class Conflict(LedgerError):
    """The caller should re-fetch state and may retry with corrected input."""


class BidTooLow(Conflict):
    def __init__(self, minimum: int) -> None:
        self.minimum = minimum
        super().__init__(f"bid must be at least ${minimum / 100:,.2f}")


class AuctionNotActive(Conflict):
    pass


class Transient(LedgerError):
    """Storage contention or timeout that persisted through the retry budget."""


class ProcessorError(LedgerError):
    """The payment processor rejected a request."""


class StorageContention(Exception):
    """Raised by storage backends when a transaction lost a race.

    Only the retry helper sees this; callers get :class:`Transient`.
    """
