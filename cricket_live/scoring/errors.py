"""
Error taxonomy for the scoring engine.

Every error carries the last sequence number that is known to be good for
the match, so the scoring operator knows exactly where to resume from.
"""

from typing import Optional


class ScoringError(Exception):
    """Base class for scoring engine errors."""

    error_code = 'scoring_error'

    def __init__(self, message: str, last_good_sequence: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.last_good_sequence = last_good_sequence

    def to_dict(self) -> dict:
        return {
            'error': self.error_code,
            'message': self.message,
            'last_good_sequence': self.last_good_sequence,
        }


class ConflictError(ScoringError):
    """Duplicate or competing submission. Retry after refetching state."""

    error_code = 'conflict'

    def __init__(
        self,
        message: str,
        last_good_sequence: Optional[int] = None,
        existing_sequence: Optional[int] = None
    ):
        super().__init__(message, last_good_sequence)
        # Set when the idempotency key was already committed
        self.existing_sequence = existing_sequence


class OutOfOrderError(ScoringError):
    """Event arrived without its predecessor. Replay the gap first."""

    error_code = 'out_of_order'

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"Expected sequence {expected}, received {received}",
            last_good_sequence=expected - 1
        )
        self.expected = expected
        self.received = received


class ValidationError(ScoringError):
    """Malformed event. Rejected, never partially applied."""

    error_code = 'validation'


class ReconciliationError(ScoringError):
    """Player runs plus extras do not add up to the innings total."""

    error_code = 'reconciliation'

    def __init__(
        self,
        innings: int,
        expected_total: int,
        figures_total: int,
        last_good_sequence: Optional[int] = None
    ):
        super().__init__(
            f"Innings {innings}: total is {expected_total} but batting runs "
            f"plus extras come to {figures_total}",
            last_good_sequence
        )
        self.innings = innings
        self.expected_total = expected_total
        self.figures_total = figures_total


class ScoringTimeoutError(ScoringError, TimeoutError):
    """Append, replay or recompute exceeded its bound. Safe to retry."""

    error_code = 'timeout'


class UnknownMatchError(ScoringError, KeyError):
    """No match registered under the given id."""

    error_code = 'unknown_match'

    def __str__(self) -> str:
        return self.message


class UnknownLeagueError(ScoringError, KeyError):
    """No fantasy league registered under the given id."""

    error_code = 'unknown_league'

    def __str__(self) -> str:
        return self.message
