"""Error taxonomy shared by the scheduling core and the API layer.

Degraded fallbacks (missing exchange rate, unconfigured hours, empty
assignment pool) are not errors and never show up here.
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import IntegrityError, SQLAlchemyError


class BookingCoreError(Exception):
    """Base exception for all scheduling core errors."""


class NotFound(BookingCoreError):
    """Referenced row does not exist or lives outside the tenant scope."""

    def __init__(self, entity: str, entity_id: object):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class InvalidState(BookingCoreError):
    """Operation is not allowed for the current state of the row."""


class SchedulingConflict(BookingCoreError):
    """Raised by the booking write path when the conflict check fails."""

    def __init__(self, result):
        reason = getattr(result, "reason", None)
        super().__init__(f"Scheduling conflict detected: {reason}")
        self.result = result

    @property
    def reason(self) -> str | None:
        return self.result.reason

    @property
    def conflicting_booking_id(self) -> str | None:
        return self.result.conflicting_booking_id


class UpstreamFailure(BookingCoreError):
    """Store or cache could not be reached or timed out."""

    def __init__(self, operation: str, detail: str | None = None):
        message = f"{operation} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation


@contextmanager
def store_call(operation: str) -> Iterator[None]:
    try:
        yield
    except IntegrityError:
        # constraint violations are handled by the caller that owns the constraint
        raise
    except SQLAlchemyError as exc:
        raise UpstreamFailure(operation, str(exc)) from exc
