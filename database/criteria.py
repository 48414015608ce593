"""
Typed booking query criteria.

A BookingCriteria is a list of filters combined with AND. Each filter is one
member of a discriminated union keyed by "kind", so callers can build queries
from plain dicts (e.g. a JSON request body) and get a ValidationError up front
instead of a half-applied query:

    >>> parse_criteria({"filters": [
    ...     {"kind": "status_in", "statuses": ["pending", "confirmed"]},
    ...     {"kind": "date_range", "start": "2025-12-01", "end": "2025-12-31"},
    ... ]})

Stores translate each filter into their own query language (see
database/sql_store.py); BookingCriteria.matches() is the reference semantics
used by the in-memory store.
"""

from datetime import date
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from booking.models import Booking, BookingStatus
from shared.errors import ValidationError


class StatusIn(BaseModel):
    kind: Literal["status_in"] = "status_in"
    statuses: list[BookingStatus] = Field(min_length=1)

    def matches(self, booking: Booking) -> bool:
        return booking.status in self.statuses


class DateRange(BaseModel):
    """Inclusive on both ends; either end may be open."""

    kind: Literal["date_range"] = "date_range"
    start: Optional[date] = None
    end: Optional[date] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError(f"start {self.start} is after end {self.end}")
        return self

    def matches(self, booking: Booking) -> bool:
        if self.start is not None and booking.date < self.start:
            return False
        if self.end is not None and booking.date > self.end:
            return False
        return True


class ServiceIs(BaseModel):
    kind: Literal["service_is"] = "service_is"
    service_id: UUID

    def matches(self, booking: Booking) -> bool:
        return booking.service_id == self.service_id


class ClientIs(BaseModel):
    kind: Literal["client_is"] = "client_is"
    client_id: UUID

    def matches(self, booking: Booking) -> bool:
        return booking.client_id == self.client_id


BookingFilter = Annotated[
    Union[StatusIn, DateRange, ServiceIs, ClientIs],
    Field(discriminator="kind"),
]


class BookingCriteria(BaseModel):
    """Conjunction of filters. Results are ordered by date, time."""

    filters: list[BookingFilter] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, ge=1)

    def matches(self, booking: Booking) -> bool:
        return all(f.matches(booking) for f in self.filters)


def parse_criteria(raw: BookingCriteria | dict[str, Any] | None) -> BookingCriteria:
    """
    Validate raw criteria into a BookingCriteria.

    Raises:
        ValidationError: unknown filter kind, bad field value or inverted range
    """
    if raw is None:
        return BookingCriteria()
    if isinstance(raw, BookingCriteria):
        return raw
    try:
        return BookingCriteria.model_validate(raw)
    except PydanticValidationError as e:
        raise ValidationError(
            "Invalid booking criteria",
            details={"errors": [
                {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]}
                for err in e.errors()
            ]},
        ) from e
