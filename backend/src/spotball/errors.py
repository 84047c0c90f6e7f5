"""Error taxonomy for the competition core.

Every failure raised by the core is a ``CoreError``. The category classes
(``Unauthenticated``, ``Forbidden``, ``ValidationFailed``, ``Conflict``,
``CapacityError``, ``NotFound``, ``Precondition``) are what the web layer maps
to a response; the leaf classes name the concrete rule that was violated.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel


class FieldError(BaseModel):
    path: str
    msg: str
    value: Any = None


class CoreError(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class Unauthenticated(CoreError):
    pass


class IdentityMismatch(Unauthenticated):
    def __init__(self) -> None:
        super().__init__("Participant details do not match")


class Forbidden(CoreError):
    pass


class ValidationFailed(CoreError):
    def __init__(self, errors: list[FieldError], message: str | None = None) -> None:
        super().__init__(message or (errors[0].msg if errors else "invalid input"))
        self.errors = errors


def marker_count_error(ticket_number: int, required: int, got: int, path: str) -> FieldError:
    return FieldError(
        path=path, msg=f"Ticket {ticket_number} requires exactly {required} markers", value=got
    )


class MarkerCountMismatch(ValidationFailed):
    """One or more tickets were submitted with the wrong number of markers."""


class InvalidCoordinate(ValidationFailed):
    """One or more markers fall outside the normalized [0,1] range."""


class Conflict(CoreError):
    pass


class AlreadyClosed(Conflict):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Competition {competition_id} is already closed")


class AlreadySubmitted(Conflict):
    def __init__(self, ticket_number: int) -> None:
        super().__init__(f"Ticket {ticket_number} has already been submitted")
        self.ticket_number = ticket_number


class EntryComplete(Conflict):
    def __init__(self) -> None:
        super().__init__(
            "This entry is already completed. Additional markers cannot be submitted."
        )


class CompetitionInactive(Conflict):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Competition {competition_id} is not active")


class ResultLocked(Conflict):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Result for competition {competition_id} is locked")


class ParticipantExists(Conflict):
    def __init__(self) -> None:
        super().__init__("A participant with this phone number already exists")


class StaleWrite(Conflict):
    """The stored item changed between read and conditional write."""

    def __init__(self, what: str) -> None:
        super().__init__(f"{what} was modified concurrently. Please retry.")


class CapacityError(CoreError):
    pass


class SlotsExhausted(CapacityError):
    def __init__(self, remaining: int, requested: int) -> None:
        super().__init__(
            f"{remaining} slots remaining. Cannot assign {requested} tickets."
        )
        self.remaining = remaining


class TicketCapExceeded(CapacityError):
    def __init__(self, cap: int, held: int, requested: int) -> None:
        super().__init__(
            f"Participant holds {held} tickets; assigning {requested} more "
            f"would exceed the limit of {cap}"
        )
        self.cap = cap


class NotFound(CoreError):
    pass


class CompetitionNotFound(NotFound):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Competition {competition_id} not found")


class ParticipantNotFound(NotFound):
    def __init__(self, participant_id: str) -> None:
        super().__init__(f"Participant {participant_id} not found")


class TicketNotFound(NotFound):
    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket {ticket_id} not found for participant")


class Precondition(CoreError):
    pass


class JudgmentPending(Precondition):
    def __init__(self, competition_id: str) -> None:
        super().__init__(
            f"Final judge coordinates are not set for competition {competition_id}"
        )


class ResultNotComputed(Precondition):
    def __init__(self, competition_id: str) -> None:
        super().__init__(f"Winners have not been computed for competition {competition_id}")
