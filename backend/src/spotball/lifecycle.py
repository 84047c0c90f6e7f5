"""Ticket and marker state transitions.

Ticket state machine::

    AVAILABLE --assign--> ASSIGNED --submit(exact marker count)--> USED

Nothing returns to AVAILABLE or ASSIGNED. Within one process every mutating
operation holds the competition's lock for its whole read-validate-write
sequence. Across processes the store's conditional writes decide: a write
based on a stale read raises ``StaleWrite`` and the operation is re-run from
a fresh read, and ``create_tickets`` refuses to exceed ``max_entries``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TypeVar

from werkzeug.security import generate_password_hash

from .domain import (
    Competition,
    CompetitionStatus,
    CreateCompetitionRequest,
    Marker,
    Participant,
    Ticket,
    TicketSpec,
    TicketStatus,
    TicketSubmission,
    new_id,
    normalize_phone,
)
from .errors import (
    AlreadyClosed,
    AlreadySubmitted,
    CompetitionInactive,
    CompetitionNotFound,
    EntryComplete,
    FieldError,
    InvalidCoordinate,
    MarkerCountMismatch,
    ParticipantExists,
    ParticipantNotFound,
    ResultLocked,
    SlotsExhausted,
    StaleWrite,
    TicketCapExceeded,
    TicketNotFound,
    ValidationFailed,
    marker_count_error,
)
from .store import Store, now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class CompetitionLocks:
    """One mutex per competition id, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._slots)

    @contextmanager
    def hold(self, competition_id: str) -> Iterator[None]:
        with self._guard:
            slot = self._slots.setdefault(competition_id, _Slot())
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._slots[competition_id]


def tickets_not_available(tickets: list[Ticket]) -> int:
    return sum(1 for t in tickets if t.status is not TicketStatus.AVAILABLE)


def has_completed_entry(participant: Participant) -> bool:
    """参加者の全チケットが USED なら応募完了とみなす（チケット0枚は未完了）。"""

    return bool(participant.tickets) and all(
        t.status is TicketStatus.USED for t in participant.tickets
    )


def _coordinate_errors(index: int, submission: TicketSubmission) -> list[FieldError]:
    errors: list[FieldError] = []
    for m_index, marker in enumerate(submission.markers):
        for axis in ("x", "y"):
            value = getattr(marker, axis)
            if not 0 <= value <= 1:
                errors.append(
                    FieldError(
                        path=f"tickets[{index}].markers[{m_index}].{axis}",
                        msg=(
                            f"Marker {m_index} {axis} coordinate must be a "
                            "normalized value between 0 and 1"
                        ),
                        value=value,
                    )
                )
    return errors


class TicketLifecycle:
    def __init__(
        self,
        store: Store,
        locks: CompetitionLocks | None = None,
        max_tickets_per_participant: int = 100,
        now: Callable[[], datetime] = now_utc,
        max_write_attempts: int = 3,
    ) -> None:
        self.store = store
        self.locks = locks or CompetitionLocks()
        self.max_tickets_per_participant = max_tickets_per_participant
        self.max_write_attempts = max_write_attempts
        self._now = now

    def _serialized(self, competition_id: str, operation: Callable[[], T]) -> T:
        """Run ``operation`` under the competition lock, re-running it from a
        fresh read when the store reports a concurrent write."""

        attempt = 1
        while True:
            try:
                with self.locks.hold(competition_id):
                    return operation()
            except StaleWrite:
                if attempt >= self.max_write_attempts:
                    raise
                logger.warning(
                    "concurrent write on %s, retrying (%d/%d)",
                    competition_id,
                    attempt,
                    self.max_write_attempts,
                )
                attempt += 1

    # ---- reads ------------------------------------------------------------

    def get_competition(self, competition_id: str) -> Competition:
        competition = self.store.get_competition(competition_id)
        if competition is None:
            raise CompetitionNotFound(competition_id)
        return competition

    def get_participant(self, competition_id: str, participant_id: str) -> Participant:
        participant = self.store.get_participant(competition_id, participant_id)
        if participant is None:
            raise ParticipantNotFound(participant_id)
        return participant

    def tickets_sold(self, competition_id: str) -> int:
        return tickets_not_available(self.store.list_tickets(competition_id))

    def remaining_slots(self, competition_id: str) -> int:
        competition = self.get_competition(competition_id)
        return max(0, competition.max_entries - self.tickets_sold(competition_id))

    # ---- competitions and participants -------------------------------------

    def create_competition(self, req: CreateCompetitionRequest) -> Competition:
        now = self._now()
        competition = Competition(
            id=new_id("cmp"),
            title=req.title,
            image_url=req.image_url,
            max_entries=req.max_entries,
            price_per_ticket=req.price_per_ticket,
            markers_per_ticket=req.markers_per_ticket,
            status=CompetitionStatus.ACTIVE,
            invite_password_hash=generate_password_hash(req.invite_password),
            created_at=now,
            ends_at=req.ends_at or now + timedelta(days=7),
        )
        self.store.create_competition(competition)
        logger.info("competition created: %s (max_entries=%d)", competition.id, competition.max_entries)
        return competition

    def register_participant(
        self, competition_id: str, name: str, phone: str, email: str | None = None
    ) -> Participant:
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValidationFailed(
                [FieldError(path="phone", msg="Phone number is required", value=phone)]
            )

        def apply() -> Participant:
            self.get_competition(competition_id)
            if self.store.find_participant_by_phone(competition_id, normalized) is not None:
                raise ParticipantExists()
            return self.store.save_participant(
                Participant(
                    id=new_id("p"),
                    competition_id=competition_id,
                    name=name.strip(),
                    phone=normalized,
                    email=email,
                )
            )

        participant = self._serialized(competition_id, apply)
        logger.info("participant registered: %s in %s", participant.id, competition_id)
        return participant

    def delete_participant(self, competition_id: str, participant_id: str) -> int:
        """Administrative removal; drops every ticket the participant holds.

        A computed result that is not yet locked is discarded, since it may
        rank the removed tickets.
        """

        def apply() -> int:
            participant = self.get_participant(competition_id, participant_id)
            cached = self.store.get_result(competition_id)
            if cached is not None and cached.locked:
                raise ResultLocked(competition_id)
            self.store.delete_participant(participant)
            self.store.delete_result(competition_id)
            return len(participant.tickets)

        removed = self._serialized(competition_id, apply)
        logger.info(
            "participant deleted: %s in %s (%d tickets removed)",
            participant_id,
            competition_id,
            removed,
        )
        return removed

    # ---- transitions ---------------------------------------------------------

    def assign_tickets(self, competition_id: str, participant_id: str, count: int) -> list[Ticket]:
        if count < 1:
            raise ValidationFailed(
                [FieldError(path="ticket_count", msg="Ticket count must be at least 1", value=count)]
            )

        def apply() -> tuple[list[Ticket], int]:
            competition = self.get_competition(competition_id)
            if competition.status is not CompetitionStatus.ACTIVE:
                raise CompetitionInactive(competition_id)
            participant = self.get_participant(competition_id, participant_id)

            remaining = max(0, competition.max_entries - self.tickets_sold(competition_id))
            if count > remaining:
                raise SlotsExhausted(remaining, count)

            held = tickets_not_available(participant.tickets)
            if held + count > self.max_tickets_per_participant:
                raise TicketCapExceeded(self.max_tickets_per_participant, held, count)

            specs = [
                TicketSpec(
                    participant_id=participant_id,
                    ticket_number=self.store.next_ticket_number(competition_id),
                    markers_allowed=competition.markers_per_ticket,
                )
                for _ in range(count)
            ]
            # 上限は保存時にも検証される（他プロセスとの同時割り当て対策）
            tickets = self.store.create_tickets(competition_id, specs, competition.max_entries)
            return tickets, remaining - count

        tickets, remaining = self._serialized(competition_id, apply)
        logger.info(
            "assigned %d tickets to %s in %s (%d slots remaining)",
            count,
            participant_id,
            competition_id,
            remaining,
        )
        return tickets

    def submit_markers(
        self,
        competition_id: str,
        participant_id: str,
        submissions: list[TicketSubmission],
    ) -> Participant:
        if not submissions:
            raise ValidationFailed(
                [FieldError(path="tickets", msg="Tickets payload is required", value=[])]
            )

        def apply() -> Participant:
            self.get_competition(competition_id)
            participant = self.get_participant(competition_id, participant_id)
            if has_completed_entry(participant):
                raise EntryComplete()

            by_id = {t.id: t for t in participant.tickets}
            seen: set[str] = set()
            errors: list[FieldError] = []
            kinds: set[str] = set()

            # 全件検証してから反映する（部分適用はしない）
            for index, submission in enumerate(submissions):
                ticket = by_id.get(submission.ticket_id)
                if ticket is None or ticket.competition_id != competition_id:
                    raise TicketNotFound(submission.ticket_id)
                if submission.ticket_id in seen:
                    kinds.add("duplicate")
                    errors.append(
                        FieldError(
                            path=f"tickets[{index}].ticket_id",
                            msg="Ticket submitted more than once in the same request",
                            value=submission.ticket_id,
                        )
                    )
                    continue
                seen.add(submission.ticket_id)
                if ticket.status is TicketStatus.USED:
                    raise AlreadySubmitted(ticket.ticket_number)
                if ticket.status is not TicketStatus.ASSIGNED:
                    raise TicketNotFound(submission.ticket_id)
                if len(submission.markers) != ticket.markers_allowed:
                    kinds.add("count")
                    errors.append(
                        marker_count_error(
                            ticket.ticket_number,
                            ticket.markers_allowed,
                            len(submission.markers),
                            path=f"tickets[{index}].markers",
                        )
                    )
                coordinate_errors = _coordinate_errors(index, submission)
                if coordinate_errors:
                    kinds.add("coordinate")
                    errors.extend(coordinate_errors)

            if errors:
                if kinds == {"count"}:
                    raise MarkerCountMismatch(errors)
                if kinds == {"coordinate"}:
                    raise InvalidCoordinate(errors)
                raise ValidationFailed(errors)

            submitted_at = self._now()
            for submission in submissions:
                ticket = by_id[submission.ticket_id]
                ticket.markers = [
                    Marker(id=f"{ticket.id}-marker-{n}", x=m.x, y=m.y, label=m.label)
                    for n, m in enumerate(submission.markers, start=1)
                ]
                ticket.markers_used = len(ticket.markers)
                ticket.status = TicketStatus.USED
                ticket.submitted_at = submitted_at
            participant.last_submission_at = submitted_at
            return self.store.save_participant(participant)

        participant = self._serialized(competition_id, apply)
        logger.info(
            "participant %s submitted %d tickets in %s",
            participant_id,
            len(submissions),
            competition_id,
        )
        return participant

    def close_competition(self, competition_id: str) -> Competition:
        def apply() -> Competition:
            competition = self.get_competition(competition_id)
            if competition.status is CompetitionStatus.CLOSED:
                raise AlreadyClosed(competition_id)
            return self.store.update_competition(
                competition_id,
                {"status": CompetitionStatus.CLOSED},
                expected={"status": CompetitionStatus.ACTIVE},
            )

        updated = self._serialized(competition_id, apply)
        logger.info("competition closed: %s", competition_id)
        return updated

    def set_final_judge_point(self, competition_id: str, x: float, y: float) -> Competition:
        errors = [
            FieldError(
                path=f"final_judge_{axis}",
                msg=f"final_judge_{axis} must be between 0 and 1",
                value=v,
            )
            for axis, v in (("x", x), ("y", y))
            if not 0 <= v <= 1
        ]
        if errors:
            raise ValidationFailed(errors)

        def apply() -> Competition:
            self.get_competition(competition_id)
            cached = self.store.get_result(competition_id)
            if cached is not None and cached.locked:
                raise ResultLocked(competition_id)
            updated = self.store.update_competition(
                competition_id, {"final_judge_x": float(x), "final_judge_y": float(y)}
            )
            # 判定座標が変わったので計算済みの結果は無効
            self.store.delete_result(competition_id)
            return updated

        updated = self._serialized(competition_id, apply)
        logger.info("final judge point set for %s: (%.6f, %.6f)", competition_id, x, y)
        return updated
