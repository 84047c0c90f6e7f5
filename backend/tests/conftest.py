from __future__ import annotations

from datetime import datetime, timezone

import pytest

from spotball.domain import CreateCompetitionRequest, MarkerInput, TicketSubmission
from spotball.lifecycle import CompetitionLocks, TicketLifecycle
from spotball.ranking import WinnerComputation
from spotball.store import InMemoryStore

FIXED_NOW = datetime(2025, 10, 20, 10, 30, tzinfo=timezone.utc)


@pytest.fixture()
def store() -> InMemoryStore:
    return InMemoryStore.create()


@pytest.fixture()
def locks() -> CompetitionLocks:
    return CompetitionLocks()


@pytest.fixture()
def lifecycle(store, locks) -> TicketLifecycle:
    return TicketLifecycle(store, locks, max_tickets_per_participant=5, now=lambda: FIXED_NOW)


@pytest.fixture()
def winners(store, locks) -> WinnerComputation:
    return WinnerComputation(store, locks, now=lambda: FIXED_NOW)


@pytest.fixture()
def make_competition(lifecycle):
    def _make(max_entries: int = 10, markers_per_ticket: int = 3, title: str = "Gold Coin"):
        return lifecycle.create_competition(
            CreateCompetitionRequest(
                title=title,
                max_entries=max_entries,
                invite_password="competition123",
                image_url="https://example.com/gold-coin.png",
                markers_per_ticket=markers_per_ticket,
            )
        )

    return _make


def submission(ticket_id: str, *points: tuple[float, float]) -> TicketSubmission:
    return TicketSubmission(
        ticket_id=ticket_id, markers=[MarkerInput(x=x, y=y) for x, y in points]
    )
