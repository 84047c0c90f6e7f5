from __future__ import annotations

import pytest
from conftest import FIXED_NOW, submission

from spotball.domain import TicketStatus
from spotball.errors import (
    AlreadyClosed,
    AlreadySubmitted,
    EntryComplete,
    InvalidCoordinate,
    MarkerCountMismatch,
    ParticipantNotFound,
    ResultLocked,
    TicketNotFound,
    ValidationFailed,
)
from spotball.lifecycle import has_completed_entry


@pytest.fixture()
def entrant(lifecycle, make_competition):
    competition = make_competition(markers_per_ticket=3)
    participant = lifecycle.register_participant(competition.id, "Priya Sharma", "+91 98765 43210")
    tickets = lifecycle.assign_tickets(competition.id, participant.id, 2)
    return competition, participant, tickets


def test_submit_markers_marks_ticket_used(lifecycle, entrant):
    """3マーカーのチケットに3点を送ると USED になる。"""

    competition, participant, tickets = entrant
    updated = lifecycle.submit_markers(
        competition.id,
        participant.id,
        [submission(tickets[0].id, (0.1, 0.1), (0.5, 0.5), (0.9, 0.9))],
    )

    ticket = next(t for t in updated.tickets if t.id == tickets[0].id)
    assert ticket.status is TicketStatus.USED
    assert ticket.markers_used == 3
    assert ticket.submitted_at == FIXED_NOW
    assert [m.id for m in ticket.markers] == [
        f"{ticket.id}-marker-1",
        f"{ticket.id}-marker-2",
        f"{ticket.id}-marker-3",
    ]
    assert not has_completed_entry(updated)


@pytest.mark.parametrize("count", [2, 4])
def test_submit_markers_requires_exact_marker_count(lifecycle, entrant, count):
    """k-1 点でも k+1 点でもマーカー数不一致で弾く。"""

    competition, participant, tickets = entrant
    points = [(0.5, 0.5)] * count

    with pytest.raises(MarkerCountMismatch) as exc:
        lifecycle.submit_markers(
            competition.id, participant.id, [submission(tickets[0].id, *points)]
        )
    assert [e.value for e in exc.value.errors] == [count]
    assert "exactly 3 markers" in str(exc.value)


def test_submit_markers_rejects_used_ticket_regardless_of_payload(
    lifecycle, entrant
):
    """提出済みチケットへの再提出は内容に関係なく AlreadySubmitted。"""

    competition, participant, tickets = entrant
    lifecycle.submit_markers(
        competition.id, participant.id, [submission(tickets[0].id, (0.1, 0.1), (0.2, 0.2), (0.3, 0.3))]
    )

    for payload in ([(0.4, 0.4)] * 3, [(0.4, 0.4)], [(5.0, 5.0)] * 3):
        with pytest.raises(AlreadySubmitted) as exc:
            lifecycle.submit_markers(
                competition.id, participant.id, [submission(tickets[0].id, *payload)]
            )
        assert exc.value.ticket_number == tickets[0].ticket_number


def test_submit_markers_rejects_after_entry_complete(lifecycle, entrant):
    """全チケット提出済みの参加者は以降の提出をまとめて弾く。"""

    competition, participant, tickets = entrant
    lifecycle.submit_markers(
        competition.id,
        participant.id,
        [submission(t.id, (0.1, 0.1), (0.2, 0.2), (0.3, 0.3)) for t in tickets],
    )

    with pytest.raises(EntryComplete):
        lifecycle.submit_markers(
            competition.id, participant.id, [submission(tickets[0].id, (0.1, 0.1))]
        )


def test_submit_markers_is_all_or_nothing(lifecycle, entrant, store):
    """バッチ内に1件でも不正があれば何も反映しない。"""

    competition, participant, tickets = entrant

    with pytest.raises(MarkerCountMismatch):
        lifecycle.submit_markers(
            competition.id,
            participant.id,
            [
                submission(tickets[0].id, (0.1, 0.1), (0.2, 0.2), (0.3, 0.3)),
                submission(tickets[1].id, (0.1, 0.1)),
            ],
        )

    stored = store.get_participant(competition.id, participant.id)
    assert all(t.status is TicketStatus.ASSIGNED for t in stored.tickets)
    assert all(not t.markers for t in stored.tickets)


def test_submit_markers_enumerates_every_bad_coordinate(lifecycle, entrant, store):
    """範囲外の座標はマーカー番号と軸を添えて全件報告する。"""

    competition, participant, tickets = entrant

    with pytest.raises(InvalidCoordinate) as exc:
        lifecycle.submit_markers(
            competition.id,
            participant.id,
            [
                submission(tickets[0].id, (1.2, 0.5), (0.5, 0.5), (0.5, -0.1)),
                submission(tickets[1].id, (0.5, 0.5), (0.5, 0.5), (2.0, 3.0)),
            ],
        )

    paths = [e.path for e in exc.value.errors]
    assert paths == [
        "tickets[0].markers[0].x",
        "tickets[0].markers[2].y",
        "tickets[1].markers[2].x",
        "tickets[1].markers[2].y",
    ]
    stored = store.get_participant(competition.id, participant.id)
    assert all(t.status is TicketStatus.ASSIGNED for t in stored.tickets)


def test_submit_markers_reports_count_and_coordinate_errors_together(lifecycle, entrant, store):
    """マーカー数不一致と範囲外座標が別チケットにあっても、両方まとめて報告する。"""

    competition, participant, tickets = entrant

    with pytest.raises(ValidationFailed) as exc:
        lifecycle.submit_markers(
            competition.id,
            participant.id,
            [
                submission(tickets[0].id, (1.5, 0.5), (0.5, 0.5), (0.5, 0.5)),
                submission(tickets[1].id, (0.5, 0.5)),
            ],
        )

    assert [e.path for e in exc.value.errors] == [
        "tickets[0].markers[0].x",
        "tickets[1].markers",
    ]
    assert not isinstance(exc.value, (MarkerCountMismatch, InvalidCoordinate))
    stored = store.get_participant(competition.id, participant.id)
    assert all(t.status is TicketStatus.ASSIGNED for t in stored.tickets)


def test_submit_markers_reports_every_count_mismatch(lifecycle, entrant):
    """マーカー数不一致だけなら MarkerCountMismatch で全チケット分を返す。"""

    competition, participant, tickets = entrant

    with pytest.raises(MarkerCountMismatch) as exc:
        lifecycle.submit_markers(
            competition.id,
            participant.id,
            [
                submission(tickets[0].id, (0.5, 0.5)),
                submission(tickets[1].id, (0.5, 0.5), (0.5, 0.5)),
            ],
        )

    assert [(e.path, e.value) for e in exc.value.errors] == [
        ("tickets[0].markers", 1),
        ("tickets[1].markers", 2),
    ]


def test_submit_markers_rejects_foreign_or_duplicate_tickets(lifecycle, entrant, make_competition):
    """他人のチケットや同一チケットの重複指定は弾く。"""

    competition, participant, tickets = entrant
    other = lifecycle.register_participant(competition.id, "Arjun", "+91 91234 56789")
    other_ticket = lifecycle.assign_tickets(competition.id, other.id, 1)[0]
    points = [(0.1, 0.1), (0.2, 0.2), (0.3, 0.3)]

    with pytest.raises(TicketNotFound):
        lifecycle.submit_markers(competition.id, participant.id, [submission(other_ticket.id, *points)])

    with pytest.raises(ValidationFailed):
        lifecycle.submit_markers(
            competition.id,
            participant.id,
            [submission(tickets[0].id, *points), submission(tickets[0].id, *points)],
        )

    with pytest.raises(ParticipantNotFound):
        lifecycle.submit_markers(competition.id, "p_missing", [submission(tickets[0].id, *points)])


def test_close_competition_twice_fails(lifecycle, make_competition):
    """締め切り済みの大会を再度締めると AlreadyClosed。"""

    competition = make_competition()
    closed = lifecycle.close_competition(competition.id)
    assert closed.status.value == "CLOSED"

    with pytest.raises(AlreadyClosed):
        lifecycle.close_competition(competition.id)


def test_delete_participant_removes_all_tickets(lifecycle, entrant, store):
    """参加者を削除するとチケットも全て消え、枠が戻る。"""

    competition, participant, tickets = entrant
    lifecycle.submit_markers(
        competition.id, participant.id, [submission(tickets[0].id, (0.1, 0.1), (0.2, 0.2), (0.3, 0.3))]
    )

    removed = lifecycle.delete_participant(competition.id, participant.id)

    assert removed == 2
    assert store.list_tickets(competition.id) == []
    assert lifecycle.remaining_slots(competition.id) == competition.max_entries


def test_delete_participant_discards_unlocked_result(lifecycle, winners, entrant, store):
    """削除した参加者のチケットが残らないよう、未確定の計算結果は破棄する。"""

    competition, participant, tickets = entrant
    other = lifecycle.register_participant(competition.id, "Arjun", "+91 91234 56789")
    other_ticket = lifecycle.assign_tickets(competition.id, other.id, 1)[0]
    lifecycle.submit_markers(
        competition.id, participant.id, [submission(tickets[0].id, (0.5, 0.5), (0.1, 0.1), (0.1, 0.1))]
    )
    lifecycle.submit_markers(
        competition.id, other.id, [submission(other_ticket.id, (0.6, 0.5), (0.1, 0.1), (0.1, 0.1))]
    )
    lifecycle.set_final_judge_point(competition.id, 0.5, 0.5)
    assert winners.compute_winners(competition.id).rows[0].participant_id == participant.id

    lifecycle.delete_participant(competition.id, participant.id)

    assert store.get_result(competition.id) is None
    rows = winners.compute_winners(competition.id).rows
    assert [(r.participant_id, r.rank) for r in rows] == [(other.id, 1)]


def test_delete_participant_refused_once_result_locked(lifecycle, winners, entrant, store):
    """確定済みの結果がある大会では参加者を削除できない。"""

    competition, participant, _ = entrant
    lifecycle.set_final_judge_point(competition.id, 0.5, 0.5)
    winners.compute_winners(competition.id)
    winners.lock_result(competition.id)

    with pytest.raises(ResultLocked):
        lifecycle.delete_participant(competition.id, participant.id)

    assert store.get_participant(competition.id, participant.id) is not None
    assert store.get_result(competition.id).locked
