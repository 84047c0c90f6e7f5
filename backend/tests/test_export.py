from __future__ import annotations

import csv
import io

from conftest import FIXED_NOW, submission

from spotball.export import EXPORT_HEADER, export_result_rows, write_csv


def test_export_lists_every_participant_ticket_and_marker(
    lifecycle, winners, make_competition, store
):
    """チケット無し・マーカー無しの参加者も含め、全員分の行を出す。"""

    competition = make_competition(markers_per_ticket=2)
    priya = lifecycle.register_participant(competition.id, "Priya", "111")
    arjun = lifecycle.register_participant(competition.id, "Arjun", "222")
    lifecycle.register_participant(competition.id, "Sneha", "333")

    t_priya = lifecycle.assign_tickets(competition.id, priya.id, 1)[0]
    t_arjun = lifecycle.assign_tickets(competition.id, arjun.id, 2)
    lifecycle.submit_markers(
        competition.id, priya.id, [submission(t_priya.id, (0.5, 0.5), (0.2, 0.2))]
    )
    lifecycle.submit_markers(
        competition.id, arjun.id, [submission(t_arjun[0].id, (0.6, 0.5), (0.9, 0.9))]
    )
    lifecycle.set_final_judge_point(competition.id, 0.5, 0.5)
    winners.compute_winners(competition.id)

    rows = export_result_rows(store, competition.id)

    # Arjun: 2 markers + 1 empty ticket, Priya: 2 markers, Sneha: no tickets
    assert [r["participantName"] for r in rows] == ["Arjun"] * 3 + ["Priya"] * 2 + ["Sneha"]
    assert all(r["finalJudgeX"] == "0.500000" for r in rows)
    assert all(r["computedAt"] == FIXED_NOW.isoformat() for r in rows)

    priya_rows = [r for r in rows if r["participantName"] == "Priya"]
    assert {r["winnerRank"] for r in priya_rows} == {"1"}
    assert priya_rows[0]["distanceToFinal"] == "0.000000"
    assert priya_rows[0]["markerId"] == f"{t_priya.id}-marker-1"

    empty_ticket = next(r for r in rows if r["ticketId"] == t_arjun[1].id)
    assert empty_ticket["ticketStatus"] == "ASSIGNED"
    assert empty_ticket["markerId"] == ""
    assert empty_ticket["winnerRank"] == ""

    sneha = rows[-1]
    assert sneha["ticketId"] == ""
    assert sneha["participantPhone"] == "333"


def test_export_before_judging_leaves_distance_blank(lifecycle, make_competition, store):
    """判定前は距離・順位・計算時刻を空欄にする。"""

    competition = make_competition(markers_per_ticket=1)
    p = lifecycle.register_participant(competition.id, "Priya", "111")
    t = lifecycle.assign_tickets(competition.id, p.id, 1)[0]
    lifecycle.submit_markers(competition.id, p.id, [submission(t.id, (0.3, 0.4))])

    rows = export_result_rows(store, competition.id)

    assert len(rows) == 1
    assert rows[0]["markerX"] == "0.300000"
    assert rows[0]["distanceToFinal"] == ""
    assert rows[0]["winnerRank"] == ""
    assert rows[0]["finalJudgeX"] == ""
    assert rows[0]["computedAt"] == ""


def test_write_csv_uses_fixed_header(make_competition, store):
    """CSV の見出し行は固定、参加者がいなくても大会行を1行出す。"""

    competition = make_competition(title='Gold, "Coin"')

    text = write_csv(export_result_rows(store, competition.id))
    parsed = list(csv.reader(io.StringIO(text)))

    assert parsed[0] == EXPORT_HEADER
    assert len(parsed) == 2
    assert parsed[1][0] == competition.id
    assert parsed[1][1] == 'Gold, "Coin"'
