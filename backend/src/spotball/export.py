from __future__ import annotations

import csv
import io
from collections.abc import Iterable

from .domain import Competition, Participant, WinnerResult
from .errors import CompetitionNotFound
from .ranking import distance
from .store import Store

EXPORT_HEADER = [
    "competitionId",
    "competitionTitle",
    "participantId",
    "participantName",
    "participantPhone",
    "ticketId",
    "ticketNumber",
    "ticketStatus",
    "markerId",
    "markerX",
    "markerY",
    "distanceToFinal",
    "winnerRank",
    "finalJudgeX",
    "finalJudgeY",
    "computedAt",
]


def _fmt(value: float | None) -> str:
    if value is None:
        return ""
    return f"{value:.6f}"


def build_result_rows(
    competition: Competition,
    participants: list[Participant],
    result: WinnerResult | None,
) -> list[dict[str, str]]:
    """参加者×チケット×マーカーごとに1行を返す。

    チケットを持たない参加者、マーカーの無いチケットも空欄付きで1行出す。
    判定座標と計算時刻は全行に繰り返し載せる。
    """

    final_x = competition.final_judge_x
    final_y = competition.final_judge_y
    judged = final_x is not None and final_y is not None
    rank_by_ticket = {r.ticket_id: r.rank for r in result.rows} if result else {}
    computed_at = result.computed_at.isoformat() if result else ""

    def row(**fields: str) -> dict[str, str]:
        base = {key: "" for key in EXPORT_HEADER}
        base.update(
            competitionId=competition.id,
            competitionTitle=competition.title,
            finalJudgeX=_fmt(final_x),
            finalJudgeY=_fmt(final_y),
            computedAt=computed_at,
        )
        base.update(fields)
        return base

    rows: list[dict[str, str]] = []
    if not participants:
        rows.append(row())
        return rows

    for participant in sorted(participants, key=lambda p: (p.name, p.id)):
        who = {
            "participantId": participant.id,
            "participantName": participant.name,
            "participantPhone": participant.phone,
        }
        if not participant.tickets:
            rows.append(row(**who))
            continue

        for ticket in sorted(participant.tickets, key=lambda t: t.ticket_number):
            rank = rank_by_ticket.get(ticket.id)
            which = {
                "ticketId": ticket.id,
                "ticketNumber": str(ticket.ticket_number),
                "ticketStatus": ticket.status.value,
                "winnerRank": str(rank) if rank is not None else "",
            }
            if not ticket.markers:
                rows.append(row(**who, **which))
                continue
            for marker in ticket.markers:
                rows.append(
                    row(
                        **who,
                        **which,
                        markerId=marker.id,
                        markerX=_fmt(marker.x),
                        markerY=_fmt(marker.y),
                        distanceToFinal=_fmt(distance(marker, final_x, final_y)) if judged else "",
                    )
                )
    return rows


def write_csv(rows: Iterable[dict[str, str]]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=EXPORT_HEADER, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buf.getvalue()


def export_result_rows(store: Store, competition_id: str) -> list[dict[str, str]]:
    competition = store.get_competition(competition_id)
    if competition is None:
        raise CompetitionNotFound(competition_id)
    return build_result_rows(
        competition,
        store.list_participants(competition_id),
        store.get_result(competition_id),
    )
