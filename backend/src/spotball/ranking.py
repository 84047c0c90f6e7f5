from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime

from .domain import Marker, Participant, TicketStatus, WinnerResult, WinnerRow
from .errors import CompetitionNotFound, JudgmentPending, ResultNotComputed
from .lifecycle import CompetitionLocks
from .store import Store, now_utc

logger = logging.getLogger(__name__)


def distance(marker: Marker, final_x: float, final_y: float) -> float:
    return math.hypot(marker.x - final_x, marker.y - final_y)


def rank_tickets(
    final_x: float, final_y: float, participants: list[Participant]
) -> list[WinnerRow]:
    """USED チケットを判定座標からの最短距離の昇順で順位付けする。

    チケットのスコアは自身のマーカーのうち最も近いものの距離。
    同距離はチケット番号の昇順で決める（1,2,3 と連番）。
    マーカーを持たないチケットは順位付けの対象外。
    """

    scored: list[tuple[float, int, Participant, str, Marker]] = []
    for participant in participants:
        for ticket in participant.tickets:
            if ticket.status is not TicketStatus.USED or not ticket.markers:
                continue
            closest = min(ticket.markers, key=lambda m: distance(m, final_x, final_y))
            scored.append(
                (
                    distance(closest, final_x, final_y),
                    ticket.ticket_number,
                    participant,
                    ticket.id,
                    closest,
                )
            )

    scored.sort(key=lambda s: (s[0], s[1]))
    return [
        WinnerRow(
            ticket_id=ticket_id,
            ticket_number=ticket_number,
            participant_id=participant.id,
            participant_name=participant.name,
            participant_phone=participant.phone,
            distance=d,
            rank=rank,
            marker=marker,
        )
        for rank, (d, ticket_number, participant, ticket_id, marker) in enumerate(scored, start=1)
    ]


class WinnerComputation:
    def __init__(
        self,
        store: Store,
        locks: CompetitionLocks | None = None,
        now: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.locks = locks or CompetitionLocks()
        self._now = now

    def _judge_point(self, competition_id: str) -> tuple[float, float] | None:
        competition = self.store.get_competition(competition_id)
        if competition is None:
            raise CompetitionNotFound(competition_id)
        if competition.final_judge_x is None or competition.final_judge_y is None:
            return None
        return competition.final_judge_x, competition.final_judge_y

    def compute_winners(self, competition_id: str) -> WinnerResult:
        """Rank every USED ticket against the judged point and cache the result.

        Ranking runs on a snapshot without holding the competition lock; only
        the cache write is serialized. A locked result is returned unchanged.
        """

        while True:
            cached = self.store.get_result(competition_id)
            if cached is not None and cached.locked:
                return cached

            point = self._judge_point(competition_id)
            if point is None:
                raise JudgmentPending(competition_id)

            participants = self.store.list_participants(competition_id)
            result = WinnerResult(
                competition_id=competition_id,
                final_judge_x=point[0],
                final_judge_y=point[1],
                rows=rank_tickets(point[0], point[1], participants),
                computed_at=self._now(),
            )

            with self.locks.hold(competition_id):
                cached = self.store.get_result(competition_id)
                if cached is not None and cached.locked:
                    return cached
                # 計算中に判定座標が差し替えられた場合はやり直す
                if self._judge_point(competition_id) != point:
                    continue
                self.store.save_result(result)

            logger.info(
                "winners computed for %s: %d ranked tickets", competition_id, len(result.rows)
            )
            return result

    def get_result(self, competition_id: str) -> WinnerResult | None:
        if self.store.get_competition(competition_id) is None:
            raise CompetitionNotFound(competition_id)
        return self.store.get_result(competition_id)

    def lock_result(self, competition_id: str) -> WinnerResult:
        with self.locks.hold(competition_id):
            result = self.get_result(competition_id)
            if result is None:
                raise ResultNotComputed(competition_id)
            if not result.locked:
                result = result.model_copy(update={"locked": True})
                self.store.save_result(result)
                logger.info("result locked for %s", competition_id)
        return result
