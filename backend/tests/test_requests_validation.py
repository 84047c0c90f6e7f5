from __future__ import annotations

import pytest
from pydantic import ValidationError

from spotball.domain import (
    AssignTicketsRequest,
    AuthenticateParticipantRequest,
    CreateCompetitionRequest,
    FinalResultRequest,
    RegisterParticipantRequest,
    SubmitEntriesRequest,
)


def test_create_competition_request_rejects_blank_title_and_bad_url():
    """大会名が空白のみ、画像URLが http(s) でない場合は弾く。"""

    with pytest.raises(ValidationError) as exc:
        CreateCompetitionRequest(
            title="   ", max_entries=10, invite_password="pw", image_url="ftp://x"
        )
    fields = {e["loc"][0] for e in exc.value.errors()}
    assert fields == {"title", "image_url"}


def test_create_competition_request_defaults():
    """価格とマーカー数は省略時に既定値になる。"""

    req = CreateCompetitionRequest(
        title=" Gold Coin ", max_entries=100, invite_password="pw", image_url="https://x/y.png"
    )
    assert req.title == "Gold Coin"
    assert req.price_per_ticket == 500
    assert req.markers_per_ticket == 3


def test_assign_tickets_request_bounds():
    """割り当て枚数は1〜100。"""

    with pytest.raises(ValidationError):
        AssignTicketsRequest(participant_id="p1", ticket_count=0)
    with pytest.raises(ValidationError):
        AssignTicketsRequest(participant_id="  ", ticket_count=1)
    assert AssignTicketsRequest(participant_id="p1", ticket_count=100).ticket_count == 100


def test_final_result_request_reports_both_axes():
    """判定座標は両軸とも範囲外ならまとめて報告する。"""

    with pytest.raises(ValidationError) as exc:
        FinalResultRequest(final_judge_x=1.5, final_judge_y=-0.1)
    assert {e["loc"][0] for e in exc.value.errors()} == {"final_judge_x", "final_judge_y"}


def test_participant_requests_strip_and_require_fields():
    """氏名と電話番号は必須、メールは空なら未指定扱い。"""

    with pytest.raises(ValidationError):
        AuthenticateParticipantRequest(name=" ", phone="123")

    req = RegisterParticipantRequest(name=" Priya ", phone=" +91 98765 43210 ", email="  ")
    assert req.name == "Priya"
    assert req.phone == "+91 98765 43210"
    assert req.email is None

    with pytest.raises(ValidationError):
        RegisterParticipantRequest(name="Priya", phone="1", email="not-an-email")


def test_submit_entries_request_requires_tickets_and_markers():
    """チケットもマーカーも1件以上必要。"""

    with pytest.raises(ValidationError):
        SubmitEntriesRequest(tickets=[])
    with pytest.raises(ValidationError):
        SubmitEntriesRequest(tickets=[{"ticket_id": "t1", "markers": []}])
