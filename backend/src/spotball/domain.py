from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_PHONE_STRIP = re.compile(r"[^0-9+]")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


def normalize_phone(phone: str) -> str:
    return _PHONE_STRIP.sub("", phone)


class CompetitionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


class TicketStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    ASSIGNED = "ASSIGNED"
    USED = "USED"


class Marker(BaseModel):
    id: str
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)
    label: str | None = None


class Ticket(BaseModel):
    id: str
    competition_id: str
    participant_id: str
    ticket_number: int
    status: TicketStatus = TicketStatus.ASSIGNED
    markers_allowed: int
    markers_used: int = 0
    markers: list[Marker] = Field(default_factory=list)
    submitted_at: datetime | None = None


class TicketSpec(BaseModel):
    """Repository input for a ticket that is about to be created."""

    participant_id: str
    ticket_number: int
    markers_allowed: int
    status: TicketStatus = TicketStatus.ASSIGNED


class Participant(BaseModel):
    id: str
    competition_id: str
    name: str
    phone: str
    email: str | None = None
    tickets: list[Ticket] = Field(default_factory=list)
    last_submission_at: datetime | None = None
    version: int = 0


class Competition(BaseModel):
    id: str
    title: str
    image_url: str
    max_entries: int
    price_per_ticket: float
    markers_per_ticket: int
    status: CompetitionStatus = CompetitionStatus.ACTIVE
    final_judge_x: float | None = None
    final_judge_y: float | None = None
    invite_password_hash: str
    created_at: datetime
    ends_at: datetime

    @property
    def judged(self) -> bool:
        return self.final_judge_x is not None and self.final_judge_y is not None


class PublicCompetition(BaseModel):
    id: str
    title: str
    image_url: str
    status: CompetitionStatus
    price_per_ticket: float
    markers_per_ticket: int
    max_entries: int
    tickets_sold: int
    remaining_slots: int
    ends_at: datetime


class WinnerRow(BaseModel):
    ticket_id: str
    ticket_number: int
    participant_id: str
    participant_name: str
    participant_phone: str
    distance: float
    rank: int
    marker: Marker


class WinnerResult(BaseModel):
    competition_id: str
    final_judge_x: float
    final_judge_y: float
    rows: list[WinnerRow]
    computed_at: datetime
    locked: bool = False

    @property
    def winners(self) -> list[WinnerRow]:
        # 1位が優勝、2位・3位が副賞
        return [r for r in self.rows if r.rank <= 3]


# ---- request value objects -------------------------------------------------


def _required_text(v: object, field: str) -> str:
    if not isinstance(v, str):
        raise TypeError(f"{field} must be a string")
    s = v.strip()
    if not s:
        raise ValueError(f"{field} must not be blank")
    return s


class AdminLoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)

    @field_validator("username", mode="before")
    @classmethod
    def _strip_username(cls, v: object) -> str:
        return _required_text(v, "username")


class VerifyPasswordRequest(BaseModel):
    password: str = Field(min_length=1)

    @field_validator("password", mode="before")
    @classmethod
    def _strip_password(cls, v: object) -> str:
        return _required_text(v, "password")


class AuthenticateParticipantRequest(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    phone: str = Field(min_length=1, max_length=32)

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, v: object) -> str:
        return _required_text(v, "name")

    @field_validator("phone", mode="before")
    @classmethod
    def _strip_phone(cls, v: object) -> str:
        return _required_text(v, "phone")


class RegisterParticipantRequest(AuthenticateParticipantRequest):
    email: str | None = Field(default=None, max_length=254)

    @field_validator("email", mode="before")
    @classmethod
    def _check_email(cls, v: object) -> str | None:
        if v is None:
            return None
        if not isinstance(v, str):
            raise TypeError("email must be a string")
        s = v.strip()
        if not s:
            return None
        if "@" not in s:
            raise ValueError("email must be a valid address")
        return s


class CreateCompetitionRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    max_entries: int = Field(ge=1)
    invite_password: str = Field(min_length=1)
    image_url: str
    price_per_ticket: float = Field(default=500, ge=0)
    markers_per_ticket: int = Field(default=3, ge=1)
    ends_at: datetime | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, v: object) -> str:
        return _required_text(v, "title")

    @field_validator("invite_password", mode="before")
    @classmethod
    def _strip_invite_password(cls, v: object) -> str:
        return _required_text(v, "invite_password")

    @field_validator("image_url")
    @classmethod
    def _check_image_url(cls, v: str) -> str:
        if not re.match(r"^https?://", v):
            raise ValueError("image_url must be an http(s) URL")
        return v


class AssignTicketsRequest(BaseModel):
    participant_id: str = Field(min_length=1)
    ticket_count: int = Field(ge=1, le=100)

    @field_validator("participant_id", mode="before")
    @classmethod
    def _strip_participant_id(cls, v: object) -> str:
        return _required_text(v, "participant_id")


class MarkerInput(BaseModel):
    x: float
    y: float
    label: str | None = Field(default=None, max_length=50)


class TicketSubmission(BaseModel):
    ticket_id: str = Field(min_length=1)
    markers: list[MarkerInput] = Field(min_length=1)


class SubmitEntriesRequest(BaseModel):
    tickets: list[TicketSubmission] = Field(min_length=1)


class FinalResultRequest(BaseModel):
    final_judge_x: float = Field(ge=0, le=1)
    final_judge_y: float = Field(ge=0, le=1)


class StoreBackend(BaseModel):
    kind: Literal["inmemory", "dynamodb"]
