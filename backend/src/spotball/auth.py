"""Request authorization.

``AuthorizationGateway.authorize`` runs its checks in a fixed order: bearer
extraction, signature and expiry, claim shape, competition scope. Claims are
never inspected before the signature has been verified.
"""

from __future__ import annotations

import logging
import secrets
from enum import Enum
from typing import Any

from werkzeug.security import check_password_hash

from .domain import Competition, CompetitionStatus, Participant
from .errors import (
    CompetitionInactive,
    Forbidden,
    IdentityMismatch,
    ParticipantNotFound,
    Unauthenticated,
)
from .store import Store
from .tokens import ExpiredToken, InvalidToken, TokenKind, TokenService, claims_match

logger = logging.getLogger(__name__)


class Sensitivity(str, Enum):
    PUBLIC = "public"
    ADMIN = "admin"
    COMPETITION = "competition"
    PARTICIPANT = "participant"


_KIND_FOR: dict[Sensitivity, TokenKind | None] = {
    Sensitivity.PUBLIC: None,
    Sensitivity.ADMIN: TokenKind.ADMIN,
    Sensitivity.COMPETITION: TokenKind.COMPETITION_ACCESS,
    Sensitivity.PARTICIPANT: TokenKind.PARTICIPANT_ACCESS,
}

# HTTP 層が公開する操作ごとの機密度
OPERATIONS: dict[str, Sensitivity] = {
    "admin_login": Sensitivity.PUBLIC,
    "verify_password": Sensitivity.PUBLIC,
    "get_competition": Sensitivity.COMPETITION,
    "authenticate_participant": Sensitivity.COMPETITION,
    "my_tickets": Sensitivity.PARTICIPANT,
    "submit_markers": Sensitivity.PARTICIPANT,
    "list_competitions": Sensitivity.ADMIN,
    "create_competition": Sensitivity.ADMIN,
    "register_participant": Sensitivity.ADMIN,
    "delete_participant": Sensitivity.ADMIN,
    "assign_tickets": Sensitivity.ADMIN,
    "close_competition": Sensitivity.ADMIN,
    "set_final_judge_point": Sensitivity.ADMIN,
    "compute_winners": Sensitivity.ADMIN,
    "lock_result": Sensitivity.ADMIN,
    "get_results": Sensitivity.ADMIN,
    "export_results": Sensitivity.ADMIN,
}


def required_kind(operation: str) -> TokenKind | None:
    return _KIND_FOR[OPERATIONS[operation]]


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationGateway:
    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    def authorize(
        self,
        authorization: str | None,
        kind: TokenKind,
        competition_id: str | None = None,
    ) -> dict[str, Any]:
        token = extract_bearer_token(authorization)
        if token is None:
            raise Unauthenticated("Access token required")

        try:
            claims = self.tokens.verify(token)
        except ExpiredToken:
            raise Unauthenticated("Token expired. Please authenticate again.") from None
        except InvalidToken:
            logger.warning("rejected malformed token for %s", kind.value)
            raise Forbidden("Invalid or expired token") from None

        if not claims_match(kind, claims):
            logger.warning("rejected token of wrong kind; expected %s", kind.value)
            raise Forbidden("Invalid token type")

        if kind is not TokenKind.ADMIN and competition_id is not None:
            if claims["competitionId"] != competition_id:
                logger.warning(
                    "rejected %s token scoped to %s for %s",
                    kind.value,
                    claims["competitionId"],
                    competition_id,
                )
                raise Forbidden("Token not valid for this resource")

        return claims

    def authorize_operation(
        self,
        operation: str,
        authorization: str | None,
        competition_id: str | None = None,
    ) -> dict[str, Any] | None:
        kind = required_kind(operation)
        if kind is None:
            return None
        return self.authorize(authorization, kind, competition_id)


class Credentials:
    """Checks that mint tokens: admin login, invite password, participant identity."""

    def __init__(
        self,
        store: Store,
        tokens: TokenService,
        admin_username: str,
        admin_password_hash: str = "",
        admin_password: str = "",
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.admin_username = admin_username
        self.admin_password_hash = admin_password_hash
        self.admin_password = admin_password

    def login_admin(self, username: str, password: str) -> str:
        matches = False
        if username == self.admin_username:
            if self.admin_password_hash:
                matches = check_password_hash(self.admin_password_hash, password)
            if not matches and self.admin_password:
                matches = secrets.compare_digest(
                    password.encode("utf-8"), self.admin_password.encode("utf-8")
                )
        if not matches:
            logger.warning("admin login failed for %r", username)
            raise Unauthenticated("Invalid credentials")
        logger.info("admin login: %s", username)
        return self.tokens.issue_admin(username)

    def verify_invite_password(self, competition: Competition, password: str) -> str:
        if competition.status is not CompetitionStatus.ACTIVE:
            raise CompetitionInactive(competition.id)
        if not check_password_hash(competition.invite_password_hash, password):
            raise Unauthenticated("Invalid password")
        return self.tokens.issue_competition_access(competition.id)

    def authenticate_participant(
        self, competition_id: str, name: str, phone: str
    ) -> tuple[Participant, str]:
        participant = self.store.find_participant_by_phone(competition_id, phone)
        if participant is None:
            raise ParticipantNotFound("with this phone number")
        # 電話番号の使い回しによるなりすまし防止: 氏名が一致しなければ拒否
        if name.strip().lower() != participant.name.strip().lower():
            logger.warning("participant name mismatch in %s", competition_id)
            raise IdentityMismatch()
        token = self.tokens.issue_participant_access(competition_id, participant.id)
        logger.info("participant authenticated: %s in %s", participant.id, competition_id)
        return participant, token
