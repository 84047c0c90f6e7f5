from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

import jwt


class TokenKind(str, Enum):
    ADMIN = "admin_token"
    COMPETITION_ACCESS = "competition_access"
    PARTICIPANT_ACCESS = "participant_access"


DEFAULT_TTL: dict[TokenKind, timedelta] = {
    TokenKind.ADMIN: timedelta(hours=12),
    TokenKind.COMPETITION_ACCESS: timedelta(hours=1),
    TokenKind.PARTICIPANT_ACCESS: timedelta(hours=24),
}

# 種別ごとのクレーム形状（互いに排他）
_CLAIM_KEYS: dict[TokenKind, frozenset[str]] = {
    TokenKind.ADMIN: frozenset({"sub", "username", "role"}),
    TokenKind.COMPETITION_ACCESS: frozenset({"competitionId"}),
    TokenKind.PARTICIPANT_ACCESS: frozenset({"competitionId", "participantId"}),
}

_REGISTERED = frozenset({"type", "iat", "exp"})


class TokenError(Exception):
    pass


class ExpiredToken(TokenError):
    pass


class InvalidToken(TokenError):
    pass


def claims_match(kind: TokenKind, claims: dict[str, Any]) -> bool:
    if claims.get("type") != kind.value:
        return False
    keys = frozenset(claims) - _REGISTERED
    if keys != _CLAIM_KEYS[kind]:
        return False
    if kind is TokenKind.ADMIN:
        return claims.get("role") == "ADMIN"
    return all(isinstance(claims[k], str) and claims[k] for k in keys)


class TokenService:
    """Issues and verifies signed, time-limited tokens.

    No state is kept server-side: expiry and signature are checked on every
    ``verify`` call.
    """

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm

    def issue(
        self,
        kind: TokenKind,
        claims: dict[str, Any],
        ttl: timedelta | None = None,
    ) -> str:
        now = datetime.now(timezone.utc)
        payload = dict(claims)
        payload["type"] = kind.value
        payload["iat"] = now
        payload["exp"] = now + (ttl if ttl is not None else DEFAULT_TTL[kind])
        if not claims_match(kind, payload):
            raise ValueError(f"claims do not match the shape of {kind.value}")
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise ExpiredToken("token expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken("token invalid") from e

    def issue_admin(self, username: str) -> str:
        return self.issue(
            TokenKind.ADMIN, {"sub": "admin", "username": username, "role": "ADMIN"}
        )

    def issue_competition_access(self, competition_id: str) -> str:
        return self.issue(TokenKind.COMPETITION_ACCESS, {"competitionId": competition_id})

    def issue_participant_access(self, competition_id: str, participant_id: str) -> str:
        return self.issue(
            TokenKind.PARTICIPANT_ACCESS,
            {"competitionId": competition_id, "participantId": participant_id},
        )
