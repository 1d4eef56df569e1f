"""Issuing and verifying signed session tokens.

Two kinds of token share one payload shape:

* access tokens live for a few minutes and accompany every request;
* refresh tokens live for days and are only presented to the refresh endpoint.

Each kind is signed with its own secret, so holding one secret never allows
forging the other kind. Verification never raises for bad input: malformed,
forged, expired or wrong-kind tokens all come back as ``None``.
"""

from __future__ import annotations

import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import jwt  # type: ignore[import]
from jwt import InvalidTokenError  # type: ignore[import]
from pydantic import BaseModel, ValidationError

from backend.app import config

logger = logging.getLogger("security.tokens")

# HS256 keys shorter than the 256-bit digest weaken the signature.
MIN_SECRET_LENGTH = 32


class TokenConfigurationError(RuntimeError):
    """Raised when signing secrets are missing or unsafe."""


class TokenKind(str, enum.Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenPayload(BaseModel):
    """Claims identifying the principal a token was issued to."""

    user_id: str
    username: str
    role: str
    role_level: int
    token_version: int = 0


@dataclass(frozen=True)
class VerifiedToken:
    kind: TokenKind
    payload: TokenPayload
    token_id: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class TokenPair:
    access: str
    refresh: str


class TokenService:
    def __init__(
        self,
        *,
        access_secret: Optional[str],
        refresh_secret: Optional[str],
        algorithm: str = "HS256",
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        access_ttl_seconds: int = 15 * 60,
        refresh_ttl_seconds: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not access_secret:
            raise TokenConfigurationError("JWT_ACCESS_SECRET environment variable is not configured")
        if not refresh_secret:
            raise TokenConfigurationError("JWT_REFRESH_SECRET environment variable is not configured")
        for name, secret in (("JWT_ACCESS_SECRET", access_secret), ("JWT_REFRESH_SECRET", refresh_secret)):
            if len(secret) < MIN_SECRET_LENGTH:
                raise TokenConfigurationError(f"{name} must be at least {MIN_SECRET_LENGTH} characters long")
        if access_secret == refresh_secret:
            raise TokenConfigurationError("Access and refresh tokens must use different signing secrets")

        self._secrets = {TokenKind.ACCESS: access_secret, TokenKind.REFRESH: refresh_secret}
        self._ttls = {TokenKind.ACCESS: access_ttl_seconds, TokenKind.REFRESH: refresh_ttl_seconds}
        self._algorithm = algorithm
        self._issuer = issuer
        self._audience = audience
        self._clock = clock

    @classmethod
    def from_config(cls) -> "TokenService":
        return cls(
            access_secret=config.JWT_ACCESS_SECRET,
            refresh_secret=config.JWT_REFRESH_SECRET,
            algorithm=config.JWT_ALGORITHM,
            issuer=config.JWT_ISSUER,
            audience=config.JWT_AUDIENCE,
            access_ttl_seconds=config.ACCESS_TOKEN_TTL_SECONDS,
            refresh_ttl_seconds=config.REFRESH_TOKEN_TTL_SECONDS,
        )

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._ttls[kind]

    def issue(self, kind: TokenKind, payload: TokenPayload) -> str:
        issued_at = int(self._clock())
        claims: Dict[str, Any] = {
            "sub": payload.user_id,
            "username": payload.username,
            "role": payload.role,
            "roleLevel": payload.role_level,
            "ver": payload.token_version,
            "typ": kind.value,
            "iat": issued_at,
            "exp": issued_at + self._ttls[kind],
            "jti": uuid.uuid4().hex,
        }
        if self._issuer:
            claims["iss"] = self._issuer
        if self._audience:
            claims["aud"] = self._audience
        return jwt.encode(claims, self._secrets[kind], algorithm=self._algorithm)

    def issue_pair(self, payload: TokenPayload) -> TokenPair:
        return TokenPair(
            access=self.issue(TokenKind.ACCESS, payload),
            refresh=self.issue(TokenKind.REFRESH, payload),
        )

    def decode(self, kind: TokenKind, token: Optional[str]) -> Optional[VerifiedToken]:
        if not token or not isinstance(token, str):
            return None
        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                # Time claims are checked against the service clock below.
                options={"require": ["exp", "iat", "sub", "jti"], "verify_exp": False, "verify_iat": False},
            )
        except InvalidTokenError as exc:
            # The cause stays in the debug log; callers only see "invalid".
            logger.debug("Rejected %s token: %s", kind.value, exc.__class__.__name__)
            return None

        if not self._within_lifetime(claims):
            logger.debug("Rejected %s token: outside its lifetime", kind.value)
            return None

        if claims.get("typ") != kind.value:
            logger.debug("Rejected %s token: unexpected type %r", kind.value, claims.get("typ"))
            return None

        try:
            payload = TokenPayload(
                user_id=claims["sub"],
                username=claims["username"],
                role=claims["role"],
                role_level=claims["roleLevel"],
                token_version=claims.get("ver", 0),
            )
        except (KeyError, ValidationError):
            logger.debug("Rejected %s token: incomplete claims", kind.value)
            return None

        return VerifiedToken(
            kind=kind,
            payload=payload,
            token_id=str(claims["jti"]),
            issued_at=int(claims["iat"]),
            expires_at=int(claims["exp"]),
        )

    def verify(self, kind: TokenKind, token: Optional[str]) -> Optional[TokenPayload]:
        verified = self.decode(kind, token)
        return verified.payload if verified else None

    def _within_lifetime(self, claims: Dict[str, Any]) -> bool:
        issued_at, expires_at = claims["iat"], claims["exp"]
        if not all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in (issued_at, expires_at)):
            return False
        now = self._clock()
        return issued_at <= now < expires_at


_token_service: Optional[TokenService] = None


def get_token_service() -> TokenService:
    global _token_service
    if _token_service is None:
        _token_service = TokenService.from_config()
    return _token_service


def configure_token_service(service: Optional[TokenService] = None) -> Optional[TokenService]:
    """Install ``service`` or, with no argument, drop the cached one so config is re-read."""

    global _token_service
    _token_service = service
    return _token_service
