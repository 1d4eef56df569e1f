import os
import sys
import time
from pathlib import Path

import jwt  # type: ignore[import]
import pytest  # type: ignore[import]

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.append(str(ROOT_DIR))

os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from backend.app import config  # noqa: E402
from backend.app.security.tokens import (  # noqa: E402
    TokenConfigurationError,
    TokenKind,
    TokenPayload,
    TokenService,
    configure_token_service,
    get_token_service,
)

ACCESS_SECRET = "unit-access-secret-0123456789abcdef"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdef"


def _service(**overrides) -> TokenService:
    options = dict(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        issuer="bookkeeping-dashboard",
        audience="bookkeeping-dashboard",
        access_ttl_seconds=900,
        refresh_ttl_seconds=604800,
    )
    options.update(overrides)
    return TokenService(**options)


def _payload(**overrides) -> TokenPayload:
    values = dict(user_id="user-1", username="testuser", role="seller", role_level=0, token_version=3)
    values.update(overrides)
    return TokenPayload(**values)


def test_access_token_verifies_to_issued_payload() -> None:
    service = _service()
    token = service.issue(TokenKind.ACCESS, _payload())

    assert service.verify(TokenKind.ACCESS, token) == _payload()


def test_refresh_token_decodes_with_identifier_and_expiry() -> None:
    service = _service()
    token = service.issue(TokenKind.REFRESH, _payload())

    verified = service.decode(TokenKind.REFRESH, token)

    assert verified is not None
    assert verified.kind is TokenKind.REFRESH
    assert verified.token_id
    assert verified.expires_at - verified.issued_at == 604800


def test_claims_carry_lifetime_issuer_and_type() -> None:
    service = _service()
    token = service.issue(TokenKind.ACCESS, _payload())

    claims = jwt.decode(token, options={"verify_signature": False})

    assert claims["exp"] - claims["iat"] == 900
    assert claims["typ"] == "access"
    assert claims["iss"] == "bookkeeping-dashboard"
    assert claims["aud"] == "bookkeeping-dashboard"
    assert claims["sub"] == "user-1"
    assert claims["roleLevel"] == 0
    assert claims["ver"] == 3


def test_each_token_gets_a_distinct_identifier() -> None:
    service = _service()
    first = service.decode(TokenKind.REFRESH, service.issue(TokenKind.REFRESH, _payload()))
    second = service.decode(TokenKind.REFRESH, service.issue(TokenKind.REFRESH, _payload()))

    assert first is not None and second is not None
    assert first.token_id != second.token_id


def test_access_token_is_not_accepted_as_refresh_token() -> None:
    service = _service()
    pair = service.issue_pair(_payload())

    assert service.verify(TokenKind.REFRESH, pair.access) is None
    assert service.verify(TokenKind.ACCESS, pair.refresh) is None


def test_token_type_claim_is_enforced_even_with_matching_secret() -> None:
    service = _service()
    now = int(time.time())
    forged = jwt.encode(
        {
            "sub": "user-1",
            "username": "testuser",
            "role": "admin",
            "roleLevel": 2,
            "typ": "refresh",
            "iat": now,
            "exp": now + 60,
            "jti": "abc",
            "iss": "bookkeeping-dashboard",
            "aud": "bookkeeping-dashboard",
        },
        ACCESS_SECRET,
        algorithm="HS256",
    )

    assert service.verify(TokenKind.ACCESS, forged) is None


def test_expired_token_is_rejected() -> None:
    issuer = _service(clock=lambda: time.time() - 2000)
    token = issuer.issue(TokenKind.ACCESS, _payload())

    assert _service().verify(TokenKind.ACCESS, token) is None


def test_tampered_token_is_rejected() -> None:
    service = _service()
    token = service.issue(TokenKind.ACCESS, _payload())
    header, body, signature = token.split(".")
    tampered_signature = signature[:-6] + ("AAAAAA" if not signature.endswith("AAAAAA") else "BBBBBB")

    assert service.verify(TokenKind.ACCESS, f"{header}.{body}.{tampered_signature}") is None


def test_token_from_other_secret_is_rejected() -> None:
    token = _service(access_secret="another-access-secret-0123456789").issue(TokenKind.ACCESS, _payload())

    assert _service().verify(TokenKind.ACCESS, token) is None


def test_token_for_other_audience_is_rejected() -> None:
    token = _service(audience="someone-else").issue(TokenKind.ACCESS, _payload())

    assert _service().verify(TokenKind.ACCESS, token) is None


@pytest.mark.parametrize("token", [None, "", "garbage", "a.b.c"])
def test_malformed_input_is_rejected_without_raising(token) -> None:
    assert _service().verify(TokenKind.ACCESS, token) is None


def test_missing_secret_is_a_configuration_error() -> None:
    with pytest.raises(TokenConfigurationError):
        _service(access_secret=None)
    with pytest.raises(TokenConfigurationError):
        _service(refresh_secret="")


@pytest.mark.parametrize("field", ["access_secret", "refresh_secret"])
def test_short_secret_is_a_configuration_error(field: str) -> None:
    with pytest.raises(TokenConfigurationError, match="at least 32 characters"):
        _service(**{field: "too-short-secret"})


def test_shared_secret_is_a_configuration_error() -> None:
    with pytest.raises(TokenConfigurationError):
        _service(access_secret=ACCESS_SECRET, refresh_secret=ACCESS_SECRET)


def test_configured_service_reads_current_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "JWT_ACCESS_SECRET", None)
    configure_token_service()
    try:
        with pytest.raises(TokenConfigurationError):
            get_token_service()
    finally:
        monkeypatch.undo()
        configure_token_service()

    assert get_token_service().ttl_seconds(TokenKind.ACCESS) == config.ACCESS_TOKEN_TTL_SECONDS


def test_lifetime_follows_injected_clock() -> None:
    now = [10_000.0]
    service = _service(clock=lambda: now[0])
    token = service.issue(TokenKind.ACCESS, _payload())

    assert service.verify(TokenKind.ACCESS, token) == _payload()

    now[0] += 899
    assert service.verify(TokenKind.ACCESS, token) is not None

    now[0] += 1
    assert service.verify(TokenKind.ACCESS, token) is None


def test_token_issued_in_the_future_is_rejected() -> None:
    future = _service(clock=lambda: time.time() + 600).issue(TokenKind.ACCESS, _payload())

    assert _service().verify(TokenKind.ACCESS, future) is None
