"""Unit tests for JWT verification and role dependencies."""

from datetime import UTC, datetime, timedelta

import pytest
from fastapi.security import HTTPAuthorizationCredentials
from jose import jwt

from config.settings import settings
from src.kb_common.errors import ForbiddenError, InvalidCredentialsError
from src.kb_gateway.auth.dependencies import (
    Principal,
    get_current_principal,
    require_admin,
    require_cron_secret,
    require_operator,
    require_seller,
)
from src.kb_gateway.auth.jwt_handler import create_access_token, decode_token


def _bearer(token: str) -> HTTPAuthorizationCredentials:
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


def test_access_token_claims() -> None:
    payload = jwt.get_unverified_claims(create_access_token("seller-1"))
    assert payload["sub"] == "seller-1"
    assert payload["role"] == "seller"
    assert payload["type"] == "access"


def test_decode_round_trip_with_role() -> None:
    payload = decode_token(create_access_token("ops-1", role="service"))
    assert payload["role"] == "service"


def test_expired_token_rejected() -> None:
    past = datetime.now(UTC) - timedelta(hours=1)
    token = jwt.encode(
        {"sub": "seller-1", "role": "seller", "type": "access", "exp": past},
        settings.JWT_SECRET,
        algorithm="HS256",
    )
    with pytest.raises(InvalidCredentialsError):
        decode_token(token)


def test_wrong_secret_rejected() -> None:
    token = jwt.encode(
        {"sub": "seller-1", "role": "seller", "type": "access"}, "other", algorithm="HS256"
    )
    with pytest.raises(InvalidCredentialsError):
        decode_token(token)


@pytest.mark.parametrize(
    "claims",
    [
        {"sub": "seller-1", "role": "seller", "type": "refresh"},
        {"sub": "seller-1", "role": "buyer", "type": "access"},
        {"role": "seller", "type": "access"},
    ],
)
def test_malformed_claims_rejected(claims: dict) -> None:
    token = jwt.encode(claims, settings.JWT_SECRET, algorithm="HS256")
    with pytest.raises(InvalidCredentialsError):
        decode_token(token)


async def test_missing_bearer_is_401() -> None:
    with pytest.raises(InvalidCredentialsError):
        await get_current_principal(None)


async def test_principal_from_token() -> None:
    principal = await get_current_principal(_bearer(create_access_token("adm-1", "admin")))
    assert principal == Principal(id="adm-1", role="admin")
    assert principal.is_admin


async def test_role_guards() -> None:
    seller = Principal("seller-1", "seller")
    admin = Principal("adm-1", "admin")
    service = Principal("svc-1", "service")

    assert await require_seller(seller) is seller
    assert await require_admin(admin) is admin
    assert await require_operator(service) is service
    assert await require_operator(admin) is admin
    with pytest.raises(ForbiddenError):
        await require_seller(admin)
    with pytest.raises(ForbiddenError):
        await require_admin(seller)
    with pytest.raises(ForbiddenError):
        await require_operator(seller)


async def test_cron_secret() -> None:
    await require_cron_secret(settings.CRON_SECRET)
    with pytest.raises(InvalidCredentialsError):
        await require_cron_secret("guess")
    with pytest.raises(InvalidCredentialsError):
        await require_cron_secret(None)


async def test_unset_cron_secret_rejects(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    with pytest.raises(InvalidCredentialsError):
        await require_cron_secret("")
