"""FastAPI auth dependencies.

Usage in any protected router:
    from src.kb_gateway.auth.dependencies import get_current_principal

    @router.get("/wallet")
    async def wallet(principal: Principal = Depends(get_current_principal)):
        ...
"""

import hmac
from dataclasses import dataclass

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config.settings import settings
from src.kb_common.enums import PrincipalRole
from src.kb_common.errors import ForbiddenError, InvalidCredentialsError
from src.kb_gateway.auth.jwt_handler import decode_token

_bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == PrincipalRole.ADMIN


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Principal:
    """Raises InvalidCredentialsError (401) if the Bearer token is missing or invalid."""
    if credentials is None:
        raise InvalidCredentialsError()
    payload = decode_token(credentials.credentials)
    return Principal(id=payload["sub"], role=payload["role"])


async def require_seller(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if principal.role != PrincipalRole.SELLER:
        raise ForbiddenError("Seller account required")
    return principal


async def require_admin(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    if principal.role != PrincipalRole.ADMIN:
        raise ForbiddenError("Admin role required")
    return principal


async def require_operator(
    principal: Principal = Depends(get_current_principal),
) -> Principal:
    """Admin or an internal service (payment orchestration, order service)."""
    if principal.role not in (PrincipalRole.ADMIN, PrincipalRole.SERVICE):
        raise ForbiddenError("Admin or service role required")
    return principal


async def require_cron_secret(
    x_cron_secret: str | None = Header(None, alias="x-cron-secret"),
) -> None:
    """Scheduler endpoints. An unset CRON_SECRET rejects every caller."""
    if not settings.CRON_SECRET or not x_cron_secret:
        raise InvalidCredentialsError()
    if not hmac.compare_digest(x_cron_secret, settings.CRON_SECRET):
        raise InvalidCredentialsError()
