"""JWT verification for tokens issued by the identity service.

HS256 with a shared ``JWT_SECRET``. The engine never logs users in; it only
reads ``sub`` (principal id) and ``role`` from a valid access token.
``create_access_token`` exists for service-to-service callers and tests.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from config.settings import settings
from src.kb_common.enums import PrincipalRole
from src.kb_common.errors import InvalidCredentialsError

_ALGORITHM = settings.JWT_ALGORITHM  # "HS256"
_ACCESS_EXPIRE = timedelta(minutes=settings.JWT_EXPIRE_MINUTES)


def create_access_token(principal_id: str, role: str = PrincipalRole.SELLER.value) -> str:
    now = datetime.now(UTC)
    payload = {
        "sub": principal_id,
        "role": role,
        "type": "access",
        "iat": now,
        "exp": now + _ACCESS_EXPIRE,
    }
    return str(jwt.encode(payload, settings.JWT_SECRET, algorithm=_ALGORITHM))


def decode_token(token: str) -> dict[str, str]:
    """Decode and validate an access token.

    Raises:
        InvalidCredentialsError: bad signature, expired, wrong type or unknown role.
    """
    try:
        payload: dict[str, str] = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[_ALGORITHM],  # Explicit list prevents algorithm confusion
        )
    except JWTError:
        raise InvalidCredentialsError() from None

    if payload.get("type") != "access" or not payload.get("sub"):
        raise InvalidCredentialsError()
    if payload.get("role") not in {r.value for r in PrincipalRole}:
        raise InvalidCredentialsError()
    return payload
