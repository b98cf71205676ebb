from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from leadflow.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"
DEFAULT_ROLES = ["member"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def anonymous_user() -> AuthUser:
    return AuthUser(sub=ANONYMOUS_SUBJECT, roles=[])


def bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    return auth_header.removeprefix("Bearer ").strip() or None


def decode_token(token: str | None) -> AuthUser:
    """Map a bearer token to an identity; anything unverifiable is anonymous."""
    if not token:
        return anonymous_user()

    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return anonymous_user()

    subject = claims.get("sub")
    if not subject:
        return anonymous_user()
    roles = claims.get("roles", DEFAULT_ROLES)
    if not isinstance(roles, list):
        roles = DEFAULT_ROLES
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    return decode_token(bearer_token(request))
