from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


ANONYMOUS = AuthUser(sub="anonymous", roles=["guest"])


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        return ""
    return auth_header.removeprefix("Bearer ").strip()


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return ANONYMOUS

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        # TODO: Reject invalid tokens with 401 once an identity provider issues them.
        return ANONYMOUS

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles])
