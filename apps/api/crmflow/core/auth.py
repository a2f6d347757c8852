from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from crmflow.core.config import get_settings

ANONYMOUS_ROLES = ["guest"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _bearer_token(request: Request) -> str:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def _claim_list(payload: dict, key: str) -> list[str]:
    value = payload.get(key)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    # Tokens may carry grants under either claim; both feed permission checks.
    roles = list(dict.fromkeys(_claim_list(payload, "roles") + _claim_list(payload, "permissions")))
    return AuthUser(sub=str(payload.get("sub", "anonymous")), roles=roles or ["user"])
