from dataclasses import dataclass

import bcrypt
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings
from errors import Unauthenticated

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class Identity:
    id: int
    email: str


def hash_password(password: str) -> str:
    rounds = get_settings().bcrypt_rounds
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds)).decode(
        "utf-8"
    )


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))


def _serializer(kind: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    secret = settings.token_secret if kind == ACCESS else settings.refresh_token_secret
    return URLSafeTimedSerializer(secret, salt=f"{kind}-token")


def _max_age(kind: str) -> int:
    settings = get_settings()
    if kind == ACCESS:
        return settings.access_token_ttl_secs
    return settings.refresh_token_ttl_secs


def issue_token(user_id: int, email: str, kind: str = ACCESS) -> str:
    return _serializer(kind).dumps({"u": user_id, "e": email, "t": kind})


def issue_tokens(user_id: int, email: str) -> dict[str, str]:
    return {
        "token": issue_token(user_id, email, ACCESS),
        "refresh_token": issue_token(user_id, email, REFRESH),
    }


def read_token(token: str, kind: str = ACCESS) -> Identity:
    label = "Invalid token" if kind == ACCESS else "Invalid refresh token"
    try:
        data = _serializer(kind).loads(token, max_age=_max_age(kind))
    except SignatureExpired as exc:
        raise Unauthenticated("Token expired") from exc
    except BadSignature as exc:
        raise Unauthenticated(label) from exc

    if not isinstance(data, dict) or data.get("t") != kind:
        raise Unauthenticated(label)
    return Identity(id=int(data["u"]), email=str(data["e"]))


def identity_from_header(authorization: str | None) -> Identity:
    if not authorization:
        raise Unauthenticated("Access token is required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise Unauthenticated("Access token is required")
    return read_token(token.strip(), ACCESS)
