from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadData, URLSafeTimedSerializer

from config import get_settings


@dataclass(frozen=True)
class Identity:
    user_id: int
    email: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(
            password.encode("utf-8"), hashed_password.encode("utf-8")
        )
    except ValueError:
        return False


def _serializer(secret: Optional[str] = None) -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(secret or settings.token_secret, salt="access-token")


def issue_token(identity: Identity, secret: Optional[str] = None) -> str:
    serializer = _serializer(secret)
    return serializer.dumps({"userId": identity.user_id, "email": identity.email})


def decode_token(
    token: str,
    *,
    max_age_secs: Optional[int] = None,
    secret: Optional[str] = None,
) -> Optional[Identity]:
    """Return the identity carried by a token, or None when it cannot be trusted.

    Bad signatures, expired tokens and payloads without a usable
    ``userId``/``email`` pair are all rejected the same way.
    """
    serializer = _serializer(secret)
    if max_age_secs is None:
        max_age_secs = get_settings().token_max_age_secs
    try:
        data = serializer.loads(token, max_age=max_age_secs)
    except BadData:
        return None

    if not isinstance(data, dict):
        return None
    user_id = data.get("userId")
    email = data.get("email")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        return None
    if not isinstance(email, str) or not email:
        return None
    return Identity(user_id=user_id, email=email)
