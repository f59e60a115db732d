from typing import Optional

import bcrypt
from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings

SESSION_COOKIE = "budget_session"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="session")


def session_max_age_secs() -> int:
    return get_settings().session_max_age_days * 24 * 3600


def create_session_token(user_id: str) -> str:
    return _serializer().dumps({"u": user_id})


def read_session_token(token: str) -> Optional[str]:
    """Return the user id carried by a session token, or None if invalid."""
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=session_max_age_secs())
    except BadSignature:
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    return user_id if isinstance(user_id, str) else None


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
