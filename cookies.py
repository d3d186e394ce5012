import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeSerializer

from config import get_settings

SESSION_COOKIE = "fintrack_session"
SESSION_MAX_AGE_HOURS = 12


def _serializer() -> URLSafeSerializer:
    settings = get_settings()
    return URLSafeSerializer(settings.session_secret, salt="session")


def sign_session_key(key: str, max_age_hours: int = SESSION_MAX_AGE_HOURS) -> str:
    timestamp = int(time.time())
    expiry = timestamp + (max_age_hours * 3600)
    return _serializer().dumps({"k": key, "ts": timestamp, "exp": expiry})


def read_session_key(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        data = _serializer().loads(token)
    except BadSignature:
        return None

    if not isinstance(data, dict):
        return None
    if int(time.time()) > data.get("exp", 0):
        return None
    return data.get("k")
