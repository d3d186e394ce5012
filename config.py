import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        use_local_backend: bool,
        firebase_api_key: str,
        firebase_project_id: str,
        firebase_auth_domain: str,
        auth_emulator_host: Optional[str],
        firestore_emulator_host: Optional[str],
        request_timeout_secs: float,
        poll_interval_secs: float,
        timezone: str,
        locale: str,
        session_secret: str,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.use_local_backend = use_local_backend
        self.firebase_api_key = firebase_api_key
        self.firebase_project_id = firebase_project_id
        self.firebase_auth_domain = firebase_auth_domain
        self.auth_emulator_host = auth_emulator_host
        self.firestore_emulator_host = firestore_emulator_host
        self.request_timeout_secs = request_timeout_secs
        self.poll_interval_secs = poll_interval_secs
        self.timezone = timezone
        self.locale = locale
        self.session_secret = session_secret
        self.log_level = log_level

    def missing_firebase_keys(self) -> list[str]:
        required = {
            "api_key": self.firebase_api_key,
            "project_id": self.firebase_project_id,
            "auth_domain": self.firebase_auth_domain,
        }
        return [key for key, value in required.items() if not value]


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINTRACK_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "fintrack.db"
    database_url = os.getenv("FINTRACK_DATABASE_URL", f"sqlite:///{default_db}")
    locale = os.getenv("FINTRACK_LOCALE", "en").strip().lower()
    if locale not in {"en", "id"}:
        locale = "en"
    session_secret = os.getenv(
        "FINTRACK_SESSION_SECRET",
        "5d0a3c7e4f1b48a2b9e6c1d7f03a8e52c4b6d9e1f27a3c5b8d0e4f6a1b3c5d7e",
    )
    return Settings(
        database_url=database_url,
        use_local_backend=_env_flag("FINTRACK_USE_LOCAL_BACKEND"),
        firebase_api_key=os.getenv("FINTRACK_FIREBASE_API_KEY", ""),
        firebase_project_id=os.getenv("FINTRACK_FIREBASE_PROJECT_ID", ""),
        firebase_auth_domain=os.getenv("FINTRACK_FIREBASE_AUTH_DOMAIN", ""),
        auth_emulator_host=os.getenv("FINTRACK_FIREBASE_AUTH_EMULATOR_HOST") or None,
        firestore_emulator_host=os.getenv("FINTRACK_FIRESTORE_EMULATOR_HOST") or None,
        request_timeout_secs=float(os.getenv("FINTRACK_REQUEST_TIMEOUT_SECS", "10")),
        poll_interval_secs=float(os.getenv("FINTRACK_POLL_INTERVAL_SECS", "15")),
        timezone=os.getenv("FINTRACK_TIMEZONE", "Asia/Jakarta"),
        locale=locale,
        session_secret=session_secret,
        log_level=os.getenv("FINTRACK_LOG_LEVEL", "INFO").upper(),
    )
