import logging
from typing import Optional

from backend import Identity, IdentityBackend
from errors import AuthError, AuthErrorCode, BackendError

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 6


def _auth_code(exc: BackendError) -> AuthErrorCode:
    try:
        return AuthErrorCode(exc.code)
    except ValueError:
        return AuthErrorCode.unknown


class SessionProvider:
    """Login, registration and logout against an identity backend.

    Input is checked before the backend is contacted; backend failures are
    turned into ``AuthError`` with a localized message, and the raw upstream
    detail is only logged.
    """

    def __init__(self, identity: IdentityBackend, *, locale: Optional[str] = None) -> None:
        self.identity = identity
        self.locale = locale

    def current_identity(self) -> Optional[Identity]:
        return self.identity.current_identity()

    def login(self, email: str, secret: str) -> Identity:
        email = self._validate(email, secret)
        try:
            user = self.identity.sign_in(email, secret)
        except BackendError as exc:
            raise self._mapped("login", exc) from exc
        logger.info(f"login_succeeded: uid={user.uid}")
        return user

    def register(self, email: str, secret: str) -> Identity:
        email = self._validate(email, secret)
        if len(secret) < MIN_SECRET_LENGTH:
            raise AuthError(AuthErrorCode.secret_too_short, locale=self.locale)
        try:
            user = self.identity.sign_up(email, secret)
        except BackendError as exc:
            raise self._mapped("register", exc) from exc
        logger.info(f"registration_succeeded: uid={user.uid}")
        return user

    def logout(self) -> None:
        try:
            self.identity.sign_out()
        except BackendError as exc:
            raise self._mapped("logout", exc) from exc
        logger.info("logout_succeeded")

    def _validate(self, email: str, secret: str) -> str:
        email = (email or "").strip()
        if not email or not secret:
            raise AuthError(AuthErrorCode.missing_fields, locale=self.locale)
        if "@" not in email:
            raise AuthError(AuthErrorCode.invalid_email, locale=self.locale)
        return email

    def _mapped(self, operation: str, exc: BackendError) -> AuthError:
        code = _auth_code(exc)
        log = logger.error if code == AuthErrorCode.unknown else logger.warning
        log(f"{operation}_failed: code={exc.code} detail={exc.detail!r}")
        return AuthError(code, locale=self.locale)
