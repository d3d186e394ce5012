"""Error taxonomy shared by the session provider, the live store and the API.

Every user-facing error carries a short localized ``message``; raw backend
detail stays on ``detail`` and is only ever written to the log.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from config import get_settings


class AuthErrorCode(str, Enum):
    user_not_found = "user-not-found"
    wrong_secret = "wrong-secret"
    invalid_email = "invalid-email"
    disabled = "disabled"
    rate_limited = "rate-limited"
    network_failure = "network-failure"
    invalid_credential = "invalid-credential"
    already_in_use = "already-in-use"
    weak_secret = "weak-secret"
    misconfigured = "misconfigured"
    unknown = "unknown"
    # Raised locally, before the identity service is contacted.
    missing_fields = "missing-fields"
    secret_too_short = "secret-too-short"


class AuthErrorCategory(str, Enum):
    bad_credentials = "bad-credentials"
    account_disabled = "account-disabled"
    rate_limited = "rate-limited"
    network_failure = "network-failure"
    malformed_input = "malformed-input"
    misconfiguration = "misconfiguration"
    unknown = "unknown"


AUTH_CATEGORIES: dict[AuthErrorCode, AuthErrorCategory] = {
    AuthErrorCode.user_not_found: AuthErrorCategory.bad_credentials,
    AuthErrorCode.wrong_secret: AuthErrorCategory.bad_credentials,
    AuthErrorCode.invalid_credential: AuthErrorCategory.bad_credentials,
    AuthErrorCode.already_in_use: AuthErrorCategory.bad_credentials,
    AuthErrorCode.disabled: AuthErrorCategory.account_disabled,
    AuthErrorCode.rate_limited: AuthErrorCategory.rate_limited,
    AuthErrorCode.network_failure: AuthErrorCategory.network_failure,
    AuthErrorCode.invalid_email: AuthErrorCategory.malformed_input,
    AuthErrorCode.weak_secret: AuthErrorCategory.malformed_input,
    AuthErrorCode.missing_fields: AuthErrorCategory.malformed_input,
    AuthErrorCode.secret_too_short: AuthErrorCategory.malformed_input,
    AuthErrorCode.misconfigured: AuthErrorCategory.misconfiguration,
    AuthErrorCode.unknown: AuthErrorCategory.unknown,
}


MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "auth.user-not-found": "Email is not registered",
        "auth.wrong-secret": "Incorrect password",
        "auth.invalid-email": "Invalid email format",
        "auth.disabled": "This account has been disabled",
        "auth.rate-limited": "Too many login attempts. Try again later",
        "auth.network-failure": "Network connection problem",
        "auth.invalid-credential": "Incorrect email or password",
        "auth.already-in-use": "Email is already in use",
        "auth.weak-secret": "Password is too weak",
        "auth.misconfigured": "The authentication service is misconfigured",
        "auth.unknown": "Something went wrong. Please try again",
        "auth.missing-fields": "Email and password are required",
        "auth.secret-too-short": "Password must be at least 6 characters",
        "write.unauthenticated": "You need to log in first",
        "write.network-failure": "Network connection problem",
        "write.remote-rejected.create": "Failed to add transaction",
        "write.remote-rejected.update": "Failed to update transaction",
        "write.remote-rejected.delete": "Failed to delete transaction",
        "subscription.failed": "Transactions could not be loaded",
        "validation.failed": "Some transaction fields are missing or invalid",
        "report.date": "Date",
        "report.name": "Name",
        "report.category": "Category",
        "report.kind": "Type",
        "report.amount": "Amount",
        "report.note": "Note",
        "report.summary": "Summary",
        "report.total-income": "Total Income",
        "report.total-expense": "Total Expense",
        "report.balance": "Balance",
        "kind.income": "Income",
        "kind.expense": "Expense",
    },
    "id": {
        "auth.user-not-found": "Email tidak terdaftar",
        "auth.wrong-secret": "Password salah",
        "auth.invalid-email": "Format email tidak valid",
        "auth.disabled": "Akun telah dinonaktifkan",
        "auth.rate-limited": "Terlalu banyak percobaan login. Coba lagi nanti",
        "auth.network-failure": "Koneksi internet bermasalah",
        "auth.invalid-credential": "Email atau password salah",
        "auth.already-in-use": "Email sudah digunakan",
        "auth.weak-secret": "Password terlalu lemah",
        "auth.misconfigured": "Konfigurasi Firebase tidak valid",
        "auth.unknown": "Terjadi kesalahan. Silakan coba lagi",
        "auth.missing-fields": "Email dan password harus diisi",
        "auth.secret-too-short": "Password minimal 6 karakter",
        "write.unauthenticated": "Silakan login terlebih dahulu",
        "write.network-failure": "Koneksi internet bermasalah",
        "write.remote-rejected.create": "Gagal menambah transaksi",
        "write.remote-rejected.update": "Gagal memperbarui transaksi",
        "write.remote-rejected.delete": "Gagal menghapus transaksi",
        "subscription.failed": "Gagal memuat transaksi",
        "validation.failed": "Data transaksi tidak lengkap atau tidak valid",
        "report.date": "Tanggal",
        "report.name": "Nama",
        "report.category": "Kategori",
        "report.kind": "Tipe",
        "report.amount": "Nominal",
        "report.note": "Catatan",
        "report.summary": "Ringkasan",
        "report.total-income": "Total Pemasukan",
        "report.total-expense": "Total Pengeluaran",
        "report.balance": "Saldo",
        "kind.income": "Pemasukan",
        "kind.expense": "Pengeluaran",
    },
}


def message(key: str, locale: Optional[str] = None) -> str:
    catalogue = MESSAGES.get(locale or get_settings().locale) or MESSAGES["en"]
    return catalogue.get(key) or MESSAGES["en"][key]


class ConfigurationError(RuntimeError):
    pass


class BackendError(Exception):
    """Failure reported by an identity or document backend adapter.

    ``code`` is a canonical, lowercase-dashed code (``permission-denied``,
    ``not-found``, ``unavailable``, ``deadline-exceeded``, or an
    ``AuthErrorCode`` value); ``detail`` is the raw upstream text.
    """

    def __init__(self, code: str, detail: str = "") -> None:
        super().__init__(f"{code}: {detail}" if detail else code)
        self.code = code
        self.detail = detail


class AuthError(Exception):
    def __init__(self, code: AuthErrorCode, *, locale: Optional[str] = None) -> None:
        self.code = code
        self.category = AUTH_CATEGORIES[code]
        self.message = message(f"auth.{code.value}", locale)
        super().__init__(self.message)


class SubscriptionError(Exception):
    def __init__(
        self, code: str, detail: str = "", *, locale: Optional[str] = None
    ) -> None:
        self.code = code
        self.detail = detail
        self.message = message("subscription.failed", locale)
        super().__init__(self.message)


class WriteErrorReason(str, Enum):
    unauthenticated = "unauthenticated"
    remote_rejected = "remote-rejected"
    network_failure = "network-failure"


class WriteError(Exception):
    def __init__(
        self,
        reason: WriteErrorReason,
        operation: str,
        *,
        detail: str = "",
        locale: Optional[str] = None,
    ) -> None:
        self.reason = reason
        self.operation = operation
        self.detail = detail
        if reason == WriteErrorReason.remote_rejected:
            key = f"write.remote-rejected.{operation}"
        else:
            key = f"write.{reason.value}"
        self.message = message(key, locale)
        super().__init__(self.message)


class ValidationError(ValueError):
    def __init__(
        self, fields: list[str], *, locale: Optional[str] = None
    ) -> None:
        self.fields = fields
        self.message = message("validation.failed", locale)
        super().__init__(self.message)
