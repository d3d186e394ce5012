"""Hosted backend: Firebase Authentication and Cloud Firestore over REST.

Live queries are served by ``ListenerHub``: each listener re-runs its
structured query after writes made through this adapter and on ``poll()``
(driven by ``scheduler.SchedulerManager``), and only fires when the result
changed.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from backend import (
    SERVER_TIMESTAMP,
    Document,
    Identity,
    ListenerHub,
    QueryDescriptor,
    generate_document_id,
)
from config import Settings
from errors import AuthErrorCode, BackendError

logger = logging.getLogger(__name__)

IDENTITY_HOST = "identitytoolkit.googleapis.com"
SECURE_TOKEN_HOST = "securetoken.googleapis.com"
FIRESTORE_HOST = "firestore.googleapis.com"

# Identity Toolkit error messages -> identity error vocabulary.
AUTH_ERROR_CODES = {
    "EMAIL_NOT_FOUND": AuthErrorCode.user_not_found,
    "INVALID_PASSWORD": AuthErrorCode.wrong_secret,
    "USER_DISABLED": AuthErrorCode.disabled,
    "TOO_MANY_ATTEMPTS_TRY_LATER": AuthErrorCode.rate_limited,
    "INVALID_EMAIL": AuthErrorCode.invalid_email,
    "INVALID_LOGIN_CREDENTIALS": AuthErrorCode.invalid_credential,
    "MISSING_PASSWORD": AuthErrorCode.invalid_credential,
    "EMAIL_EXISTS": AuthErrorCode.already_in_use,
    "WEAK_PASSWORD": AuthErrorCode.weak_secret,
    "INVALID_API_KEY": AuthErrorCode.misconfigured,
    "API_KEY_INVALID": AuthErrorCode.misconfigured,
    "CONFIGURATION_NOT_FOUND": AuthErrorCode.misconfigured,
    "PROJECT_NOT_FOUND": AuthErrorCode.misconfigured,
    "OPERATION_NOT_ALLOWED": AuthErrorCode.misconfigured,
}

_FRACTION_RE = re.compile(r"\.(\d+)")
# Refresh the ID token this many seconds before it expires.
TOKEN_EXPIRY_SLACK_SECS = 60


class HttpFailure(Exception):
    def __init__(self, status: Optional[int], reason: str, detail: str) -> None:
        super().__init__(f"{status} {reason}: {detail}")
        self.status = status
        self.reason = reason
        self.detail = detail


def _error_payload(exc: HTTPError) -> tuple[str, str]:
    try:
        payload = json.loads(exc.read().decode("utf-8") or "{}")
    except (ValueError, UnicodeDecodeError):
        return "", str(exc)
    if isinstance(payload, list) and payload:
        payload = payload[0]
    error = payload.get("error", {}) if isinstance(payload, dict) else {}
    if not isinstance(error, dict):
        return "", str(error)
    return str(error.get("status") or ""), str(error.get("message") or exc.reason)


def request_json(
    method: str,
    url: str,
    *,
    body: Optional[Any] = None,
    headers: Optional[Mapping[str, str]] = None,
    timeout: float,
) -> Any:
    data = json.dumps(body).encode("utf-8") if body is not None else None
    req_headers = {"Accept": "application/json"}
    if data is not None:
        req_headers["Content-Type"] = "application/json"
    req_headers.update(headers or {})
    req = Request(url, data=data, headers=req_headers, method=method)
    try:
        with urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
    except HTTPError as exc:
        reason, detail = _error_payload(exc)
        raise HttpFailure(exc.code, reason, detail) from exc
    except TimeoutError as exc:
        raise HttpFailure(None, "DEADLINE_EXCEEDED", str(exc)) from exc
    except URLError as exc:
        if isinstance(exc.reason, TimeoutError):
            raise HttpFailure(None, "DEADLINE_EXCEEDED", str(exc.reason)) from exc
        raise HttpFailure(None, "UNAVAILABLE", str(exc.reason)) from exc
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise HttpFailure(None, "INTERNAL", "Unexpected backend response") from exc


def _auth_error_code(failure: HttpFailure) -> AuthErrorCode:
    if failure.status is None:
        return AuthErrorCode.network_failure
    key = failure.detail.split(" : ", 1)[0].strip()
    if key in AUTH_ERROR_CODES:
        return AUTH_ERROR_CODES[key]
    if "API key not valid" in failure.detail:
        return AuthErrorCode.misconfigured
    return AuthErrorCode.unknown


def _canonical_code(failure: HttpFailure) -> str:
    if failure.reason:
        return failure.reason.lower().replace("_", "-")
    return {
        400: "invalid-argument",
        401: "unauthenticated",
        403: "permission-denied",
        404: "not-found",
        409: "aborted",
        429: "resource-exhausted",
        503: "unavailable",
    }.get(failure.status or 0, "unknown")


class FirebaseIdentityBackend:
    def __init__(
        self, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> None:
        self.api_key = settings.firebase_api_key
        self.timeout = settings.request_timeout_secs
        if settings.auth_emulator_host:
            self.identity_url = f"http://{settings.auth_emulator_host}/{IDENTITY_HOST}/v1"
            self.token_url = f"http://{settings.auth_emulator_host}/{SECURE_TOKEN_HOST}/v1"
        else:
            self.identity_url = f"https://{IDENTITY_HOST}/v1"
            self.token_url = f"https://{SECURE_TOKEN_HOST}/v1"
        self.clock = clock
        self._current: Optional[Identity] = None
        self._refresh_token: Optional[str] = None
        self._expires_at = 0.0

    def current_identity(self) -> Optional[Identity]:
        return self._current

    def sign_in(self, email: str, secret: str) -> Identity:
        return self._authenticate("accounts:signInWithPassword", email, secret)

    def sign_up(self, email: str, secret: str) -> Identity:
        return self._authenticate("accounts:signUp", email, secret)

    def sign_out(self) -> None:
        # ID tokens are stateless; dropping them locally ends the session.
        self._current = None
        self._refresh_token = None
        self._expires_at = 0.0

    def id_token(self) -> Optional[str]:
        if self._current is None:
            return None
        if self._refresh_token and self.clock() >= self._expires_at - TOKEN_EXPIRY_SLACK_SECS:
            self._refresh()
        return self._current.id_token

    def _authenticate(self, endpoint: str, email: str, secret: str) -> Identity:
        url = f"{self.identity_url}/{endpoint}?key={quote(self.api_key)}"
        try:
            payload = request_json(
                "POST",
                url,
                body={"email": email, "password": secret, "returnSecureToken": True},
                timeout=self.timeout,
            )
        except HttpFailure as exc:
            raise BackendError(_auth_error_code(exc).value, exc.detail) from exc
        try:
            identity = Identity(
                uid=payload["localId"],
                email=payload.get("email", email),
                id_token=payload["idToken"],
            )
        except (KeyError, TypeError) as exc:
            raise BackendError(
                AuthErrorCode.unknown.value, "Unexpected identity response"
            ) from exc
        self._store_tokens(identity, payload)
        return identity

    def _refresh(self) -> None:
        url = f"{self.token_url}/token?key={quote(self.api_key)}"
        try:
            payload = request_json(
                "POST",
                url,
                body={"grant_type": "refresh_token", "refresh_token": self._refresh_token},
                timeout=self.timeout,
            )
        except HttpFailure as exc:
            logger.warning(f"token_refresh_failed: status={exc.status} detail={exc.detail!r}")
            return
        identity = Identity(
            uid=payload.get("user_id", self._current.uid),
            email=self._current.email,
            id_token=payload.get("id_token", self._current.id_token),
        )
        self._store_tokens(
            identity,
            {"refreshToken": payload.get("refresh_token"), "expiresIn": payload.get("expires_in")},
        )

    def _store_tokens(self, identity: Identity, payload: Mapping[str, Any]) -> None:
        self._current = identity
        self._refresh_token = payload.get("refreshToken") or self._refresh_token
        self._expires_at = self.clock() + float(payload.get("expiresIn") or 3600)


def parse_timestamp(value: str) -> datetime:
    match = _FRACTION_RE.search(value)
    if match:
        value = value[: match.start(1)] + match.group(1)[:6].ljust(6, "0") + value[match.end(1):]
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def encode_value(value: Any) -> dict[str, Any]:
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, str):
        return {"stringValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, Mapping):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    raise TypeError(f"Unsupported document value: {value!r}")


def decode_value(value: Mapping[str, Any]) -> Any:
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return bool(value["booleanValue"])
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "stringValue" in value:
        return value["stringValue"]
    if "timestampValue" in value:
        return parse_timestamp(value["timestampValue"])
    if "mapValue" in value:
        fields = value["mapValue"].get("fields", {})
        return {k: decode_value(v) for k, v in fields.items()}
    if "arrayValue" in value:
        return [decode_value(v) for v in value["arrayValue"].get("values", [])]
    raise ValueError(f"Unsupported Firestore value: {sorted(value)}")


def _field_filter(field_name: str, value: Any) -> dict[str, Any]:
    return {
        "fieldFilter": {
            "field": {"fieldPath": field_name},
            "op": "EQUAL",
            "value": encode_value(value),
        }
    }


def structured_query(query: QueryDescriptor) -> dict[str, Any]:
    body: dict[str, Any] = {"from": [{"collectionId": query.collection}]}
    filters = [_field_filter(name, value) for name, value in query.filters]
    if len(filters) == 1:
        body["where"] = filters[0]
    elif filters:
        body["where"] = {"compositeFilter": {"op": "AND", "filters": filters}}
    if query.order_by is not None:
        body["orderBy"] = [
            {
                "field": {"fieldPath": query.order_by.field},
                "direction": "DESCENDING" if query.order_by.descending else "ASCENDING",
            }
        ]
    return body


class FirestoreDocumentStore(ListenerHub):
    def __init__(
        self,
        settings: Settings,
        *,
        token_provider: Callable[[], Optional[str]],
    ) -> None:
        super().__init__()
        self.timeout = settings.request_timeout_secs
        self.token_provider = token_provider
        if settings.firestore_emulator_host:
            self.base_url = f"http://{settings.firestore_emulator_host}/v1"
        else:
            self.base_url = f"https://{FIRESTORE_HOST}/v1"
        self.database = f"projects/{settings.firebase_project_id}/databases/(default)"

    def _document_name(self, collection: str, doc_id: str) -> str:
        return f"{self.database}/documents/{collection}/{doc_id}"

    def _call(self, method: str, path: str, body: Optional[Any] = None) -> Any:
        headers = {}
        token = self.token_provider()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            return request_json(
                method,
                f"{self.base_url}/{path}",
                body=body,
                headers=headers,
                timeout=self.timeout,
            )
        except HttpFailure as exc:
            raise BackendError(_canonical_code(exc), exc.detail) from exc

    def _run_query(self, query: QueryDescriptor) -> list[Document]:
        rows = self._call(
            "POST",
            f"{self.database}/documents:runQuery",
            {"structuredQuery": structured_query(query)},
        )
        documents = []
        for row in rows or []:
            raw = row.get("document")
            if not raw:
                continue
            documents.append(self._decode_document(raw))
        return documents

    @staticmethod
    def _decode_document(raw: Mapping[str, Any]) -> Document:
        doc_id = raw["name"].rsplit("/", 1)[-1]
        fields = raw.get("fields", {})
        return Document(
            id=doc_id, data={key: decode_value(value) for key, value in fields.items()}
        )

    @staticmethod
    def _split_fields(data: Mapping[str, Any]) -> tuple[dict[str, Any], list[dict[str, str]]]:
        fields: dict[str, Any] = {}
        transforms: list[dict[str, str]] = []
        for key, value in data.items():
            if value is SERVER_TIMESTAMP:
                transforms.append({"fieldPath": key, "setToServerValue": "REQUEST_TIME"})
            else:
                fields[key] = encode_value(value)
        return fields, transforms

    def _commit(self, write: dict[str, Any]) -> None:
        self._call("POST", f"{self.database}/documents:commit", {"writes": [write]})

    def _owned_update_time(
        self, collection: str, doc_id: str, owner: tuple[str, Any]
    ) -> str:
        raw = self._call("GET", self._document_name(collection, doc_id))
        document = self._decode_document(raw)
        field_name, expected = owner
        if document.data.get(field_name) != expected:
            raise BackendError("permission-denied", "Document belongs to another owner")
        return raw["updateTime"]

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = generate_document_id()
        fields, transforms = self._split_fields(data)
        write: dict[str, Any] = {
            "update": {"name": self._document_name(collection, doc_id), "fields": fields},
            "currentDocument": {"exists": False},
        }
        if transforms:
            write["updateTransforms"] = transforms
        self._commit(write)
        logger.debug(f"document_added: collection={collection} id={doc_id}")
        self.refresh_collection(collection)
        return doc_id

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        owner: tuple[str, Any],
    ) -> None:
        update_time = self._owned_update_time(collection, doc_id, owner)
        fields, transforms = self._split_fields(data)
        write: dict[str, Any] = {
            "update": {"name": self._document_name(collection, doc_id), "fields": fields},
            "updateMask": {"fieldPaths": sorted(fields)},
            "currentDocument": {"updateTime": update_time},
        }
        if transforms:
            write["updateTransforms"] = transforms
        self._commit(write)
        self.refresh_collection(collection)

    def delete(self, collection: str, doc_id: str, *, owner: tuple[str, Any]) -> None:
        update_time = self._owned_update_time(collection, doc_id, owner)
        self._commit(
            {
                "delete": self._document_name(collection, doc_id),
                "currentDocument": {"updateTime": update_time},
            }
        )
        self.refresh_collection(collection)
