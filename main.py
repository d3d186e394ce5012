import logging
from typing import Any, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from aggregation import by_category, category_breakdown, totals
from config import Settings, get_settings
from context import ContextRegistry, SessionContext, create_context
from cookies import SESSION_COOKIE, read_session_key, sign_session_key
from database import SessionLocal, create_schema
from errors import (
    AuthError,
    AuthErrorCategory,
    AuthErrorCode,
    ConfigurationError,
    SubscriptionError,
    ValidationError,
    WriteError,
    WriteErrorReason,
    message,
)
from local_backend import LocalDocumentStore
from models import SUGGESTED_CATEGORIES, TransactionKind
from periods import ReportPeriod, filter_by_period, local_today
from reports import build_report, export_csv, report_filename
from scheduler import SchedulerManager
from schemas import Credentials, TransactionOut

settings = get_settings()
logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Finance Tracker")
registry = ContextRegistry()


def configure(
    app_settings: Optional[Settings] = None, session_factory=None
) -> None:
    """Select the settings and local database the contexts are built from."""
    app_settings = app_settings or get_settings()
    app.state.settings = app_settings
    app.state.session_factory = session_factory or SessionLocal
    app.state.documents = None
    if app_settings.use_local_backend:
        app.state.documents = LocalDocumentStore(app.state.session_factory)


configure()
scheduler_manager = SchedulerManager(registry)


@app.on_event("startup")
def startup_event():
    if app.state.settings.use_local_backend:
        create_schema()
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()
    registry.clear()


AUTH_STATUS = {
    AuthErrorCategory.bad_credentials: 401,
    AuthErrorCategory.account_disabled: 401,
    AuthErrorCategory.rate_limited: 429,
    AuthErrorCategory.network_failure: 503,
    AuthErrorCategory.malformed_input: 400,
    AuthErrorCategory.misconfiguration: 503,
    AuthErrorCategory.unknown: 502,
}

WRITE_STATUS = {
    WriteErrorReason.unauthenticated: 401,
    WriteErrorReason.network_failure: 503,
    WriteErrorReason.remote_rejected: 409,
}


def http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AuthError):
        status = 409 if exc.code == AuthErrorCode.already_in_use else AUTH_STATUS[exc.category]
        return HTTPException(status_code=status, detail=exc.message)
    if isinstance(exc, WriteError):
        return HTTPException(status_code=WRITE_STATUS[exc.reason], detail=exc.message)
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=exc.message)
    if isinstance(exc, SubscriptionError):
        return HTTPException(status_code=401, detail=exc.message)
    return HTTPException(status_code=400, detail=str(exc))


def _locale() -> str:
    return app.state.settings.locale


def _new_context() -> SessionContext:
    try:
        return create_context(
            app.state.settings,
            session_factory=app.state.session_factory,
            documents=app.state.documents,
        )
    except ConfigurationError as exc:
        logger.error(f"context_unavailable: {exc}")
        raise HTTPException(
            status_code=503, detail=message("auth.misconfigured", _locale())
        ) from exc


def current_context(request: Request) -> Optional[SessionContext]:
    key = read_session_key(request.cookies.get(SESSION_COOKIE))
    return registry.get(key)


def require_context(request: Request) -> SessionContext:
    context = current_context(request)
    if context is None or context.identity is None:
        raise HTTPException(
            status_code=401, detail=message("write.unauthenticated", _locale())
        )
    return context


def _period_param(raw: Optional[str]) -> Optional[ReportPeriod]:
    if not raw:
        return None
    try:
        return ReportPeriod(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown period: {raw}") from exc


def _identity_payload(context: SessionContext) -> dict[str, Any]:
    identity = context.identity
    return {"uid": identity.uid, "email": identity.email}


def _authenticate(request: Request, credentials: Credentials, register: bool) -> Response:
    context = current_context(request) or _new_context()
    try:
        if register:
            context.register(credentials.email, credentials.password)
        else:
            context.login(credentials.email, credentials.password)
    except AuthError as exc:
        raise http_error(exc) from exc

    old_key = read_session_key(request.cookies.get(SESSION_COOKIE))
    if registry.get(old_key) is context:
        key = old_key
        registry.renew(key)
    else:
        key = registry.add(context)
    response = JSONResponse(_identity_payload(context), status_code=201 if register else 200)
    response.set_cookie(
        SESSION_COOKIE,
        sign_session_key(key),
        httponly=True,
        samesite="lax",
    )
    return response


@app.post("/api/auth/register")
def register(request: Request, credentials: Credentials):
    return _authenticate(request, credentials, register=True)


@app.post("/api/auth/login")
def login(request: Request, credentials: Credentials):
    return _authenticate(request, credentials, register=False)


@app.post("/api/auth/logout")
def logout(request: Request):
    key = read_session_key(request.cookies.get(SESSION_COOKIE))
    context = registry.get(key)
    response = JSONResponse({"ok": True})
    response.delete_cookie(SESSION_COOKIE)
    if context is None:
        return response
    try:
        context.logout()
    except AuthError as exc:
        raise http_error(exc) from exc
    finally:
        registry.discard(key)
    return response


@app.get("/api/auth/me")
def me(request: Request):
    return _identity_payload(require_context(request))


@app.get("/api/transactions")
def api_transactions(request: Request):
    store = require_context(request).store
    period = _period_param(request.query_params.get("period"))
    items = store.transactions
    if period is not None:
        items = filter_by_period(items, period, local_today())
    error = store.error
    return {
        "state": store.state.value,
        "items": [TransactionOut.from_record(txn).model_dump(mode="json") for txn in items],
        "error": error.message if error else None,
    }


@app.post("/api/transactions", status_code=201)
def create_transaction(request: Request, payload: dict[str, Any] = Body(...)):
    store = require_context(request).store
    try:
        transaction_id = store.create(payload)
    except (WriteError, ValidationError) as exc:
        raise http_error(exc) from exc
    return {"id": transaction_id}


@app.patch("/api/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str, request: Request, payload: dict[str, Any] = Body(...)
):
    store = require_context(request).store
    try:
        store.update(transaction_id, payload)
    except (WriteError, ValidationError) as exc:
        raise http_error(exc) from exc
    return {"id": transaction_id}


@app.delete("/api/transactions/{transaction_id}")
def delete_transaction(transaction_id: str, request: Request):
    store = require_context(request).store
    try:
        store.delete(transaction_id)
    except (WriteError, ValidationError) as exc:
        raise http_error(exc) from exc
    return {"id": transaction_id}


@app.post("/api/transactions/retry")
def retry_subscription(request: Request):
    store = require_context(request).store
    try:
        store.retry()
    except SubscriptionError as exc:
        raise http_error(exc) from exc
    return {"state": store.state.value}


@app.get("/api/summary")
def api_summary(request: Request):
    store = require_context(request).store
    period = _period_param(request.query_params.get("period"))
    items = store.transactions
    if period is not None:
        items = filter_by_period(items, period, local_today())
    return {
        "totals": totals(items).as_dict(),
        "by_category": {
            name: {"amount": entry.amount, "kind": entry.kind.value}
            for name, entry in by_category(items).items()
        },
        "income_breakdown": category_breakdown(items, TransactionKind.income),
        "expense_breakdown": category_breakdown(items, TransactionKind.expense),
    }


@app.get("/api/reports/{period}")
def export_report(period: str, request: Request):
    store = require_context(request).store
    report_period = _period_param(period)
    today = local_today()
    filtered = filter_by_period(store.transactions, report_period, today)
    report = build_report(filtered, report_period, locale=_locale())
    csv_text = export_csv(report)
    filename = report_filename(report_period, today)
    logger.info(f"report_exported: period={report_period.value} rows={len(report.rows)}")
    return StreamingResponse(
        iter([csv_text]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/categories/suggested")
def suggested_categories():
    return {kind.value: labels for kind, labels in SUGGESTED_CATEGORIES.items()}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
