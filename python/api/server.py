"""
FastAPI Client Verification Portal API Server

Admin endpoints (login, roster, import, resend, export, stats), the public
verification endpoints keyed by token, and the import progress WebSocket.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import uuid
import logging
import tempfile
import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Optional

import psutil
from fastapi import (
    FastAPI,
    UploadFile,
    File,
    Form,
    Depends,
    Query,
    Request,
    Security,
    WebSocket,
    WebSocketDisconnect,
)
from fastapi.responses import RedirectResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from api.models import (
    LoginRequest,
    LoginResponse,
    TwoFactorRequest,
    TokenResponse,
    AdminResponse,
    ContactFields,
    ContactRecordResponse,
    PublicContactRecord,
    UserListResponse,
    VerifyFetchResponse,
    VerificationSubmitRequest,
    VerifySubmitResponse,
    ImportResponse,
    ResendResponse,
    StatsResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from auth import (
    SCOPE_ADMIN,
    SCOPE_2FA_PENDING,
    authenticate,
    check_second_factor,
    create_access_token,
    decode_access_token,
)
from config_manager import get_config, setup_logging, ConfigManager, ConfigurationError
from database.connection import DatabaseSessionProvider, get_db, get_db_provider, init_db, close_db
from database.models import AdminAccount, ContactRecord
from database.monitoring import check_health
from database.repositories import AdminRepository, ContactRecordRepository, Requester
from errors import AuthError, UploadTooLargeError, ValidationError
from exporter import export_records
from importer import ImportPipeline, ImportReport, SUPPORTED_EXTENSIONS
from notifier import NotificationDispatcher, build_transport
from progress import ProgressBroker
from roster import dashboard_stats, edit_record, search_records
from security_logger import SecurityLogger, get_security_logger
from text_utils import sanitize_for_logging
from tokens import TokenIssuer
from verification import ACTION_CONFIRM, VerificationHandler

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
MAX_UPLOAD_SIZE_MB = os.getenv("MAX_UPLOAD_SIZE_MB", "")  # overrides import.max_upload_size_mb
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")

UPLOAD_CHUNK_SIZE = 8192

# Global state
_config: Optional[ConfigManager] = None
_broker: Optional[ProgressBroker] = None
_dispatcher: Optional[NotificationDispatcher] = None
_startup_time: Optional[datetime] = None
_executor = ThreadPoolExecutor(max_workers=2)  # Import runs off the event loop

bearer_scheme = HTTPBearer(auto_error=False)


# ============================================
# DEPENDENCIES
# ============================================

def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
        setup_logging(_config.logging)
    return _config


def get_broker() -> ProgressBroker:
    """Dependency to get the progress broker."""
    global _broker
    if _broker is None:
        _broker = ProgressBroker()
    return _broker


def get_dispatcher(
    config: ConfigManager = Depends(get_config_instance),
) -> NotificationDispatcher:
    """Dependency to get the verification mail dispatcher."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(
            build_transport(config.mail),
            config=config.mail,
            validity_hours=config.tokens.validity_hours,
        )
    return _dispatcher


def get_security(
    config: ConfigManager = Depends(get_config_instance),
) -> SecurityLogger:
    """Dependency to get the security event logger."""
    return get_security_logger(
        log_dir=config.logging.security_log_dir,
        enable_file=config.logging.security_log_file,
    )


def get_provider() -> DatabaseSessionProvider:
    """Dependency for code that needs sessions outside the request (import worker)."""
    provider = get_db_provider()
    if not provider.initialized:
        provider.init()
    return provider


def _requester(request: Request) -> Requester:
    return Requester(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _bearer_token(credentials: Optional[HTTPAuthorizationCredentials]) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Not authenticated", code="NOT_AUTHENTICATED")
    return credentials.credentials


def _load_admin(db: Session, admin_id: int) -> AdminAccount:
    admin = AdminRepository(db).get_by_id(admin_id)
    if admin is None:
        raise AuthError("Invalid or expired session", code="INVALID_SESSION")
    return admin


def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    config: ConfigManager = Depends(get_config_instance),
    db: Session = Depends(get_db),
) -> AdminAccount:
    """Full-scope admin session."""
    claims = decode_access_token(_bearer_token(credentials), config.auth, SCOPE_ADMIN)
    return _load_admin(db, claims.admin_id)


def require_pending_2fa(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
    config: ConfigManager = Depends(get_config_instance),
    db: Session = Depends(get_db),
) -> AdminAccount:
    """Session that has passed the password step and awaits a TOTP code."""
    claims = decode_access_token(_bearer_token(credentials), config.auth, SCOPE_2FA_PENDING)
    return _load_admin(db, claims.admin_id)


def _admin_view(db: Session, admin: AdminAccount) -> AdminResponse:
    security = AdminRepository(db).get_security(admin.id)
    return AdminResponse(
        id=admin.id,
        email=admin.email,
        created_at=admin.created_at.isoformat() if admin.created_at else None,
        two_factor_enabled=bool(security and security.two_factor_enabled),
    )


def _record_view(record: ContactRecord) -> ContactRecordResponse:
    return ContactRecordResponse(**record.to_dict())


def _public_view(record: ContactRecord) -> PublicContactRecord:
    return PublicContactRecord(**record.to_dict())


# Create FastAPI application
app = FastAPI(
    title="Client Verification Portal API",
    description="Bulk import of client contact records and token-based self-verification",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and prepare the database."""
    global _config, _startup_time

    logger.info("Starting Client Verification Portal API...")
    start_time = time.time()

    try:
        _config = get_config(CONFIG_PATH)
        logger.info(f"Configuration loaded from {CONFIG_PATH}")

        provider = init_db()
        provider.create_tables()

        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready in %.2f seconds", time.time() - start_time)

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down Client Verification Portal API...")
    _executor.shutdown(wait=False)
    close_db()


# ============================================
# AUTH
# ============================================

@app.post(
    "/api/auth/login",
    response_model=LoginResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid credentials"}},
    summary="Admin login",
)
def login(
    body: LoginRequest,
    request: Request,
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
    security: SecurityLogger = Depends(get_security),
):
    """Check email and password.

    Admins with 2FA enabled receive a short-lived token that is only valid
    for /api/auth/verify-2fa.
    """
    try:
        result = authenticate(db, body.email, body.password)
    except AuthError as e:
        security.log_auth_failure(body.email, e.code, source_ip=_requester(request).ip_address or "")
        raise

    scope = SCOPE_2FA_PENDING if result.requires_2fa else SCOPE_ADMIN
    token = create_access_token(result.admin.id, scope, config.auth)
    logger.info(f"Admin {result.admin.id} logged in (2fa required: {result.requires_2fa})")
    return LoginResponse(
        admin=_admin_view(db, result.admin),
        token=token,
        requires_2fa=result.requires_2fa,
    )


@app.post(
    "/api/auth/verify-2fa",
    response_model=TokenResponse,
    responses={401: {"model": ErrorResponse, "description": "Invalid code or session"}},
    summary="Second authentication factor",
)
def verify_two_factor(
    body: TwoFactorRequest,
    request: Request,
    admin: AdminAccount = Depends(require_pending_2fa),
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
    security: SecurityLogger = Depends(get_security),
):
    try:
        check_second_factor(db, admin.id, body.code, window=config.auth.totp_valid_window)
    except AuthError as e:
        security.log_auth_failure(
            admin.email, e.code, source_ip=_requester(request).ip_address or "", stage="2fa"
        )
        raise

    token = create_access_token(admin.id, SCOPE_ADMIN, config.auth)
    return TokenResponse(token=token, admin=_admin_view(db, admin))


@app.get("/api/auth/me", response_model=AdminResponse, summary="Current admin")
def me(
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return _admin_view(db, admin)


# ============================================
# ADMIN ROSTER
# ============================================

@app.get("/api/admin/users", response_model=UserListResponse, summary="Search records")
def list_users(
    search: Optional[str] = Query(default=None, max_length=200),
    status: Optional[str] = Query(default=None),
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
):
    records, total, page, limit = search_records(
        db, query=search, status=status, page=page, limit=limit, config=config.api
    )
    return UserListResponse(
        users=[_record_view(r) for r in records],
        total=total,
        page=page,
        limit=limit,
    )


@app.put(
    "/api/admin/users/{record_id}",
    response_model=ContactRecordResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Record not found"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Edit a record",
)
def update_user(
    record_id: int,
    body: ContactFields,
    request: Request,
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
):
    record = edit_record(
        db, record_id, body.submitted(),
        validation=config.validation,
        requester=_requester(request),
    )
    return _record_view(record)


def _close_progress(broker: ProgressBroker, channel_id: Optional[str], error: Exception) -> None:
    """Publish a terminal event for an upload rejected before the import starts."""
    if channel_id:
        broker.publish(channel_id, {"progress": 100.0, "error": str(error)})


def _run_import(
    provider: DatabaseSessionProvider,
    config: ConfigManager,
    dispatcher: NotificationDispatcher,
    broker: ProgressBroker,
    path: Path,
    filename: str,
    channel_id: Optional[str],
    requester: Requester,
) -> ImportReport:
    """Worker-thread body of an import; owns its own session."""
    with provider.get_unit_of_work() as uow:
        issuer = TokenIssuer(
            uow.session,
            validity_hours=config.tokens.validity_hours,
            token_bytes=config.tokens.token_bytes,
        )
        pipeline = ImportPipeline(
            uow.session,
            issuer,
            dispatcher=dispatcher,
            broker=broker,
            validation=config.validation,
            progress_every=config.importing.progress_every,
        )
        return pipeline.run(path, filename, channel_id=channel_id, requester=requester)


@app.post(
    "/api/admin/import",
    response_model=ImportResponse,
    responses={
        200: {"model": ImportResponse, "description": "Import completed"},
        401: {"model": ErrorResponse, "description": "Not authenticated"},
        413: {"model": ErrorResponse, "description": "File too large"},
        422: {"model": ErrorResponse, "description": "Unreadable or unsupported file"},
    },
    summary="Import records from CSV or XLSX",
)
async def import_records(
    request: Request,
    file: UploadFile = File(..., description="CSV or XLSX file of client records"),
    channel_id: Optional[str] = Form(default=None, max_length=128),
    admin: AdminAccount = Depends(require_admin),
    config: ConfigManager = Depends(get_config_instance),
    provider: DatabaseSessionProvider = Depends(get_provider),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    broker: ProgressBroker = Depends(get_broker),
):
    """Upsert every row, then reissue tokens and send verification emails.

    Streams the upload to disk, then runs the import on a worker thread.
    Progress is pushed to /api/ws/progress/{channel_id} when a channel id
    is given.
    """
    start_time = time.time()
    filename = file.filename or ""
    extension = Path(filename).suffix.lower()
    if extension not in SUPPORTED_EXTENSIONS:
        error = ValidationError(
            f"Unsupported file type: {extension or '<none>'}",
            field="file",
            code="INVALID_FILE",
            suggestion="Upload a .csv or .xlsx file",
        )
        _close_progress(broker, channel_id, error)
        raise error

    max_mb = int(MAX_UPLOAD_SIZE_MB) if MAX_UPLOAD_SIZE_MB else config.importing.max_upload_size_mb
    max_size_bytes = max_mb * 1024 * 1024

    temp_dir = Path(tempfile.gettempdir()) / "portal_imports"
    temp_dir.mkdir(exist_ok=True)
    temp_path = temp_dir / f"{uuid.uuid4().hex}{extension}"

    try:
        # Stream file directly to disk to avoid memory accumulation
        total_size = 0
        with open(temp_path, "wb") as file_handle:
            while True:
                chunk = await file.read(UPLOAD_CHUNK_SIZE)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > max_size_bytes:
                    error = UploadTooLargeError(
                        f"File too large. Maximum size is {max_mb}MB",
                        field="file",
                    )
                    _close_progress(broker, channel_id, error)
                    raise error
                file_handle.write(chunk)

        logger.info(
            "Import upload received: filename=%s size=%d admin=%d",
            sanitize_for_logging(filename), total_size, admin.id,
        )

        loop = asyncio.get_running_loop()
        report = await loop.run_in_executor(
            _executor,
            partial(
                _run_import,
                provider, config, dispatcher, broker,
                temp_path, filename, channel_id, _requester(request),
            ),
        )

        payload = report.to_dict()
        payload["processing_time_ms"] = int((time.time() - start_time) * 1000)
        return ImportResponse(**payload)

    finally:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as e:
                logger.error(
                    "Failed to cleanup temp file: path=%s error=%s", temp_path, e
                )


@app.post(
    "/api/admin/resend-email/{record_id}",
    response_model=ResendResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Record not found"},
        502: {"model": ErrorResponse, "description": "Mail transport failed"},
    },
    summary="Reissue a token and resend the verification email",
)
def resend_email(
    record_id: int,
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    record = ContactRecordRepository(db).get_or_raise(record_id)
    issuer = TokenIssuer(
        db,
        validity_hours=config.tokens.validity_hours,
        token_bytes=config.tokens.token_bytes,
    )
    dispatcher.resend(record, issuer)
    return ResendResponse(ok=True, message=f"Verification email sent to {record.email}")


@app.get(
    "/api/admin/export",
    responses={
        200: {"description": "CSV or XLSX file"},
        422: {"model": ErrorResponse, "description": "Unsupported format"},
    },
    summary="Export all records",
)
def export_users(
    format: str = Query(default="csv"),
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
):
    records = ContactRecordRepository(db).list_all()
    content, media_type, filename = export_records(records, format)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.get("/api/admin/stats", response_model=StatsResponse, summary="Dashboard counters")
def stats(
    admin: AdminAccount = Depends(require_admin),
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
):
    return StatsResponse(**dashboard_stats(db, config.stats))


# ============================================
# PUBLIC VERIFICATION
# ============================================

def _verification_handler(
    db: Session,
    config: ConfigManager,
    security: SecurityLogger,
) -> VerificationHandler:
    issuer = TokenIssuer(
        db,
        validity_hours=config.tokens.validity_hours,
        token_bytes=config.tokens.token_bytes,
    )
    return VerificationHandler(db, issuer, validation=config.validation, security=security)


@app.get(
    "/api/verify/{token}",
    response_model=VerifyFetchResponse,
    responses={404: {"model": ErrorResponse, "description": "Invalid or expired link"}},
    summary="Fetch a record by verification token",
)
def verify_fetch(
    token: str,
    request: Request,
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
    security: SecurityLogger = Depends(get_security),
):
    handler = _verification_handler(db, config, security)
    record, has_changes = handler.fetch(token, requester=_requester(request))
    return VerifyFetchResponse(user=_public_view(record), has_changes=has_changes)


@app.post(
    "/api/verify/{token}",
    response_model=VerifySubmitResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Invalid or expired link"},
        409: {"model": ErrorResponse, "description": "Link already used"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Confirm or update a record by verification token",
)
def verify_submit(
    token: str,
    body: VerificationSubmitRequest,
    request: Request,
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
    security: SecurityLogger = Depends(get_security),
):
    fields = body.submitted()
    action = fields.pop("action")
    handler = _verification_handler(db, config, security)
    record = handler.submit(token, action, fields, requester=_requester(request))

    if action.strip().lower() == ACTION_CONFIRM:
        message = "Thank you for confirming your details."
    else:
        message = "Your details have been updated."
    return VerifySubmitResponse(success=True, message=message, user=_public_view(record))


# ============================================
# PROGRESS CHANNEL
# ============================================

@app.websocket("/api/ws/progress/{channel_id}")
async def progress_socket(
    websocket: WebSocket,
    channel_id: str,
    broker: ProgressBroker = Depends(get_broker),
):
    """Relay import progress events for one channel.

    The socket closes after the 100% event; a client that disconnects early
    does not affect the running import.
    """
    queue = broker.subscribe(channel_id)
    try:
        await websocket.accept()
        while True:
            event = await queue.get()
            await websocket.send_json(event)
            if event.get("progress", 0) >= 100:
                break
        await websocket.close()
    except WebSocketDisconnect:
        logger.info(f"Progress subscriber left channel {sanitize_for_logging(channel_id)}")
    finally:
        broker.unsubscribe(channel_id, queue)


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
def health_check(provider: DatabaseSessionProvider = Depends(get_provider)):
    """Return health status. Always returns HTTP 200."""
    status = check_health(provider.engine, provider.session_factory)

    records = 0
    if status.healthy:
        with provider.session_scope() as session:
            records = ContactRecordRepository(session).count()

    memory_usage_mb = round(psutil.Process().memory_info().rss / (1024 * 1024), 2)

    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    return HealthResponse(
        status="healthy" if status.healthy else "degraded",
        database=status.to_dict(),
        records=records,
        memory_usage_mb=memory_usage_mb,
        uptime_seconds=uptime_seconds,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
