"""FastAPI application exposing the financial sync and the WhatsApp webhook."""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from portalsync.advbox import AdvboxAuthError, AdvboxClient
from portalsync.advbox.sync import (
    SYNC_TYPE,
    FinancialSync,
    SyncAlreadyRunningError,
    SyncConfigurationError,
    resolve_api_token,
)
from portalsync.auth import (
    FINANCIAL_FEATURE,
    AuthenticationError,
    PermissionDeniedError,
    TokenEncryption,
    authenticate,
    require_permission,
)
from portalsync.config import Config, load_config
from portalsync.db.models import PermissionLevel
from portalsync.db.repository import Repository
from portalsync.webhook import process_webhook

log = logging.getLogger("portalsync.server")

CORS_ALLOW_HEADERS = ["authorization", "x-client-info", "apikey", "content-type"]


class SyncRequest(BaseModel):
    """Body of a financial sync invocation."""

    months: int = Field(default=12, ge=1, le=120)
    force_update: bool = False


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_repository(request: Request) -> Repository:
    return request.app.state.repository


async def get_current_user(
    authorization: str | None = Header(default=None),
    config: Config = Depends(get_config),
) -> str:
    """Resolve the bearer token of the request to a user id."""
    return authenticate(authorization, config.security)


def _failure(status_code: int, message: str, error: str | None = None) -> JSONResponse:
    content = {"success": False, "message": message}
    if error is not None:
        content["error"] = error
    return JSONResponse(status_code=status_code, content=content)


router = APIRouter()


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@router.post("/api/v1/sync/financial")
async def sync_financial(
    request: Request,
    user_id: str = Depends(get_current_user),
    config: Config = Depends(get_config),
    repo: Repository = Depends(get_repository),
):
    """Run the ADVBox financial sync for the caller."""
    await require_permission(repo, user_id, FINANCIAL_FEATURE, PermissionLevel.EDIT)
    try:
        body = await request.json()
    except ValueError:
        body = {}
    try:
        params = SyncRequest.model_validate(body if isinstance(body, dict) else {})
    except ValidationError as e:
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": "Invalid parameters", "detail": e.errors()},
        )

    api_token = resolve_api_token(config.advbox, TokenEncryption(config.security.encryption_key))
    log.info(f"User {user_id} started financial sync ({params.months} months)")
    async with AdvboxClient(config.advbox, api_token) as client:
        job = FinancialSync(client, repo, config.advbox, user_id)
        try:
            summary = await job.run(months=params.months, force_update=params.force_update)
        except (AdvboxAuthError, SyncAlreadyRunningError):
            raise
        except Exception as e:
            log.exception("Financial sync failed")
            return _failure(500, "Sync failed", str(e))
    return summary.to_dict()


@router.get("/api/v1/sync/financial/status")
async def sync_financial_status(
    user_id: str = Depends(get_current_user),
    repo: Repository = Depends(get_repository),
):
    """Current progress of the financial sync, for polling."""
    await require_permission(repo, user_id, FINANCIAL_FEATURE, PermissionLevel.VIEW)
    status = await repo.get_sync_status(SYNC_TYPE)
    if status is None:
        return {"syncType": SYNC_TYPE, "status": "idle"}
    return {
        "syncType": status.sync_type,
        "status": status.status.value,
        "lastOffset": status.last_offset,
        "totalProcessed": status.total_processed,
        "totalCreated": status.total_created,
        "totalUpdated": status.total_updated,
        "totalSkipped": status.total_skipped,
        "totalErrors": status.total_errors,
        "windowStart": status.window_start.isoformat() if status.window_start else None,
        "windowEnd": status.window_end.isoformat() if status.window_end else None,
        "stopRequested": status.stop_requested,
        "errorMessage": status.error_message,
        "startedAt": status.started_at.isoformat() if status.started_at else None,
        "updatedAt": status.updated_at.isoformat() if status.updated_at else None,
        "completedAt": status.completed_at.isoformat() if status.completed_at else None,
    }


@router.post("/api/v1/sync/financial/stop")
async def stop_financial_sync(
    user_id: str = Depends(get_current_user),
    repo: Repository = Depends(get_repository),
):
    """Ask the running financial sync to stop at its next page."""
    await require_permission(repo, user_id, FINANCIAL_FEATURE, PermissionLevel.EDIT)
    requested = await repo.request_sync_stop(SYNC_TYPE)
    if requested:
        log.info(f"User {user_id} requested the financial sync to stop")
        return {"success": True, "message": "Stop requested"}
    return {"success": False, "message": "No financial sync is running"}


@router.post("/api/v1/webhooks/zapi")
async def zapi_webhook(request: Request, repo: Repository = Depends(get_repository)):
    """Receive Z-API events; always answers 200 so the gateway does not retry."""
    try:
        payload = await request.json()
        if not isinstance(payload, dict):
            raise ValueError(f"payload is a {type(payload).__name__}, not an object")
        result = await process_webhook(repo, payload)
    except Exception as e:
        log.error(f"Error processing webhook: {e}")
        return {"success": False, "error": "Internal error"}
    return {
        "success": True,
        "eventType": result.event_kind.value,
        "duplicate": result.duplicate,
    }


def create_app(config: Config | None = None) -> FastAPI:
    """Build the application; the repository is opened for its lifetime."""
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repo = Repository(config.database.path)
        await repo.connect()
        app.state.repository = repo
        try:
            yield
        finally:
            await repo.close()

    app = FastAPI(title="portalsync", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.server.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
    )
    _add_exception_handlers(app)
    app.include_router(router)
    return app


def _add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthenticationError)
    async def _authentication_error(request: Request, exc: AuthenticationError):
        return _failure(401, "User is not authenticated", str(exc))

    @app.exception_handler(PermissionDeniedError)
    async def _permission_denied(request: Request, exc: PermissionDeniedError):
        return _failure(403, "Permission denied", str(exc))

    @app.exception_handler(SyncConfigurationError)
    async def _configuration_error(request: Request, exc: SyncConfigurationError):
        log.error(f"Sync configuration error: {exc}")
        return _failure(500, "Sync is not configured", str(exc))

    @app.exception_handler(SyncAlreadyRunningError)
    async def _already_running(request: Request, exc: SyncAlreadyRunningError):
        return _failure(409, "A sync is already running", str(exc))

    @app.exception_handler(AdvboxAuthError)
    async def _upstream_auth_error(request: Request, exc: AdvboxAuthError):
        return _failure(500, "ADVBox rejected the API token", str(exc))


def main() -> None:  # pragma: no cover
    """Entry point for the application."""
    import uvicorn

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.server.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


if __name__ == "__main__":  # pragma: no cover
    main()
