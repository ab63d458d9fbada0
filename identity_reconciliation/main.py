import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from .config import Settings, get_settings
from .contacts import StoreError, StoreUnavailable
from .db_models import FinalResponse, IdentifyRequest
from .db_setup import create_store, init_db
from .linking import LinkingEngine
from .logging_config import setup_logging
from .reconciliation import InvalidRequest, ReconciliationService

logger = logging.getLogger(__name__)


def build_service(settings: Settings) -> ReconciliationService:
    store = create_store(settings.DATABASE_URL, lock_timeout=settings.DB_LOCK_TIMEOUT_SECONDS)
    if settings.AUTO_MIGRATE:
        init_db(store)
    return ReconciliationService(LinkingEngine(store))


def get_reconciliation_service(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation_service


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ReconciliationService] = None,
) -> FastAPI:
    """Build the API. Pass `service` to reuse an already wired engine (tests do)."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "reconciliation_service", None) is None:
            app.state.reconciliation_service = build_service(settings)
        logger.info(f"{settings.API_TITLE} started ({settings.ENVIRONMENT})")
        yield
        logger.info(f"Shutting down {settings.API_TITLE}")

    app = FastAPI(
        title=settings.API_TITLE,
        version=settings.API_VERSION,
        lifespan=lifespan,
    )
    app.state.reconciliation_service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
        if settings.debug_enabled or response.status_code >= 400:
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.3f}s)"
            )
        return response

    @app.exception_handler(InvalidRequest)
    async def invalid_request_handler(request: Request, exc: InvalidRequest):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Contact store unavailable: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Contact store unavailable"})

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        logger.error(f"Contact store error: {exc}")
        detail = "Internal server error" if settings.is_production else str(exc)
        return JSONResponse(status_code=500, content={"detail": detail})

    @app.get("/")
    async def root():
        return {"message": "Bitespeed API is up"}

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping():
        return "pong"

    # plain def: the engine blocks on database locks, so it runs in the threadpool
    @app.post("/identify", response_model=FinalResponse)
    def identify(
        request: IdentifyRequest,
        service: ReconciliationService = Depends(get_reconciliation_service),
    ):
        result = service.reconcile(email=request.email, phone_number=request.phoneNumber)
        return FinalResponse.from_result(result)

    return app


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn

    settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.log_json)
    uvicorn.run(
        "identity_reconciliation.main:create_app",
        factory=True,
        host=host or settings.HOST,
        port=port or settings.PORT,
    )


if __name__ == "__main__":
    run()
