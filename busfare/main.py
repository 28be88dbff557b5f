from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from busfare.config import Settings
from busfare.database import Base, build_engine, build_session_factory
from busfare.errors import ReconciliationError
from busfare.ingestion import WebhookIngestor
from busfare.logging_utils import configure_logging, get_logger
from busfare.query import StatusQueryService
from busfare.reconciliation import Reconciler
from busfare.routes import router
from busfare.store import PaymentStore

logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the service with its own engine and store.

    Run with: uvicorn --factory busfare.main:create_app
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    engine = build_engine(settings.database_url)
    Base.metadata.create_all(bind=engine)

    store = PaymentStore(build_session_factory(engine), lock_timeout=settings.lock_timeout_seconds)
    reconciler = Reconciler(store)

    app = FastAPI(title="Bus Trip Payment Reconciliation")
    app.state.settings = settings
    app.state.engine = engine
    app.state.store = store
    app.state.reconciler = reconciler
    app.state.ingestor = WebhookIngestor(
        store,
        reconciler,
        secret=settings.webhook_secret,
        signature_header=settings.signature_header,
    )
    app.state.status_service = StatusQueryService(store)

    app.include_router(router)

    @app.exception_handler(ReconciliationError)
    async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message, "retryable": exc.retryable},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "retryable": True},
        )

    return app
