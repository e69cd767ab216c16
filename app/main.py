import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from app.core.config import get_settings
from app.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from app.core.logging import bind_request_id, configure_logging, get_logger
from app.db.init import close_db, init_db
from app.routers import auth, credits, feedback, generate, plans
from app.services.credits import CreditLedger
from app.storage.base import get_storage

settings = get_settings()
configure_logging(debug=settings.debug, db_echo=settings.db_echo)
log = get_logger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="Section Studio API",
        version="1.0.0",
        default_response_class=ORJSONResponse,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_id_middleware(request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        bind_request_id(request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start) * 1000
        log.info(
            "request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_exception_handler(AppError, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    # Routers
    app.include_router(auth.router, prefix="/v1/auth", tags=["auth"])
    app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
    app.include_router(generate.router, prefix="/v1/generate", tags=["generate"])
    app.include_router(feedback.router, prefix="/v1/feedback", tags=["feedback"])
    app.include_router(plans.router, prefix="/v1/plans", tags=["plans"])

    @app.on_event("startup")
    async def startup():
        if settings.sentry_dsn:
            import sentry_sdk
            sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
            log.info("startup", msg="Sentry enabled")
        # Tests inject their own state before the app starts
        if getattr(app.state, "ledger", None) is None:
            db = await init_db()
            app.state.db = db
            app.state.ledger = CreditLedger(db, default_grant=settings.default_credit_grant)
            log.info("startup", msg="DB connected")
        if getattr(app.state, "storage", None) is None:
            app.state.storage = get_storage()

    @app.on_event("shutdown")
    async def shutdown():
        await close_db()

    @app.get("/health")
    async def health():
        """Health check for load balancers and monitoring."""
        return {"status": "ok"}

    return app


app = create_app()
