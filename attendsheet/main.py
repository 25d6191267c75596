"""
AttendSheet: application entry point.

This is the only file that assembles the app. Business logic lives in
`engine/` and `services/`; `api/` is a thin HTTP layer over them.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import select

from attendsheet.api.v1.api import api_router
from attendsheet.api.v1.endpoints.auth import limiter
from attendsheet.core.config import settings
from attendsheet.core.exceptions import register_exception_handlers
from attendsheet.core.security import get_password_hash
from attendsheet.db.base import Base
from attendsheet.db.session import async_session_factory, engine

# Ensure all models are imported so metadata.create_all can see them
from attendsheet.models.audit import AuditEntry  # noqa: F401
from attendsheet.models.confirmation import ConfirmationRecord  # noqa: F401
from attendsheet.models.rule_config import RuleConfig, RuleConfigSnapshot  # noqa: F401
from attendsheet.models.sheet import Sheet  # noqa: F401
from attendsheet.models.user import User
from attendsheet.services.container import Services, build_services

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)


async def _seed_admin() -> None:
    async with async_session_factory() as session:
        result = await session.execute(
            select(User).where(User.email == settings.FIRST_ADMIN_EMAIL)
        )
        if result.scalar_one_or_none() is None:
            session.add(
                User(
                    email=settings.FIRST_ADMIN_EMAIL,
                    hashed_password=get_password_hash(settings.FIRST_ADMIN_PASSWORD),
                    full_name="System Administrator",
                    role="admin",
                )
            )
            await session.commit()
            logger.info(
                "Default admin created: %s (password: <redacted>)",
                settings.FIRST_ADMIN_EMAIL,
            )


# ── Lifespan ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")

    await _seed_admin()

    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(async_session_factory, settings)
    services: Services = app.state.services

    logger.info("AttendSheet v%s started", settings.VERSION)
    yield
    await services.aclose()
    await engine.dispose()
    logger.info("Shutdown complete")


# ── App factory ─────────────────────────────────────────────────────
def create_app(services: Services | None = None) -> FastAPI:
    application = FastAPI(
        title=settings.PROJECT_NAME,
        description="Monthly attendance metrics and confirmation lifecycle",
        version=settings.VERSION,
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    application.state.services = services
    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)  # type: ignore[arg-type]

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Global exception handlers (prevent stack-trace leakage)
    register_exception_handlers(application)

    application.include_router(api_router, prefix=settings.API_V1_PREFIX)
    return application


app = create_app()
