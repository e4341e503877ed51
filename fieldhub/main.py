import os
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import inspect
from sqlalchemy.orm import sessionmaker

from .config import settings
from .db import Base, SessionLocal, get_db
from .logging import setup_logging, RequestIdMiddleware
from .routes.equipment import router as equipment_router
from .routes.jobs import router as jobs_router
from .routes.diagrams import router as diagrams_router
from .services.sessions import SessionRegistry

logger = structlog.get_logger(__name__)


def create_app(
    session_factory: Optional[sessionmaker] = None,
    sync_interval: Optional[float] = None,
    sync_after_mutation: Optional[bool] = None,
    save_batch_delay: Optional[float] = None,
    save_min_interval: Optional[float] = None,
) -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)
    if session_factory is not None:
        def _get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = _get_db
    session_factory = session_factory or SessionLocal

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    # Routers
    app.include_router(equipment_router)
    app.include_router(jobs_router)
    app.include_router(diagrams_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    async def _startup():
        logger.info("startup", environment=settings.environment)
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            engine = session_factory.kw["bind"]
            existing_tables = set(inspect(engine).get_table_names())
            missing = set(Base.metadata.tables.keys()) - existing_tables
            if missing:
                logger.info("creating_tables", tables=sorted(missing))
                Base.metadata.create_all(bind=engine)
        app.state.registry = SessionRegistry(
            session_factory,
            sync_interval=sync_interval,
            sync_after_mutation=sync_after_mutation,
            save_batch_delay=save_batch_delay,
            save_min_interval=save_min_interval,
        )

    @app.on_event("shutdown")
    async def _shutdown():
        registry: SessionRegistry = app.state.registry
        await registry.close_all()
        logger.info("shutdown")

    return app


app = create_app()
