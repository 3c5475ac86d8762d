import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import AppConfig
from routes import jobs, jobs_ws, settings
from services.pipeline import PipelineService, build_pipeline

# Load .env from backend dir
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

logger = logging.getLogger(__name__)


def create_app(
    pipeline: PipelineService | None = None,
    config: AppConfig | None = None,
) -> FastAPI:
    """
    Build the API. When ``pipeline`` is given it is used as-is; otherwise one
    is built from ``config`` on startup and its runs are stopped on shutdown.
    """
    config = config or AppConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "pipeline", None) is None
        if owned:
            app.state.pipeline = build_pipeline(
                config.DATA_DIR,
                time_scale=config.TIME_SCALE,
                run_timeout=config.RUN_TIMEOUT_SECONDS,
            )
        logger.info("Clip pipeline API started")
        yield
        logger.info("Shutting down clip pipeline API...")
        await app.state.pipeline.shutdown()
        if owned:
            app.state.pipeline = None

    app = FastAPI(title="Clip Pipeline API", version="0.1.0", lifespan=lifespan)
    app.state.pipeline = pipeline
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> dict[str, object]:
        current = app.state.pipeline
        running = len(current.store.running_ids()) if current is not None else 0
        return {"status": "ok", "running_jobs": running}

    app.include_router(jobs.router, prefix="/api")
    app.include_router(jobs_ws.router, prefix="/api")
    app.include_router(settings.router, prefix="/api")
    return app


_config = AppConfig()
logging.basicConfig(
    level=_config.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app(config=_config)
