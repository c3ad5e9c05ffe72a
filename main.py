from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from typing import Optional
import asyncio
import logging
import os
from dotenv import load_dotenv

import models
from database import engine
from routers import ask, market, profile
from services.container import ServiceContainer, build_container_from_env

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        container: Pre-built services. When omitted, tables are created and
            services are built from the environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = container
        if services is None:
            models.Base.metadata.create_all(bind=engine)
            services = build_container_from_env()
        app.state.container = services
        services.market_cache.start()

        refresh_tasks = []
        interval = float(os.getenv("MARKET_REFRESH_INTERVAL_SECONDS", "0"))
        if interval > 0:
            refresh_tasks.append(asyncio.create_task(services.market_context.run_scheduled_refresh(interval)))
            logger.info(f"Scheduled market refresh every {interval:g}s")
        news_interval = float(os.getenv("MARKET_NEWS_REFRESH_INTERVAL_SECONDS", "0"))
        if news_interval > 0 and services.market_news is not None:
            refresh_tasks.append(asyncio.create_task(services.market_news.run_scheduled_refresh(news_interval)))
            logger.info(f"Scheduled market news refresh every {news_interval:g}s")

        try:
            yield
        finally:
            for task in refresh_tasks:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            await services.aclose()

    app = FastAPI(
        title="Finsight API",
        version="1.0.0",
        description="Privacy-preserving context preparation for personal finance questions",
        lifespan=lifespan,
    )

    # Cannot use "*" with allow_credentials=True, so origins are listed explicitly
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            origin.strip()
            for origin in os.getenv(
                "CORS_ORIGINS",
                "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        max_age=3600,
    )

    app.include_router(ask.router, prefix="/ask", tags=["Ask"])
    app.include_router(market.router, prefix="/market", tags=["Market"])
    app.include_router(profile.router, tags=["Profile"])

    @app.get("/")
    async def root():
        return {"message": "Finsight API", "version": "1.0.0", "docs": "/docs"}

    return app


app = create_app()
