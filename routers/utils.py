from fastapi import HTTPException, Request, status

from services.container import ServiceContainer
from services.context_assembler import ContextAssembler
from services.market_context import MarketContextOrchestrator
from services.market_news import MarketNewsService
from services.profile_manager import ProfileManager


def get_container(request: Request) -> ServiceContainer:
    """
    Dependency returning the services built in the application lifespan.

    Raises:
        HTTPException: 503 if the services are not initialised yet
    """
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Services are not initialised"
        )
    return container


def get_assembler(request: Request) -> ContextAssembler:
    return get_container(request).assembler


def get_market_context(request: Request) -> MarketContextOrchestrator:
    return get_container(request).market_context


def get_profile_manager(request: Request) -> ProfileManager:
    return get_container(request).profile_manager


def get_market_news(request: Request) -> MarketNewsService:
    news = get_container(request).market_news
    if news is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Market news is not configured"
        )
    return news
