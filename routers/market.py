from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional

import schemas
from routers.utils import get_market_context, get_market_news
from services.market_context import MarketContextOrchestrator
from services.market_news import HISTORY_LIMIT, MarketNewsEntry, MarketNewsService

router = APIRouter()


@router.get("/context", response_model=schemas.MarketContextResponse)
async def read_market_context(
    tier: schemas.UserTier = Query(schemas.UserTier.starter),
    query: Optional[str] = Query(None, max_length=500),
    market: MarketContextOrchestrator = Depends(get_market_context)
):
    """Market context a caller of the given tier would receive"""
    summary = await market.get_market_context(tier, query)
    return schemas.MarketContextResponse(
        tier=summary.tier,
        digest=summary.digest,
        data_points=[schemas.DataPointResponse(**vars(p)) for p in summary.data_points],
        snippets=[
            schemas.SearchSnippetResponse(title=s.title, snippet=s.snippet, url=s.url, source=s.source)
            for s in summary.snippets
        ],
        providers_used=summary.providers_used,
        degraded_providers=summary.degraded_providers,
        stale_providers=summary.stale_providers,
        generated_at=summary.generated_at,
    )


@router.post("/refresh", response_model=schemas.MarketRefreshResponse)
async def refresh_market_data(
    market: MarketContextOrchestrator = Depends(get_market_context)
):
    """Re-query every provider, ignoring cache TTLs"""
    result = await market.refresh_all()
    return schemas.MarketRefreshResponse(**result)


@router.post("/invalidate", response_model=schemas.MessageResponse)
def invalidate_market_cache(
    body: schemas.MarketInvalidateRequest,
    market: MarketContextOrchestrator = Depends(get_market_context)
):
    """Drop cached entries for one provider, or for all providers"""
    try:
        removed = market.invalidate_cache(body.provider)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return schemas.MessageResponse(
        message=f"Invalidated {removed} cache entries",
        details={"provider": body.provider or "all", "removed": removed},
    )


@router.get("/cache-stats", response_model=schemas.CacheStatsResponse)
def read_cache_stats(
    market: MarketContextOrchestrator = Depends(get_market_context)
):
    """Cache counters and the providers currently marked degraded"""
    stats = market.get_cache_stats()
    return schemas.CacheStatsResponse(
        keys=stats["keys"],
        hits=stats["hits"],
        misses=stats["misses"],
        stale_served=stats["stale_served"],
        refresh_failures=stats["refresh_failures"],
        coalesced=stats["coalesced"],
        providers=stats["providers"],
        degraded_providers=stats["degraded_providers"],
    )


def _news_response(entry: MarketNewsEntry) -> schemas.MarketNewsResponse:
    return schemas.MarketNewsResponse(**vars(entry))


@router.post("/news/refresh", response_model=schemas.MarketNewsRefreshResponse)
async def refresh_market_news(
    force: bool = Query(False, description="Also replace manual edits"),
    news: MarketNewsService = Depends(get_market_news)
):
    """Regenerate the market news summary of every tier with market context"""
    return schemas.MarketNewsRefreshResponse(refreshed=await news.refresh_all(force=force))


@router.get("/news/{tier}", response_model=schemas.MarketNewsResponse)
def read_market_news(
    tier: schemas.UserTier,
    news: MarketNewsService = Depends(get_market_news)
):
    """Active market news summary for a tier"""
    entry = news.get_active(tier)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No market news for tier {tier.value}")
    return _news_response(entry)


@router.put("/news/{tier}", response_model=schemas.MarketNewsResponse)
def update_market_news(
    tier: schemas.UserTier,
    body: schemas.MarketNewsUpdateRequest,
    news: MarketNewsService = Depends(get_market_news)
):
    """Pin a manually written summary until the next forced refresh"""
    try:
        entry = news.update_manual(tier, body.context_text, body.edited_by)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _news_response(entry)


@router.get("/news/{tier}/history", response_model=List[schemas.MarketNewsResponse])
def read_market_news_history(
    tier: schemas.UserTier,
    limit: int = Query(HISTORY_LIMIT, ge=1, le=200),
    news: MarketNewsService = Depends(get_market_news)
):
    """Earlier summaries for a tier, newest first"""
    return [_news_response(entry) for entry in news.get_history(tier, limit)]
