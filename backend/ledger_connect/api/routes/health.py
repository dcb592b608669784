from fastapi import APIRouter, Depends

from ledger_connect.api.dependencies import get_container
from ledger_connect.api.schemas import HealthResponse
from ledger_connect.container import ServiceContainer
from ledger_connect.services.replay_cache import RedisReplayCache

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health(container: ServiceContainer = Depends(get_container)):
    """Liveness probe. A Redis outage reports degraded; webhooks still flow."""
    cache = container.replay_cache
    if isinstance(cache, RedisReplayCache):
        replay_cache = "ok" if await cache.ping() else "unavailable"
    elif cache is None:
        replay_cache = "disabled"
    else:
        replay_cache = "memory"

    return HealthResponse(
        status="ok" if replay_cache != "unavailable" else "degraded",
        replay_cache=replay_cache,
    )
