import logging

from fastapi import APIRouter, Depends
from redis.exceptions import RedisError

from pairchat.realtime.presence import PresenceRegistry, get_presence_registry
from pairchat.realtime.presence_cache import get_presence_cache
from pairchat.utils.dependencies import get_current_user


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/presence", tags=["chat"])


@router.get("/{user_id}")
async def presence(user_id: str, current_user: dict = Depends(get_current_user), registry: PresenceRegistry = Depends(get_presence_registry)):
    """Online if a live session is bound here, or the Redis mirror says so."""
    online = registry.is_online(user_id)
    if not online:
        try:
            online = await get_presence_cache().is_online(user_id)
        except RedisError as exc:
            logger.warning("Presence lookup for %s failed: %s", user_id, exc)
    return {"user_id": user_id, "online": online}
