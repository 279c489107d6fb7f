# model/config/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("CONFIG_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import ConfigStore as _ConfigStore
else:
    from ._sql import ConfigStore as _ConfigStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sessions: Optional[async_sessionmaker[AsyncSession]] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError("ConfigStore(redis) requires r=redis.Redis")
        return _ConfigStore(r=r)
    else:
        if sessions is None:
            raise RuntimeError(
                "ConfigStore(sql) requires sessions=async_sessionmaker"
            )
        if gated is None:
            raise RuntimeError("ConfigStore(sql) requires gated=Gated")
        return _ConfigStore(sessions=sessions, gated=gated)


ConfigStore = _ConfigStore
__all__ = ["ConfigStore", "new_store", "BACKEND"]
