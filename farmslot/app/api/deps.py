from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from farmslot.app.core.database import async_session
from farmslot.app.services.cache import CacheService


# One session per request; routes commit or roll back explicitly
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


# For work that needs its own transactions (expiry sweeps ahead of reads)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


async def get_cache() -> AsyncGenerator[CacheService, None]:
    redis = await CacheService.get_redis()
    yield CacheService(redis)
