"""Allocation maintenance tasks.

Effects that failed after an allocation transition stay in the outbox as
``failed``; these tasks re-run them and fill in sessions that were never
generated (usually because the student had no home location yet).
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from src.core.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Run async function in sync context."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


async def with_service(action: Callable[[Any], Awaitable[dict]]) -> dict:
    """Run ``action(service)`` on a task-local engine and dispose of it afterwards."""
    from src.config.database import create_engine_for, session_factory
    from src.config.settings import settings
    from src.core.redis import close_redis
    from src.domains.allocations.service import AllocationService

    engine = create_engine_for(settings.DATABASE_URL, pooled=False)
    try:
        async with session_factory(engine)() as db:
            return await action(AllocationService(db))
    finally:
        await close_redis()
        await engine.dispose()


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def retry_failed_effects(self, limit: int = 100):
    """Re-run failed allocation effects that still have attempts left."""
    logger.info("Starting failed effect retry (limit=%d)", limit)
    result = run_async(with_service(lambda service: service.retry_failed_effects(limit)))
    logger.info(
        "Effect retry complete: %d retried, %d succeeded, %d failed",
        result["retried"], result["succeeded"], result["failed"],
    )
    return result


@celery_app.task(bind=True, max_retries=3, default_retry_delay=300)
def backfill_missing_sessions(self):
    """Generate sessions for approved/active allocations that have none."""
    logger.info("Starting session backfill")
    result = run_async(with_service(lambda service: service.create_sessions_for_pending_allocations()))
    logger.info(
        "Session backfill complete: %d processed, %d successful, %d failed",
        result["processed"], result["successful"], result["failed"],
    )
    return result
