import asyncio
import logging

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from worker.celery_app import celery
from swapmarket.core.config import settings
import swapmarket.models  # noqa: F401  # ensures Models are registered
from swapmarket.wiring import build_default_services


log = logging.getLogger(__name__)


async def _close_due_auctions(batch_size: int) -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    services = build_default_services()

    try:
        async with Session() as db:
            closed = await services.auctions.close_due_auctions(db, batch_size=batch_size)
    finally:
        await services.aclose()
        await engine.dispose()

    if closed:
        log.info("closed %d due auctions", closed)
    return closed


async def _close_auction(auction_id: str) -> bool:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    services = build_default_services()

    try:
        async with Session() as db:
            return await services.auctions.close_if_due(db, auction_id)
    finally:
        await services.aclose()
        await engine.dispose()


@celery.task(name="worker.tasks.close_due_auctions")
def close_due_auctions(batch_size: int | None = None) -> int:
    return asyncio.run(_close_due_auctions(batch_size or settings.auction_sweep_batch_size))


@celery.task(name="worker.tasks.close_auction", bind=True, max_retries=5)
def close_auction(self, auction_id: str) -> bool:
    try:
        return asyncio.run(_close_auction(auction_id))
    except Exception as e:
        raise self.retry(exc=e, countdown=10)
