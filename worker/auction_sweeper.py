import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.sql import func

from swapmarket.core.config import settings
from swapmarket.models.auction import Auction
from worker.celery_app import celery


log = logging.getLogger(__name__)


async def _tick() -> int:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)

    async with Session() as db:
        stmt = (
            select(Auction.id)
            .where(Auction.status == "open", Auction.ends_at <= func.now())
            .order_by(Auction.ends_at.asc())
            .limit(settings.auction_sweep_batch_size)
        )
        ids = (await db.execute(stmt)).scalars().all()
        await db.commit()

    await engine.dispose()

    if ids:
        log.info("tick: enqueueing %d due auctions", len(ids))
    # a duplicate enqueue is a no-op in close_if_due
    for auction_id in ids:
        celery.send_task("worker.tasks.close_auction", args=[auction_id], queue="auctions")
    return len(ids)


async def main():
    celery.connection().ensure_connection(max_retries=3)

    logging.basicConfig(level=logging.INFO)
    log.info("auction sweeper: started")
    while True:
        try:
            await _tick()
        except Exception:
            log.exception("auction sweeper: tick crashed")
        await asyncio.sleep(settings.auction_sweep_seconds)


if __name__ == "__main__":
    asyncio.run(main())
