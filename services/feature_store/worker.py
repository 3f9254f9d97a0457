"""Background worker running the feature store's scheduled tasks."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

import structlog
from croniter import croniter
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from libs.config import get_database_settings
from libs.observability import configure_structured_logging, get_observability_config
from libs.persistence import DatabaseManager

from .config import FeatureStoreSettings, get_feature_store_settings
from .core import FeatureStoreService
from .models import ScheduledJobRun, utcnow

logger = structlog.get_logger(__name__)

Job = Callable[[datetime], Awaitable[Any]]

NIGHTLY_JOB = "nightly"


class FeatureStoreWorker:
    """Independent asyncio loops over the shared durable stores.

    Each loop runs one job on its own interval; a failing job is logged
    and retried on the next interval without affecting the others.
    """

    def __init__(
        self,
        service: FeatureStoreService,
        settings: FeatureStoreSettings | None = None,
    ) -> None:
        self.service = service
        self.settings = settings or service.settings
        self.running = False
        self.tasks: dict[str, asyncio.Task] = {}
        self.last_nightly: datetime | None = None

        self.jobs: dict[str, tuple[float, Job]] = {
            "batch": (self.settings.batch_check_interval_seconds, self.run_batch),
            "streaming": (self.settings.streaming_tick_seconds, self.run_streaming),
            "online_sync": (
                self.settings.online_sync_check_interval_seconds,
                self.run_online_sync,
            ),
            "reaper": (self.settings.reaper_interval_seconds, self.run_reaper),
            # Checked every minute; runs once per cron firing
            "nightly": (60.0, self.run_nightly_if_due),
        }

    async def run_batch(self, now: datetime) -> Any:
        return await self.service.batch.run_due(now)

    async def run_streaming(self, now: datetime) -> Any:
        return await self.service.streaming.tick(now)

    async def run_online_sync(self, now: datetime) -> Any:
        return await self.service.online_sync.sync_due(now)

    async def run_reaper(self, now: datetime) -> Any:
        return await self.service.locks.reap_expired(now)

    def nightly_fire_time(self, now: datetime) -> datetime:
        """Most recent scheduled nightly firing at or before ``now``."""
        # croniter excludes an exact match from get_prev
        return croniter(
            self.settings.nightly_cron, now + timedelta(seconds=1)
        ).get_prev(datetime)

    async def run_nightly_if_due(self, now: datetime) -> bool:
        """Statistics for yesterday, then drift, quality and freshness.

        Each firing is claimed in the database before it runs, so a restarted
        or second worker never repeats it. A failed run releases its claim
        and is retried on the next check.
        """
        fired_at = self.nightly_fire_time(now)
        if fired_at == self.last_nightly:
            return False
        if not await self._claim(NIGHTLY_JOB, fired_at):
            self.last_nightly = fired_at
            return False

        today = fired_at.date()
        try:
            statistics = await self.service.statistics.run_nightly(today)
            alerts = await self.service.monitor.run_nightly(today)
            stale = await self.service.monitor.check_freshness(now)
        except Exception:
            await self._release(NIGHTLY_JOB, fired_at)
            raise

        await self._complete(NIGHTLY_JOB, fired_at, now)
        self.last_nightly = fired_at
        logger.info(
            "Nightly jobs completed",
            date=today.isoformat(),
            scheduled_for=fired_at.isoformat(),
            statistics=len(statistics),
            alerts=len(alerts) + len(stale),
        )
        return True

    async def _claim(self, job_name: str, scheduled_for: datetime) -> bool:
        try:
            async with self.service.db_manager.get_session() as session:
                session.add(
                    ScheduledJobRun(job_name=job_name, scheduled_for=scheduled_for)
                )
        except IntegrityError:
            logger.debug(
                "Scheduled job already claimed",
                job=job_name,
                scheduled_for=scheduled_for.isoformat(),
            )
            return False
        return True

    async def _release(self, job_name: str, scheduled_for: datetime) -> None:
        async with self.service.db_manager.get_session() as session:
            await session.execute(
                delete(ScheduledJobRun).where(
                    ScheduledJobRun.job_name == job_name,
                    ScheduledJobRun.scheduled_for == scheduled_for,
                )
            )

    async def _complete(
        self, job_name: str, scheduled_for: datetime, now: datetime
    ) -> None:
        async with self.service.db_manager.get_session() as session:
            await session.execute(
                update(ScheduledJobRun)
                .where(
                    ScheduledJobRun.job_name == job_name,
                    ScheduledJobRun.scheduled_for == scheduled_for,
                )
                .values(completed_at=now)
            )

    async def run_once(self, now: datetime | None = None) -> dict[str, Any]:
        """Run every job a single time, in declaration order."""
        now = now or utcnow()
        return {name: await job(now) for name, (_, job) in self.jobs.items()}

    async def start(self) -> None:
        if self.running:
            return

        self.running = True
        for name, (interval, job) in self.jobs.items():
            self.tasks[name] = asyncio.create_task(
                self._loop(name, interval, job), name=f"feature-store-{name}"
            )
        logger.info("Feature store worker started", jobs=list(self.jobs))

    async def stop(self) -> None:
        self.running = False
        for task in self.tasks.values():
            task.cancel()
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()
        logger.info("Feature store worker stopped")

    async def _loop(self, name: str, interval: float, job: Job) -> None:
        while self.running:
            try:
                await job(utcnow())
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker job failed", job=name)
            await asyncio.sleep(interval)


async def run_worker() -> None:
    """Run the worker until cancelled."""
    configure_structured_logging(get_observability_config().logging)

    db_settings = get_database_settings()
    settings = get_feature_store_settings()
    db_manager = DatabaseManager(db_settings.url, echo=db_settings.echo)
    source_db = (
        DatabaseManager(settings.source_database_url)
        if settings.source_database_url
        else None
    )

    service = FeatureStoreService(db_manager, source_db=source_db, settings=settings)
    worker = FeatureStoreWorker(service)
    await worker.start()
    try:
        await asyncio.gather(*worker.tasks.values())
    finally:
        await worker.stop()
        await service.close()
        await db_manager.close()


if __name__ == "__main__":
    asyncio.run(run_worker())
