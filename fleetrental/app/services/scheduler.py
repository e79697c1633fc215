"""
Deactivation Scheduler.

Durable, time-keyed jobs backed by the ``scheduled_jobs`` table plus a
periodic recovery sweep.

In-process ``asyncio`` timers give precise firing while the process lives.
They are only a cache of the job table: ``start()`` re-arms every PENDING
job after a restart, and the sweep runs anything that came due while no
timer was armed. Callbacks are registered by name so a job row can be
executed by any process.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleetrental.app.core.redis_client import acquire_sweep_lease
from fleetrental.app.models.scheduled_job import ScheduledJob, JobStatus

logger = logging.getLogger("fleetrental.scheduler")

JobHandler = Callable[[AsyncSession, Dict[str, Any], datetime], Awaitable[Any]]
SweepStep = Callable[[AsyncSession, datetime], Awaitable[int]]

# A failing job is retried by the sweep this many times before it is parked
MAX_JOB_ATTEMPTS = 3


class DeactivationScheduler:
    """
    Injected scheduler service with a ``schedule`` / ``cancel`` interface.

    Args:
        session_factory: Factory for the sessions used by fired jobs and sweeps
        sweep_interval_seconds: Pause between recovery sweeps
        redis: Optional Redis client used for the cross-process sweep lease
        lease_ttl_seconds: How long one sweep holds the lease
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        sweep_interval_seconds: int = 3600,
        redis=None,
        lease_ttl_seconds: int = 300
    ):
        self.session_factory = session_factory
        self.sweep_interval_seconds = sweep_interval_seconds
        self.redis = redis
        self.lease_ttl_seconds = lease_ttl_seconds
        self._handlers: Dict[str, JobHandler] = {}
        self._sweep_steps: List[Tuple[str, SweepStep]] = []
        self._timers: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def armed_keys(self) -> List[str]:
        return sorted(self._timers)

    def register(self, name: str, handler: JobHandler) -> None:
        """Bind a callback name to the coroutine that executes it."""
        self._handlers[name] = handler

    def add_sweep_step(self, name: str, step: SweepStep) -> None:
        """Add a reconciliation step to every recovery sweep."""
        self._sweep_steps.append((name, step))

    async def schedule(
        self,
        db: AsyncSession,
        key: str,
        fire_at: datetime,
        callback: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> ScheduledJob:
        """
        Persist a job and arm its timer.

        The row is written in the caller's transaction; if that transaction
        rolls back, the armed timer finds no PENDING row and does nothing.
        Scheduling an existing key replaces its fire time and payload.
        """
        if callback not in self._handlers:
            raise ValueError(f"No handler registered for callback '{callback}'")

        result = await db.execute(select(ScheduledJob).where(ScheduledJob.key == key))
        job = result.scalar_one_or_none()
        if job is None:
            job = ScheduledJob(key=key)
            db.add(job)

        job.callback = callback
        job.payload = payload or {}
        job.fire_at = fire_at
        job.status = JobStatus.PENDING
        job.attempts = 0
        job.last_error = None
        job.fired_at = None
        await db.flush()

        self._arm(key, fire_at)
        logger.info("Scheduled %s at %s", key, fire_at.isoformat())
        return job

    async def cancel(self, db: AsyncSession, key: str) -> bool:
        """
        Cancel a PENDING job in the caller's transaction and drop its timer.

        Returns:
            True if a pending job was cancelled
        """
        result = await db.execute(
            update(ScheduledJob)
            .where(ScheduledJob.key == key, ScheduledJob.status == JobStatus.PENDING)
            .values(status=JobStatus.CANCELLED)
            .execution_options(synchronize_session=False)
        )
        task = self._timers.pop(key, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        return result.rowcount == 1

    def _arm(self, key: str, fire_at: datetime) -> None:
        if not self._running:
            return
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._timers[key] = asyncio.create_task(self._fire_later(key, fire_at))

    async def _fire_later(self, key: str, fire_at: datetime) -> None:
        try:
            delay = (fire_at - datetime.utcnow()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.run_job(key)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer for %s failed, the recovery sweep will retry it", key)
        finally:
            if self._timers.get(key) is asyncio.current_task():
                self._timers.pop(key, None)

    async def run_job(self, key: str, now: Optional[datetime] = None) -> bool:
        """
        Claim and execute one job.

        The claim is a conditional PENDING -> RUNNING update, so a timer and
        a sweep racing for the same job execute it once.

        Returns:
            True if this call executed the job successfully
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            claim = await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.key == key, ScheduledJob.status == JobStatus.PENDING)
                .values(
                    status=JobStatus.RUNNING,
                    attempts=ScheduledJob.attempts + 1,
                    fired_at=now
                )
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount != 1:
                await db.rollback()
                return False
            await db.commit()

            job = (await db.execute(
                select(ScheduledJob)
                .where(ScheduledJob.key == key)
                .execution_options(populate_existing=True)
            )).scalar_one()
            # Rollback expires the job row, so keep plain values
            attempts = job.attempts
            callback = job.callback
            payload = dict(job.payload or {})
            handler = self._handlers.get(callback)

            try:
                if handler is None:
                    raise LookupError(f"No handler registered for callback '{callback}'")
                await handler(db, payload, now)
            except Exception as exc:
                await db.rollback()
                next_status = JobStatus.PENDING if attempts < MAX_JOB_ATTEMPTS else JobStatus.FAILED
                logger.error(
                    "Job %s failed on attempt %s (%s): %s",
                    key, attempts, next_status.value, exc
                )
                await db.execute(
                    update(ScheduledJob)
                    .where(ScheduledJob.key == key, ScheduledJob.status == JobStatus.RUNNING)
                    .values(status=next_status, last_error=str(exc))
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
                return False

            await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.key == key, ScheduledJob.status == JobStatus.RUNNING)
                .values(status=JobStatus.DONE)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            logger.info("Job %s completed", key)
            return True

    async def run_due_jobs(self, now: Optional[datetime] = None) -> int:
        """Run every PENDING job whose fire time has passed."""
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScheduledJob.key).where(
                    ScheduledJob.status == JobStatus.PENDING,
                    ScheduledJob.fire_at <= now
                ).order_by(ScheduledJob.fire_at)
            )
            keys = result.scalars().all()

        executed = 0
        for key in keys:
            if await self.run_job(key, now):
                executed += 1
        return executed

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Recovery sweep: run due jobs, then every registered reconciliation step.

        Returns:
            Per-step counts, or ``{"skipped": True}`` when another process
            holds the sweep lease
        """
        now = now or datetime.utcnow()
        if not await acquire_sweep_lease(self.redis, self.lease_ttl_seconds):
            logger.info("Recovery sweep skipped, lease held by another worker")
            return {"skipped": True}

        results: Dict[str, Any] = {"jobs_run": await self.run_due_jobs(now)}
        for name, step in self._sweep_steps:
            async with self.session_factory() as db:
                results[name] = await step(db, now)

        logger.info("Recovery sweep finished: %s", results)
        return results

    async def start(self) -> None:
        """
        Recover after a restart, re-arm persisted jobs and start the
        periodic sweep.

        The first sweep runs before any timer is armed, so work that came
        due while the process was down is done once, here.
        """
        if self._running:
            return

        async with self.session_factory() as db:
            # Jobs left RUNNING by a crashed process are claimable again
            await db.execute(
                update(ScheduledJob)
                .where(ScheduledJob.status == JobStatus.RUNNING)
                .values(status=JobStatus.PENDING)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        try:
            await self.sweep()
        except Exception:
            logger.exception("Startup recovery sweep failed")

        self._running = True
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScheduledJob.key, ScheduledJob.fire_at)
                .where(ScheduledJob.status == JobStatus.PENDING)
            )
            pending = result.all()

        for key, fire_at in pending:
            self._arm(key, fire_at)

        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info("Scheduler started, %d pending jobs re-armed", len(pending))

    async def stop(self) -> None:
        """Cancel every timer and the sweep loop. Job rows stay PENDING."""
        self._running = False
        tasks = list(self._timers.values())
        if self._sweep_task is not None:
            tasks.append(self._sweep_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._timers.clear()
        self._sweep_task = None
        logger.info("Scheduler stopped")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Recovery sweep failed")
