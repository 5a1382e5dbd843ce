"""
Import worker.

Pulls due import jobs from the database and runs one stage per claim.
The job table is the queue: a job is claimed with a conditional UPDATE on
its lease columns, so any number of workers (in one process or many) can
run side by side.

Run standalone with:
    python -m timetiles.worker
"""

from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid as uuid_lib
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from timetiles.core.config import Settings, get_settings
from timetiles.database import async_session_factory
from timetiles.models.import_job import ImportJob
from timetiles.services.import_job_service import ImportJobService
from timetiles.services.pipeline_service import GeocoderFactory, ImportPipeline
from timetiles.services.scheduler_service import SchedulerRunner

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid_lib.uuid4().hex[:6]}"


class ImportWorker:
    """
    Claims due jobs and runs their current stage.

    Each concurrent slot uses its own session; sessions are never shared
    between tasks.
    """

    def __init__(
        self,
        session_factory: SessionFactory = async_session_factory,
        settings: Settings | None = None,
        worker_id: str | None = None,
        geocoder_factory: GeocoderFactory | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.worker_id = worker_id or default_worker_id()
        self.geocoder_factory = geocoder_factory
        self._running = False
        self._stages_run = 0
        self._stages_failed = 0

    async def run_once(self, slot: int = 0) -> bool:
        """
        Claim one due job and run its current stage.

        Returns False when nothing was due.
        """
        async with self.session_factory() as db:
            jobs = ImportJobService(db, self.settings.imports)
            job = await jobs.claim_next(f"{self.worker_id}/{slot}")
            if job is None:
                return False

            # A rollback inside the stage expires the instance; never read it for logging
            job_id, stage = job.id, job.stage
            pipeline = ImportPipeline(db, self.settings, self.geocoder_factory)
            try:
                await pipeline.run_stage(job)
                self._stages_run += 1
            except Exception as e:
                # Unclassified errors are retried like transient ones
                self._stages_failed += 1
                logger.exception(f"Import job {job_id} crashed in {stage}: {e}")
                await db.rollback()
                job = await db.get(ImportJob, job_id, populate_existing=True)
                if job is None:
                    return True
                if not job.is_terminal:
                    await jobs.record_transient_failure(job, f"Unexpected error: {e}")
            finally:
                if job is not None:
                    await jobs.release_claim(job)
            return True

    async def drain(self, max_stages: int = 10_000) -> int:
        """Run stages until nothing is due. Returns the number of stages run."""
        count = 0
        while count < max_stages and await self.run_once():
            count += 1
        return count

    async def _slot_loop(self, slot: int) -> None:
        while self._running:
            worked = await self.run_once(slot)
            if not worked:
                await asyncio.sleep(self.settings.worker.poll_interval_seconds)

    async def run(self) -> None:
        """Main loop: `worker.concurrency` slots until stop() is called."""
        self._running = True
        concurrency = self.settings.worker.concurrency
        logger.info(f"Import worker {self.worker_id} started with {concurrency} slot(s)")
        try:
            await asyncio.gather(*(self._slot_loop(slot) for slot in range(concurrency)))
        finally:
            logger.info(
                f"Import worker {self.worker_id} stopped. "
                f"Stages run: {self._stages_run}, crashed: {self._stages_failed}"
            )

    def stop(self) -> None:
        self._running = False


async def main() -> None:
    logging.basicConfig(level=logging.INFO)
    worker = ImportWorker()
    scheduler = SchedulerRunner()
    await asyncio.gather(worker.run(), scheduler.run())


if __name__ == "__main__":
    asyncio.run(main())
