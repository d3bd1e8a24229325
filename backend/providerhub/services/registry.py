import asyncio
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Coroutine, Dict, List, Optional, Sequence

from providerhub.config import settings
from providerhub.models.batch import BatchUpdateResult, ImportRecord
from providerhub.models.entities import Platform
from providerhub.services.backend_client import BackendClient
from providerhub.services.batch import BatchOrchestrator, ImportOrchestrator, UpdateOrchestrator
from providerhub.services.key_fetcher import MultiKeyModelFetcher
from providerhub.utils.time import utcnow

logger = logging.getLogger(__name__)


@dataclass
class BatchJob:
    id: str
    orchestrator: BatchOrchestrator
    created_at: datetime = field(default_factory=utcnow)
    task: Optional[asyncio.Task] = None

    @property
    def kind(self) -> str:
        return self.orchestrator.kind

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def finished(self) -> bool:
        return self.task is not None and self.task.done()


class BatchJobRegistry:
    """Keeps batch jobs in memory and runs them as background tasks"""

    # Maximum time to wait for cancelled jobs during cleanup (seconds)
    CLEANUP_TIMEOUT = 10.0

    def __init__(
        self,
        backend: BackendClient,
        fetcher: MultiKeyModelFetcher,
        max_finished_jobs: Optional[int] = None,
    ):
        self._backend = backend
        self._fetcher = fetcher
        self._jobs: Dict[str, BatchJob] = {}
        self.max_finished_jobs = settings.max_finished_jobs if max_finished_jobs is None else max_finished_jobs

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs beyond max_finished_jobs."""
        finished = [job_id for job_id, job in self._jobs.items() if job.finished]
        excess = len(finished) - self.max_finished_jobs
        for job_id in finished[:max(0, excess)]:
            del self._jobs[job_id]
            logger.debug(f"Evicted finished job {job_id}")

    def _register(self, orchestrator: BatchOrchestrator) -> BatchJob:
        self._evict_finished()
        job = BatchJob(id=secrets.token_hex(8), orchestrator=orchestrator)
        self._jobs[job.id] = job
        logger.info(f"Created {job.kind} job {job.id} with {len(orchestrator.entries)} entries")
        return job

    def create_import_job(self, records: Sequence[ImportRecord], **options) -> BatchJob:
        """Wrap parsed import records into a new job. Malformed lines stay Failed."""
        orchestrator = ImportOrchestrator(self._backend, self._fetcher, **options)
        orchestrator.entries = list(records)
        return self._register(orchestrator)

    def create_update_job(self, platforms: Sequence[Platform], **options) -> BatchJob:
        orchestrator = UpdateOrchestrator(self._backend, self._fetcher, **options)
        orchestrator.entries = [BatchUpdateResult(platform=p) for p in platforms]
        return self._register(orchestrator)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        return self._jobs.get(job_id)

    def list_jobs(self) -> List[BatchJob]:
        """Return all jobs, newest first"""
        return list(reversed(self._jobs.values()))

    def start(self, job: BatchJob, retry: bool = False) -> asyncio.Task:
        """
        Run a job (or retry its failed entries) in the background.

        Raises:
            RuntimeError: The job is already running
        """
        if job.running:
            raise RuntimeError(f"Job {job.id} is already running")
        run = job.orchestrator.retry_failed() if retry else job.orchestrator.process_all()
        job.task = asyncio.create_task(self._run(job, run))
        return job.task

    async def _run(self, job: BatchJob, run: Coroutine) -> None:
        try:
            await run
        except asyncio.CancelledError:
            logger.warning(f"Job {job.id} was cancelled")
            raise
        except Exception:
            logger.exception(f"Job {job.id} crashed")
        else:
            progress = job.orchestrator.progress
            logger.info(
                f"Job {job.id} finished: {progress.completed_entries}/{progress.total_entries} entries"
            )

    async def cleanup(self):
        """Cancel running jobs and wait (bounded) for them to stop."""
        tasks = [job.task for job in self._jobs.values() if job.running]
        for task in tasks:
            task.cancel()

        if tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*tasks, return_exceptions=True), timeout=self.CLEANUP_TIMEOUT
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Cleanup timeout: {len(tasks)} jobs still running after {self.CLEANUP_TIMEOUT}s"
                )
        self._jobs.clear()
