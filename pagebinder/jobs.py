"""
Job control: initialize a job, receive its pages in chunks, start processing.

All job state lives in a ``JobStore`` owned by a ``JobCoordinator``. Every
operation checks that the caller owns the job; a rejected call leaves the job
untouched.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .config import Settings, SettingsStore
from .models import Page
from .orchestrator import ConversionPipeline, ConversionRequest, ConversionResult
from .progress import CompletionEvent, Notifier, notify_safely

logger = logging.getLogger(__name__)

# pipeline_factory(settings) -> pipeline bound to the job's credential and prompt
PipelineFactory = Callable[[Settings], ConversionPipeline]


class JobError(ValueError):
    """A job control call was rejected."""


class JobNotFoundError(JobError):
    pass


class JobOwnershipError(JobError):
    pass


class JobStatus(Enum):
    RECEIVING = "receiving"
    READY = "ready"
    PROCESSING = "processing"


@dataclass
class Job:
    """Mutable state of one conversion job."""

    id: str
    owner: str
    title: str
    author: str
    total_pages: int
    total_chunks: int
    chunks: dict[int, list[Page]] = field(default_factory=dict)
    status: JobStatus = JobStatus.RECEIVING
    created_at: float = field(default_factory=time.time)

    @property
    def received_chunks(self) -> int:
        return len(self.chunks)

    @property
    def pages(self) -> list[Page]:
        """All received pages, ordered by chunk index."""
        return [page for index in sorted(self.chunks) for page in self.chunks[index]]


@dataclass(frozen=True)
class ChunkReceipt:
    job_id: str
    chunk_index: int
    received_chunks: int
    total_chunks: int
    ready: bool
    duplicate: bool = False


class JobStore:
    """Keyed job lookup with ownership checks."""

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def add(self, job: Job) -> None:
        self._jobs[job.id] = job

    def get(self, job_id: str, owner: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        if job.owner != owner:
            raise JobOwnershipError(f"Job {job_id} belongs to a different client")
        return job

    def discard(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)


class JobCoordinator:
    """Owns the job store and runs each started job as its own task."""

    def __init__(
        self,
        settings_store: SettingsStore,
        pipeline_factory: PipelineFactory,
        notifier: Notifier | None = None,
        store: JobStore | None = None,
    ) -> None:
        self.settings_store = settings_store
        self.pipeline_factory = pipeline_factory
        self.notifier = notifier
        self.store = store or JobStore()
        self._tasks: dict[str, asyncio.Task] = {}

    def init_job(
        self,
        owner: str,
        title: str,
        author: str | None,
        total_pages: int,
        total_chunks: int,
    ) -> str:
        """Register a new job and return its id."""
        if not title or not title.strip():
            raise JobError("Book title cannot be empty")
        if total_pages < 1:
            raise JobError(f"total_pages must be >= 1, got {total_pages}")
        if total_chunks < 1:
            raise JobError(f"total_chunks must be >= 1, got {total_chunks}")
        if total_chunks > total_pages:
            raise JobError(f"total_chunks ({total_chunks}) cannot exceed total_pages ({total_pages})")

        job = Job(
            id=str(uuid.uuid4()),
            owner=owner,
            title=title.strip(),
            author=(author or "").strip(),
            total_pages=total_pages,
            total_chunks=total_chunks,
        )
        self.store.add(job)
        logger.info(
            f"Initialized job {job.id} for '{job.title}' with {total_pages} pages in {total_chunks} chunks"
        )
        return job.id

    def submit_chunk(self, owner: str, job_id: str, chunk_index: int, pages: list[Page]) -> ChunkReceipt:
        """Accept one chunk of pages.

        Chunks must arrive in order; re-sending an already received chunk is
        acknowledged without changing the job.

        Raises:
            JobError: Unknown job, wrong owner, job no longer receiving,
                index out of range or ahead of sequence, page indices that do
                not continue the pages already received
        """
        job = self.store.get(job_id, owner)

        if job.status is not JobStatus.RECEIVING:
            raise JobError(f"Job {job_id} is not accepting chunks (status: {job.status.value})")
        if chunk_index in job.chunks:
            logger.debug(f"Job {job_id}: chunk {chunk_index} already received")
            return self._receipt(job, chunk_index, duplicate=True)
        if not 0 <= chunk_index < job.total_chunks:
            raise JobError(f"Chunk index {chunk_index} out of range for {job.total_chunks} chunks")
        if chunk_index != job.received_chunks:
            raise JobError(f"Chunk {chunk_index} arrived out of order, expected chunk {job.received_chunks}")
        if not pages:
            raise JobError(f"Chunk {chunk_index} contains no pages")

        first = job.pages[-1].index + 1 if job.chunks else 1
        indices = [page.index for page in pages]
        if indices != list(range(first, first + len(pages))):
            raise JobError(
                f"Chunk {chunk_index} page indices {indices} do not continue from page {first} in ascending order"
            )

        job.chunks[chunk_index] = list(pages)
        logger.info(
            f"Job {job_id}: received chunk {chunk_index + 1}/{job.total_chunks} "
            f"({len(pages)} pages, {len(job.pages)} total)"
        )

        if job.received_chunks == job.total_chunks:
            if len(job.pages) != job.total_pages:
                logger.warning(
                    f"Job {job_id}: page count mismatch, expected {job.total_pages}, got {len(job.pages)}"
                )
            job.status = JobStatus.READY
            logger.info(f"Job {job_id}: all chunks received, ready for processing")

        return self._receipt(job, chunk_index)

    def _receipt(self, job: Job, chunk_index: int, duplicate: bool = False) -> ChunkReceipt:
        return ChunkReceipt(
            job_id=job.id,
            chunk_index=chunk_index,
            received_chunks=job.received_chunks,
            total_chunks=job.total_chunks,
            ready=job.status is JobStatus.READY,
            duplicate=duplicate,
        )

    def start(self, owner: str, job_id: str) -> asyncio.Task:
        """Start processing a ready job in the background and return immediately.

        Must be called from a running event loop. Progress and completion are
        reported through the notifier, not through the return value.

        Raises:
            JobError: Unknown job, wrong owner, job not ready or no credential configured
        """
        job = self.store.get(job_id, owner)
        if job.status is not JobStatus.READY:
            raise JobError(f"Job {job_id} is not ready for processing (status: {job.status.value})")

        settings = self.settings_store.load()
        if not settings.has_credential:
            raise JobError("An API key is required; configure one in settings")

        pipeline = self.pipeline_factory(settings)
        job.status = JobStatus.PROCESSING
        logger.info(f"Starting job {job_id} with {len(job.pages)} pages")

        task = asyncio.create_task(self._run(job, pipeline), name=f"job-{job_id}")
        self._tasks[job_id] = task
        return task

    async def _run(self, job: Job, pipeline: ConversionPipeline) -> ConversionResult | None:
        request = ConversionRequest(
            job_id=job.id,
            owner=job.owner,
            title=job.title,
            author=job.author,
            pages=job.pages,
        )
        try:
            result = await pipeline.run(request)
            logger.info(f"Job {job.id} finished: {result.message}")
            return result
        except Exception as e:
            logger.exception(f"Job {job.id} failed")
            notify_safely(self.notifier, job.owner, CompletionEvent(
                job_id=job.id, success=False, error=str(e),
            ))
            return None
        finally:
            await pipeline.aclose()
            self.store.discard(job.id)
            self._tasks.pop(job.id, None)

    def active_jobs(self) -> list[str]:
        return list(self._tasks)

    async def wait_all(self) -> None:
        """Wait for all running jobs (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
