"""Tests for jobs module."""

import asyncio

import pytest
from pagebinder.config import API_KEY_ENV, PipelineConfig, Settings, SettingsStore
from pagebinder.jobs import (
    JobCoordinator,
    JobError,
    JobNotFoundError,
    JobOwnershipError,
    JobStatus,
)
from pagebinder.models import Page
from pagebinder.orchestrator import ConversionPipeline
from pagebinder.progress import CompletionEvent, EventHub


def pages(*indices):
    return [Page(index=i, image_data=b"img", mime_type="image/png") for i in indices]


async def no_sleep(seconds):
    pass


class FakeFactory:
    """Builds pipelines with scripted extraction and in-memory delivery."""

    def __init__(self, notifier, fail_extraction=False):
        self.notifier = notifier
        self.fail_extraction = fail_extraction
        self.settings = []
        self.delivered = []
        self.closed = 0

    def __call__(self, settings):
        self.settings.append(settings)

        async def extract(page, prompt, temperature):
            if self.fail_extraction:
                raise RuntimeError("service down")
            return f"Text of page {page.index}."

        async def deliver(filename, data):
            self.delivered.append(filename)
            return filename

        async def cleanup():
            self.closed += 1

        return ConversionPipeline(
            PipelineConfig(), settings, extract, deliver,
            notifier=self.notifier, sleep=no_sleep, cleanup=cleanup,
        )


@pytest.fixture
def settings_store(tmp_path, monkeypatch):
    monkeypatch.delenv(API_KEY_ENV, raising=False)
    store = SettingsStore(tmp_path / "settings.json")
    store.save(Settings(api_key="key"))
    return store


@pytest.fixture
def hub():
    hub = EventHub()
    hub.open("alice")
    return hub


@pytest.fixture
def factory(hub):
    return FakeFactory(hub)


@pytest.fixture
def coordinator(settings_store, factory, hub):
    return JobCoordinator(settings_store=settings_store, pipeline_factory=factory, notifier=hub)


def ready_job(coordinator, owner="alice"):
    job_id = coordinator.init_job(owner, "Book", "Ann", total_pages=3, total_chunks=2)
    coordinator.submit_chunk(owner, job_id, 0, pages(1, 2))
    coordinator.submit_chunk(owner, job_id, 1, pages(3))
    return job_id


class TestInitJob:
    """Tests for job initialization."""

    def test_returns_unique_ids(self, coordinator):
        """Each job gets its own id."""
        first = coordinator.init_job("alice", "Book", None, 2, 1)
        second = coordinator.init_job("alice", "Book", None, 2, 1)
        assert first != second
        assert len(coordinator.store) == 2

    @pytest.mark.parametrize("title,total_pages,total_chunks", [
        ("", 3, 1),
        ("   ", 3, 1),
        ("Book", 0, 1),
        ("Book", 3, 0),
        ("Book", 2, 3),
    ])
    def test_rejects_invalid(self, coordinator, title, total_pages, total_chunks):
        """Blank titles and impossible counts are rejected."""
        with pytest.raises(JobError):
            coordinator.init_job("alice", title, None, total_pages, total_chunks)
        assert len(coordinator.store) == 0


class TestSubmitChunk:
    """Tests for chunked page upload."""

    def test_ready_after_last_chunk(self, coordinator):
        """The job becomes ready once every chunk has arrived."""
        job_id = coordinator.init_job("alice", "Book", None, 3, 2)

        receipt = coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))
        assert (receipt.received_chunks, receipt.ready) == (1, False)

        receipt = coordinator.submit_chunk("alice", job_id, 1, pages(3))
        assert (receipt.received_chunks, receipt.ready) == (2, True)

        job = coordinator.store.get(job_id, "alice")
        assert job.status is JobStatus.READY
        assert [p.index for p in job.pages] == [1, 2, 3]

    def test_unknown_job(self, coordinator):
        """Chunks for unknown jobs are rejected."""
        with pytest.raises(JobNotFoundError):
            coordinator.submit_chunk("alice", "missing", 0, pages(1))

    def test_wrong_owner(self, coordinator):
        """Another client cannot add pages."""
        job_id = coordinator.init_job("alice", "Book", None, 1, 1)
        with pytest.raises(JobOwnershipError):
            coordinator.submit_chunk("mallory", job_id, 0, pages(1))
        assert coordinator.store.get(job_id, "alice").received_chunks == 0

    def test_out_of_order(self, coordinator):
        """Chunks must arrive in sequence."""
        job_id = coordinator.init_job("alice", "Book", None, 4, 2)
        with pytest.raises(JobError, match="out of order"):
            coordinator.submit_chunk("alice", job_id, 1, pages(3, 4))

    def test_out_of_range(self, coordinator):
        """Chunk indices beyond the declared count are rejected."""
        job_id = coordinator.init_job("alice", "Book", None, 4, 2)
        with pytest.raises(JobError, match="out of range"):
            coordinator.submit_chunk("alice", job_id, 2, pages(1))
        with pytest.raises(JobError, match="out of range"):
            coordinator.submit_chunk("alice", job_id, -1, pages(1))

    def test_empty_chunk(self, coordinator):
        """A chunk must carry pages."""
        job_id = coordinator.init_job("alice", "Book", None, 2, 1)
        with pytest.raises(JobError):
            coordinator.submit_chunk("alice", job_id, 0, [])

    def test_repeated_page_index_across_chunks(self, coordinator):
        """A page index already received in an earlier chunk is rejected."""
        job_id = coordinator.init_job("alice", "Book", None, 2, 2)
        coordinator.submit_chunk("alice", job_id, 0, pages(1))

        with pytest.raises(JobError, match="do not continue from page 2"):
            coordinator.submit_chunk("alice", job_id, 1, pages(1))

        job = coordinator.store.get(job_id, "alice")
        assert job.received_chunks == 1
        assert job.status is JobStatus.RECEIVING

    @pytest.mark.parametrize("indices", [(2, 1), (1, 1), (1, 3), (2, 3)])
    def test_page_indices_out_of_sequence(self, coordinator, indices):
        """Pages must start at 1 and ascend one at a time."""
        job_id = coordinator.init_job("alice", "Book", None, 2, 1)
        with pytest.raises(JobError, match="ascending order"):
            coordinator.submit_chunk("alice", job_id, 0, pages(*indices))
        assert coordinator.store.get(job_id, "alice").received_chunks == 0

    def test_corrected_chunk_accepted_after_rejection(self, coordinator):
        """A rejected chunk can be re-sent with the right pages."""
        job_id = coordinator.init_job("alice", "Book", None, 3, 2)
        coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))
        with pytest.raises(JobError):
            coordinator.submit_chunk("alice", job_id, 1, pages(4))

        receipt = coordinator.submit_chunk("alice", job_id, 1, pages(3))
        assert receipt.ready

    def test_duplicate_is_idempotent(self, coordinator):
        """Re-sending a received chunk changes nothing."""
        job_id = coordinator.init_job("alice", "Book", None, 4, 2)
        coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))
        receipt = coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))
        assert receipt.duplicate
        assert receipt.received_chunks == 1
        assert len(coordinator.store.get(job_id, "alice").pages) == 2

    def test_rejected_after_ready(self, coordinator):
        """A ready job accepts no further chunks."""
        job_id = ready_job(coordinator)
        with pytest.raises(JobError, match="not accepting"):
            coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))

    def test_page_count_mismatch_still_ready(self, coordinator):
        """A page count differing from the declaration is tolerated."""
        job_id = coordinator.init_job("alice", "Book", None, 5, 1)
        receipt = coordinator.submit_chunk("alice", job_id, 0, pages(1, 2))
        assert receipt.ready


class TestStart:
    """Tests for starting and running jobs."""

    def test_not_ready(self, coordinator):
        """A job still receiving cannot start."""
        job_id = coordinator.init_job("alice", "Book", None, 2, 2)

        async def start():
            coordinator.start("alice", job_id)

        with pytest.raises(JobError, match="not ready"):
            asyncio.run(start())

    def test_requires_credential(self, coordinator, settings_store):
        """Without an API key the job is not started and stays ready."""
        settings_store.save(Settings(api_key=""))
        job_id = ready_job(coordinator)

        async def start():
            coordinator.start("alice", job_id)

        with pytest.raises(JobError, match="API key"):
            asyncio.run(start())
        assert coordinator.store.get(job_id, "alice").status is JobStatus.READY

    def test_wrong_owner(self, coordinator):
        """Only the owner can start a job."""
        job_id = ready_job(coordinator)

        async def start():
            coordinator.start("mallory", job_id)

        with pytest.raises(JobOwnershipError):
            asyncio.run(start())

    def test_runs_to_completion(self, coordinator, factory, hub):
        """A started job runs in the background, reports and is removed."""
        job_id = ready_job(coordinator)

        async def run():
            task = coordinator.start("alice", job_id)
            assert coordinator.store.get(job_id, "alice").status is JobStatus.PROCESSING
            assert coordinator.active_jobs() == [job_id]
            return await task

        result = asyncio.run(run())

        assert result.success
        assert factory.delivered == ["Book - Ann.epub"]
        assert factory.settings[0].api_key == "key"
        assert factory.closed == 1
        assert job_id not in coordinator.store
        assert coordinator.active_jobs() == []

        events = hub.drain("alice")
        assert len(events) == 4
        assert events[-1] == CompletionEvent(job_id=job_id, success=True, filename="Book - Ann.epub")

    def test_start_twice(self, coordinator):
        """A processing job cannot be started again."""
        job_id = ready_job(coordinator)

        async def run():
            task = coordinator.start("alice", job_id)
            with pytest.raises(JobError):
                coordinator.start("alice", job_id)
            await task

        asyncio.run(run())

    def test_failed_pages_do_not_fail_job(self, settings_store, hub):
        """Extraction failures become error sections; the job still completes."""
        factory = FakeFactory(hub, fail_extraction=True)
        coordinator = JobCoordinator(settings_store=settings_store, pipeline_factory=factory, notifier=hub)
        job_id = ready_job(coordinator)

        async def run():
            coordinator.start("alice", job_id)
            await coordinator.wait_all()

        asyncio.run(run())

        completion = hub.drain("alice")[-1]
        assert completion.success
        assert factory.closed == 1

    def test_unexpected_error_reported(self, settings_store, hub):
        """A crash inside the pipeline is reported as a failed completion."""
        class Crashing(FakeFactory):
            def __call__(self, settings):
                pipeline = super().__call__(settings)

                async def crash(request):
                    raise RuntimeError("crashed")

                pipeline.run = crash
                return pipeline

        factory = Crashing(hub)
        coordinator = JobCoordinator(settings_store=settings_store, pipeline_factory=factory, notifier=hub)
        job_id = ready_job(coordinator)

        async def run():
            return await coordinator.start("alice", job_id)

        assert asyncio.run(run()) is None
        completion = hub.drain("alice")[-1]
        assert completion == CompletionEvent(job_id=job_id, success=False, error="crashed")
        assert factory.closed == 1
        assert job_id not in coordinator.store
