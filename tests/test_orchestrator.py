"""Tests for orchestrator module."""

import asyncio
import io
import zipfile

import pytest
from pagebinder.config import PipelineConfig, Settings
from pagebinder.extraction import ExtractionError
from pagebinder.models import Page
from pagebinder.orchestrator import ConversionPipeline, ConversionRequest, FileDelivery
from pagebinder.progress import CompletionEvent, ProgressEvent


class FakeSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def notify(self, owner, event):
        self.events.append((owner, event))


class RecordingDelivery:
    def __init__(self, error=None):
        self.delivered = []
        self.error = error

    async def __call__(self, filename, data):
        if self.error:
            raise self.error
        self.delivered.append((filename, data))
        return filename


def scripted_extract(texts):
    """Extraction fake: page index -> text, or an exception to raise."""
    async def extract(page, prompt, temperature):
        outcome = texts[page.index]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome
    return extract


def make_pipeline(texts, deliver=None, notifier=None, sleep=None):
    return ConversionPipeline(
        PipelineConfig(),
        Settings(api_key="key"),
        scripted_extract(texts),
        deliver=deliver or RecordingDelivery(),
        notifier=notifier,
        sleep=sleep or FakeSleep(),
    )


def make_request(count, title="Book"):
    pages = [Page(index=i, image_data=b"img", mime_type="image/png") for i in range(1, count + 1)]
    return ConversionRequest(job_id="job-1", title=title, pages=pages, owner="client-a")


class TestConversionPipeline:
    """Tests for end-to-end conversion with fake services."""

    def test_successful_conversion(self):
        """Pages are reflowed, packaged and delivered."""
        deliver = RecordingDelivery()
        pipeline = make_pipeline({1: "He said,", 2: "hello."}, deliver=deliver)

        result = asyncio.run(pipeline.run(make_request(2)))

        assert result.success
        assert result.filename == "Book - Unknown_Author.epub"
        assert result.failed_pages == []
        assert [s.accumulated_text for s in result.sections] == ["He said, hello."]

        filename, data = deliver.delivered[0]
        with zipfile.ZipFile(io.BytesIO(data)) as zf:
            assert "<p>He said, hello.</p>" in zf.read("OEBPS/section-1.xhtml").decode("utf-8")

    def test_failed_page_becomes_error_section(self):
        """A page failing every attempt yields an error section with the last error."""
        sleep = FakeSleep()
        pipeline = make_pipeline({1: ExtractionError("Rate limited")}, sleep=sleep)

        result = asyncio.run(pipeline.run(make_request(1)))

        assert result.success
        assert result.failed_pages == [1]
        assert [s.id for s in result.sections] == ["error-page-1"]
        assert "Rate limited" in result.sections[0].rendered_markup
        # two retry pauses plus the per-page pause
        assert sleep.calls == [2.0, 2.0, 1.0]
        assert sum(sleep.calls) == 5.0

    def test_error_between_pages(self):
        """A failed page in the middle leaves the surrounding sentence intact."""
        pipeline = make_pipeline({1: "He said,", 2: ExtractionError("bad"), 3: "hello."})

        result = asyncio.run(pipeline.run(make_request(3)))

        assert [s.id for s in result.sections] == ["error-page-2", "section-1"]
        assert result.sections[1].accumulated_text == "He said, hello."
        assert result.failed_pages == [2]

    def test_pause_after_every_page(self):
        """The page delay follows every page, including the last."""
        sleep = FakeSleep()
        pipeline = make_pipeline({1: "a.", 2: "b.", 3: "c."}, sleep=sleep)
        asyncio.run(pipeline.run(make_request(3)))
        assert sleep.calls == [1.0, 1.0, 1.0]

    def test_chapter_markers(self):
        """Chapter markers split the book into chapters."""
        pipeline = make_pipeline({
            1: "Front matter.",
            2: "--- NEW CHAPTER: Arrival ---\nWe came.",
            3: "--- NEW CHAPTER: Departure ---\nWe left.",
        })
        result = asyncio.run(pipeline.run(make_request(3)))
        assert [s.title for s in result.sections] == ["Section 1", "Arrival", "Departure"]

    def test_progress_and_completion_events(self):
        """One progress event per page, then a completion event."""
        notifier = RecordingNotifier()
        pipeline = make_pipeline({1: "a.", 2: ExtractionError("x"), 3: "c."}, notifier=notifier)

        asyncio.run(pipeline.run(make_request(3)))

        owners = {owner for owner, _ in notifier.events}
        events = [event for _, event in notifier.events]
        assert owners == {"client-a"}
        progress = [e for e in events if isinstance(e, ProgressEvent)]
        assert [(e.current, e.total, e.ok) for e in progress] == [(1, 3, True), (2, 3, False), (3, 3, True)]
        assert events[-1] == CompletionEvent(job_id="job-1", success=True, filename="Book - Unknown_Author.epub")

    def test_delivery_failure(self):
        """A delivery failure fails the job and is reported."""
        notifier = RecordingNotifier()
        pipeline = make_pipeline(
            {1: "Text."}, deliver=RecordingDelivery(error=OSError("disk full")), notifier=notifier,
        )

        result = asyncio.run(pipeline.run(make_request(1)))

        assert not result.success
        assert "disk full" in result.message
        assert result.filename is None
        completion = notifier.events[-1][1]
        assert completion.success is False
        assert completion.error == "disk full"

    def test_all_pages_blank(self):
        """A book with no text cannot be packaged and fails cleanly."""
        pipeline = make_pipeline({1: "", 2: "  "})
        result = asyncio.run(pipeline.run(make_request(2)))
        assert not result.success

    def test_broken_notifier_ignored(self):
        """A failing consumer never breaks the conversion."""
        class Broken:
            def notify(self, owner, event):
                raise ConnectionError("gone")

        pipeline = make_pipeline({1: "Text."}, notifier=Broken())
        assert asyncio.run(pipeline.run(make_request(1))).success

    def test_aclose_runs_cleanup_once(self):
        """Cleanup is awaited once."""
        calls = []

        async def cleanup():
            calls.append(True)

        pipeline = ConversionPipeline(
            PipelineConfig(), Settings(), scripted_extract({}), deliver=RecordingDelivery(), cleanup=cleanup,
        )

        async def close_twice():
            await pipeline.aclose()
            await pipeline.aclose()

        asyncio.run(close_twice())
        assert calls == [True]


class TestFileDelivery:
    """Tests for file delivery."""

    def test_writes_file(self, tmp_path):
        """The EPUB is written under the output directory."""
        delivery = FileDelivery(tmp_path / "out")
        name = asyncio.run(delivery("book.epub", b"data"))
        assert name == "book.epub"
        assert (tmp_path / "out" / "book.epub").read_bytes() == b"data"

    def test_never_overwrites(self, tmp_path):
        """An existing file gets a numbered sibling."""
        delivery = FileDelivery(tmp_path)
        first = asyncio.run(delivery("book.epub", b"1"))
        second = asyncio.run(delivery("book.epub", b"2"))
        assert (first, second) == ("book.epub", "book (1).epub")
        assert (tmp_path / "book.epub").read_bytes() == b"1"
