"""
Conversion orchestration: pages -> extraction -> reflow -> EPUB -> delivery.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from .config import PipelineConfig, Settings
from .epub_builder import Chapter, EPUBBuilder, EPUBMetadata, UNKNOWN_AUTHOR, epub_filename
from .extraction import (
    ExtractFn,
    ExtractionClient,
    Exhausted,
    SleepFn,
    extract_with_retry,
    parse_page_text,
)
from .models import ExtractedFragment, Page
from .progress import CompletionEvent, Notifier, ProgressEvent, notify_safely
from .reflow import ReflowState, Section, finish, log_sections, reduce_fragment

logger = logging.getLogger(__name__)

# deliver(filename, data) -> delivered filename
DeliverFn = Callable[[str, bytes], Awaitable[str]]


@dataclass
class ConversionRequest:
    """A book ready for conversion."""

    job_id: str
    title: str
    pages: list[Page]
    author: str = UNKNOWN_AUTHOR
    owner: str = "local"


@dataclass
class ConversionResult:
    """Result of running a conversion."""

    success: bool
    message: str
    filename: str | None = None
    sections: list[Section] = field(default_factory=list)
    failed_pages: list[int] = field(default_factory=list)


class FileDelivery:
    """Delivers finished EPUBs into a directory, never overwriting existing files."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def _unique_path(self, filename: str) -> Path:
        path = self.output_dir / filename
        counter = 1
        while path.exists():
            path = self.output_dir / f"{Path(filename).stem} ({counter}){Path(filename).suffix}"
            counter += 1
        return path

    async def __call__(self, filename: str, data: bytes) -> str:
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self._unique_path(filename)
        await asyncio.to_thread(path.write_bytes, data)
        logger.info(f"EPUB saved: {path}")
        return path.name


class ConversionPipeline:
    """Runs one conversion job end-to-end, one page at a time.

    Usage:
        async with ExtractionClient(api_key, config.api_url, config.model) as client:
            pipeline = ConversionPipeline(config, settings, client.extract, deliver=FileDelivery(out))
            result = await pipeline.run(request)
    """

    def __init__(
        self,
        config: PipelineConfig,
        settings: Settings,
        extract: ExtractFn,
        deliver: DeliverFn,
        notifier: Notifier | None = None,
        sleep: SleepFn = asyncio.sleep,
        cleanup: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Pipeline configuration
            settings: User settings (extraction prompt)
            extract: Coroutine function calling the extraction service
            deliver: Coroutine function storing the finished EPUB
            notifier: Receives progress/completion events (best-effort)
            sleep: Awaitable sleep (injectable for tests)
            cleanup: Coroutine function releasing the extraction client
        """
        self.config = config
        self.settings = settings
        self.extract = extract
        self.deliver = deliver
        self.notifier = notifier
        self.sleep = sleep
        self._cleanup = cleanup

    async def aclose(self) -> None:
        if self._cleanup is not None:
            await self._cleanup()
            self._cleanup = None

    async def extract_page(self, page: Page) -> ExtractedFragment:
        """Extract one page, degrading to a failed fragment when retries run out."""
        result = await extract_with_retry(
            self.extract,
            page,
            self.settings.prompt,
            max_attempts=self.config.max_attempts,
            retry_delay=self.config.retry_delay,
            temperature_step=self.config.temperature_step,
            sleep=self.sleep,
        )
        if isinstance(result, Exhausted):
            return ExtractedFragment.failed(page, result.last_error)
        return parse_page_text(page, result.text)

    async def reflow_pages(self, request: ConversionRequest) -> tuple[list[Section], list[int]]:
        """Extract and reflow all pages strictly in order."""
        state = ReflowState.initial()
        failed_pages = []
        total = len(request.pages)

        for current, page in enumerate(request.pages, start=1):
            fragment = await self.extract_page(page)
            if fragment.extraction_failed:
                failed_pages.append(page.index)
            state = reduce_fragment(state, fragment)

            notify_safely(self.notifier, request.owner, ProgressEvent(
                job_id=request.job_id,
                current=current,
                total=total,
                page_index=page.index,
                ok=not fragment.extraction_failed,
            ))
            await self.sleep(self.config.page_delay)

        sections = finish(state)
        log_sections(sections, total)
        return sections, failed_pages

    def build_epub(self, request: ConversionRequest, sections: list[Section]) -> bytes:
        metadata = EPUBMetadata(
            title=request.title,
            author=request.author,
            language=self.config.language,
        )
        chapters = [Chapter.from_section(s) for s in sections]
        return EPUBBuilder(metadata).build(chapters)

    async def run(self, request: ConversionRequest) -> ConversionResult:
        """Run the conversion and report completion.

        Per-page extraction failures degrade to error sections. Any failure
        while building or delivering the EPUB fails the whole job; nothing
        partial is delivered.

        Returns:
            ConversionResult with status and delivered filename
        """
        logger.info(f"Converting '{request.title}' ({len(request.pages)} pages) for job {request.job_id}")

        sections, failed_pages = await self.reflow_pages(request)

        try:
            data = self.build_epub(request, sections)
            filename = await self.deliver(epub_filename(request.title, request.author), data)
        except Exception as e:
            logger.exception(f"Conversion {request.job_id} failed")
            notify_safely(self.notifier, request.owner, CompletionEvent(
                job_id=request.job_id, success=False, error=str(e),
            ))
            return ConversionResult(
                success=False,
                message=f"Conversion failed: {e}",
                sections=sections,
                failed_pages=failed_pages,
            )

        notify_safely(self.notifier, request.owner, CompletionEvent(
            job_id=request.job_id, success=True, filename=filename,
        ))
        if failed_pages:
            logger.warning(f"{len(failed_pages)} pages could not be extracted: {failed_pages}")

        return ConversionResult(
            success=True,
            message=f"Successfully converted {len(request.pages)} pages into {len(sections)} sections",
            filename=filename,
            sections=sections,
            failed_pages=failed_pages,
        )


def build_pipeline_factory(config: PipelineConfig, notifier: Notifier | None = None):
    """Factory creating a pipeline bound to a fresh extraction client per job."""

    def factory(settings: Settings) -> ConversionPipeline:
        client = ExtractionClient(
            api_key=settings.api_key,
            api_url=config.api_url,
            model=config.model,
            max_tokens=config.max_tokens,
            timeout=config.request_timeout,
        )
        return ConversionPipeline(
            config,
            settings,
            client.extract,
            deliver=FileDelivery(config.output_dir),
            notifier=notifier,
            cleanup=client.aclose,
        )

    return factory
