"""
Page text extraction through a vision-capable chat-completions service.

The service is asked to transcribe a page image into markdown and to mark
chapter starts with a reserved marker line. Calls are retried with escalating
temperature; a page that keeps failing is reported as exhausted rather than
aborting the book.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx

from .models import ExtractedFragment, Page

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_PROMPT = """You are a book preservation assistant. Your job is to look at scanned images of books and rewrite them as markdown. You will be provided with a page from a book. Your job is to convert the page into valid markdown. We don't want to lose any data, so make sure to include all the text you see in the image.

Indentations should be handled by adding a new line between paragraphs. Do not add indents. If multiple indents appear in a row, they should have gaps between them.
--- example ---
"Character A talking," he said.

"Character B talking," she said. "This is more stuff that is said"

"Well that makes sense," he replied.

Now here's more text in a big long paragraph.
--- end example ---

Important! If you notice the page has a chapter title, write the following to mark the start of a new chapter (Exclude the brackets):

--- NEW CHAPTER: [Chapter Title] ---

# Chapter Number if it exists
Chapter Title"""

CODE_FENCE = re.compile(r"^```(?:html|xhtml|xml|json|markdown)?\s*\n(.*?)\n```$", re.DOTALL)
BACKTICK_WRAP = re.compile(r"^`(.*?)`$", re.DOTALL)
LEADING_HEADING = re.compile(r"^#+\s*")
LEADING_BOLD = re.compile(r"^\*\*.*?\*\*\s*")
CHAPTER_MARKER = re.compile(r"^--- NEW CHAPTER: (.+?) ---\r?$", re.MULTILINE)

# extract(page, prompt, temperature) -> raw service text
ExtractFn = Callable[[Page, str, float], Awaitable[str]]
SleepFn = Callable[[float], Awaitable[None]]


class ExtractionError(Exception):
    """Raised when the extraction service cannot produce text for a page."""


def clean_response(raw: str) -> str:
    """Strip wrapping artifacts the model sometimes adds around its markdown.

    Args:
        raw: Raw message content from the service

    Returns:
        Cleaned markdown text
    """
    if not raw:
        return ""

    content = raw.replace("\r\n", "\n").replace("\r", "\n").strip()

    match = CODE_FENCE.match(content)
    if match:
        content = match.group(1).strip()
        logger.debug("Removed code fence wrapper from response")

    match = BACKTICK_WRAP.match(content)
    if match:
        content = match.group(1).strip()
        logger.debug("Removed backtick wrapper from response")

    content = LEADING_HEADING.sub("", content, count=1)
    content = LEADING_BOLD.sub("", content, count=1)

    return content.strip().replace("  \n", "\n\n")


def split_chapter_marker(text: str) -> tuple[str, str | None]:
    """Remove a '--- NEW CHAPTER: <title> ---' line.

    Returns:
        Tuple of (text without the marker, chapter title or None)
    """
    match = CHAPTER_MARKER.search(text)
    if not match:
        return text, None

    title = match.group(1).strip()
    remaining = (text[:match.start()] + text[match.end():]).strip()
    logger.info(f"Found new chapter: {title!r}")
    return remaining, title


def parse_page_text(page: Page, raw: str) -> ExtractedFragment:
    """Turn raw service output for a page into a fragment."""
    text, title = split_chapter_marker(clean_response(raw))
    return ExtractedFragment(
        page_index=page.index,
        raw_text=text,
        is_chapter_start=title is not None,
        chapter_title=title,
    )


@dataclass(frozen=True)
class Success:
    text: str
    attempts: int = 1


@dataclass(frozen=True)
class Exhausted:
    last_error: str
    attempts: int


AttemptResult = Success | Exhausted


async def extract_with_retry(
    extract: ExtractFn,
    page: Page,
    prompt: str,
    *,
    max_attempts: int = 3,
    retry_delay: float = 2.0,
    base_temperature: float = 0.0,
    temperature_step: float = 0.2,
    sleep: SleepFn = asyncio.sleep,
) -> AttemptResult:
    """Run extraction for one page, one attempt at a time.

    Each retry raises the sampling temperature by ``temperature_step``. The
    ``retry_delay`` pause only happens between a failed attempt and the next.

    Args:
        extract: Coroutine function calling the service
        page: Page to extract
        prompt: Instruction text sent with the image
        max_attempts: Total attempts before giving up
        retry_delay: Seconds to wait before a retry
        base_temperature: Temperature of the first attempt
        temperature_step: Temperature increase per retry
        sleep: Awaitable sleep (injectable for tests)

    Returns:
        Success with the raw text, or Exhausted with the last error message
    """
    last_error = "no attempts made"

    for attempt in range(1, max_attempts + 1):
        temperature = base_temperature + (attempt - 1) * temperature_step
        try:
            text = await extract(page, prompt, temperature)
            logger.debug(f"Page {page.index}: extracted on attempt {attempt}")
            return Success(text=text, attempts=attempt)
        except Exception as e:
            last_error = str(e) or e.__class__.__name__
            if attempt < max_attempts:
                logger.warning(
                    f"Page {page.index}: attempt {attempt}/{max_attempts} failed: {last_error}, retrying..."
                )
                await sleep(retry_delay)
            else:
                logger.error(
                    f"Page {page.index}: extraction failed after {max_attempts} attempts: {last_error}"
                )

    return Exhausted(last_error=last_error, attempts=max_attempts)


class ExtractionClient:
    """Async client for an OpenAI-compatible chat-completions endpoint."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        model: str,
        max_tokens: int = 5000,
        timeout: float = 120.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the extraction client.

        Args:
            api_key: Bearer credential for the service
            api_url: Full URL of the chat-completions endpoint
            model: Model name to request
            max_tokens: Response token limit
            timeout: Request timeout in seconds
            http_client: Optional preconfigured client (tests use a mock transport)
        """
        if not api_key:
            raise ValueError("An API key is required for text extraction")

        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def __aenter__(self) -> "ExtractionClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _payload(self, page: Page, prompt: str, temperature: float) -> dict:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "image_url", "image_url": {"url": page.data_uri}},
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
            "max_tokens": self.max_tokens,
            "temperature": round(temperature, 2),
            # Same request shape as the playground, which behaves differently without it
            "tools": [],
        }

    async def extract(self, page: Page, prompt: str, temperature: float = 0.0) -> str:
        """Transcribe one page image.

        Raises:
            ExtractionError: On transport errors, non-2xx responses or malformed bodies
        """
        try:
            response = await self._client.post(
                self.api_url,
                headers=self._headers,
                json=self._payload(page, prompt, temperature),
            )
        except httpx.HTTPError as e:
            raise ExtractionError(f"Request failed: {e}") from e

        if response.is_error:
            raise ExtractionError(f"Service error: {self._error_message(response)}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ExtractionError(f"Malformed service response: {e}") from e

        if not isinstance(content, str):
            raise ExtractionError("Service returned no text content")
        return content

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            message = response.json().get("error", {}).get("message")
        except (ValueError, AttributeError):
            message = None
        return message or response.reason_phrase or f"HTTP {response.status_code}"
