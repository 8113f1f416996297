"""
HTTP client for the job control server.

Mirrors what a capturing device does: initialize a job, send pages in small
chunks, start processing, then poll for events.
"""

import asyncio
import base64
import logging
import math
import uuid

import httpx

from .models import Page

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "http://127.0.0.1:8787"
CHUNK_SIZE = 5
CHUNK_PAUSE = 0.1


class JobClientError(Exception):
    """The server rejected a request or did not answer in time."""


class JobClient:
    """Async client for one capturing session.

    Usage:
        async with JobClient(url) as client:
            job_id = await client.upload_book(pages, title, author)
            await client.start(job_id)
            events = await client.poll_events()
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SERVER_URL,
        client_id: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id or str(uuid.uuid4())
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"X-Client-Id": self.client_id},
            transport=transport,
        )

    async def __aenter__(self) -> "JobClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise JobClientError("Message timeout") from e
        except httpx.HTTPError as e:
            raise JobClientError(f"Request failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error or body.get("success") is False:
            error = body.get("error") or body.get("detail") or response.reason_phrase
            raise JobClientError(f"{method} {path} failed ({response.status_code}): {error}")
        return body

    async def init_job(self, title: str, author: str | None, total_pages: int, total_chunks: int) -> str:
        body = await self._request("POST", "/jobs", json={
            "title": title,
            "author": author,
            "total_pages": total_pages,
            "total_chunks": total_chunks,
        })
        return body["job_id"]

    async def send_chunk(self, job_id: str, chunk_index: int, pages: list[Page]) -> dict:
        payload = [
            {
                "index": page.index,
                "data": base64.b64encode(page.image_data).decode("ascii"),
                "mime_type": page.mime_type,
            }
            for page in pages
        ]
        return await self._request(
            "POST", f"/jobs/{job_id}/chunks", json={"chunk_index": chunk_index, "pages": payload}
        )

    async def start(self, job_id: str) -> None:
        await self._request("POST", f"/jobs/{job_id}/start")

    async def poll_events(self) -> list[dict]:
        body = await self._request("GET", "/events")
        return body.get("events", [])

    async def close_events(self) -> None:
        await self._request("DELETE", "/events")

    async def upload_book(
        self,
        pages: list[Page],
        title: str,
        author: str | None = None,
        chunk_size: int = CHUNK_SIZE,
        pause: float = CHUNK_PAUSE,
    ) -> str:
        """Initialize a job and send all pages; returns the job id once ready."""
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        if not pages:
            raise ValueError("No pages to upload")

        total_chunks = math.ceil(len(pages) / chunk_size)
        job_id = await self.init_job(title, author, len(pages), total_chunks)

        for chunk_index in range(total_chunks):
            chunk = pages[chunk_index * chunk_size:(chunk_index + 1) * chunk_size]
            receipt = await self.send_chunk(job_id, chunk_index, chunk)
            logger.debug(f"Sent chunk {chunk_index + 1}/{total_chunks}")
            if chunk_index < total_chunks - 1:
                await asyncio.sleep(pause)

        if not receipt.get("ready"):
            raise JobClientError(f"Job {job_id} not ready after sending {total_chunks} chunks")
        logger.info(f"Uploaded {len(pages)} pages in {total_chunks} chunks for job {job_id}")
        return job_id
