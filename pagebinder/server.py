"""
Job control server.

A capturing client initializes a job, uploads page images in chunks, starts
processing and polls its event mailbox for progress and completion. Clients
identify themselves with the X-Client-Id header; jobs are only visible to the
client that created them.
"""

import base64
import binascii
import logging
import re
from pathlib import Path

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from .config import PipelineConfig, Settings, SettingsStore
from .extraction import DEFAULT_ANALYSIS_PROMPT
from .jobs import JobCoordinator, JobError, JobNotFoundError, JobOwnershipError
from .models import Page
from .orchestrator import build_pipeline_factory
from .progress import EventHub

logger = logging.getLogger(__name__)

# Pages served from this machine, on any port
LOCAL_ORIGIN = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


class PagePayload(BaseModel):
    index: int = Field(ge=1)
    data: str  # base64, optionally as a data: URI
    mime_type: str = "image/png"

    def to_page(self) -> Page:
        data = self.data
        mime_type = self.mime_type
        if data.startswith("data:"):
            header, _, data = data.partition(",")
            mime_type = header[5:].split(";")[0] or mime_type
        try:
            image_data = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=422, detail=f"Page {self.index}: invalid base64 image data")
        return Page(index=self.index, image_data=image_data, mime_type=mime_type)


class InitJobRequest(BaseModel):
    title: str
    author: str | None = None
    total_pages: int
    total_chunks: int


class ChunkRequest(BaseModel):
    chunk_index: int
    pages: list[PagePayload]


class SettingsUpdate(BaseModel):
    api_key: str | None = None
    analysis_prompt: str | None = None


def origin_allowed(origin: str, config: PipelineConfig) -> bool:
    """Whether a browser origin may call the server."""
    return origin.rstrip("/") in config.allowed_origins or re.fullmatch(LOCAL_ORIGIN, origin) is not None


def _mask(api_key: str) -> str | None:
    if not api_key:
        return None
    return f"...{api_key[-4:]}" if len(api_key) > 8 else "****"


def create_app(
    coordinator: JobCoordinator | None = None,
    hub: EventHub | None = None,
    settings_store: SettingsStore | None = None,
    config: PipelineConfig | None = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        coordinator: Job coordinator (built from config when omitted)
        hub: Event mailboxes shared with the coordinator's notifier
        settings_store: Where the credential and prompt are kept
        config: Pipeline configuration (defaults from environment)
    """
    config = config or PipelineConfig.from_env()
    hub = hub or EventHub()
    settings_store = settings_store or SettingsStore()
    coordinator = coordinator or JobCoordinator(
        settings_store=settings_store,
        pipeline_factory=build_pipeline_factory(config, notifier=hub),
        notifier=hub,
    )

    app = FastAPI(title="pagebinder")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.allowed_origins),
        allow_origin_regex=LOCAL_ORIGIN,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.coordinator = coordinator
    app.state.hub = hub

    @app.exception_handler(JobError)
    async def job_error_handler(request: Request, exc: JobError):
        if isinstance(exc, JobNotFoundError):
            status = 404
        elif isinstance(exc, JobOwnershipError):
            status = 403
        else:
            status = 400
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})

    @app.post("/jobs")
    async def init_job(body: InitJobRequest, x_client_id: str = Header(...)):
        """Initialize a conversion job."""
        job_id = coordinator.init_job(
            owner=x_client_id,
            title=body.title,
            author=body.author,
            total_pages=body.total_pages,
            total_chunks=body.total_chunks,
        )
        hub.open(x_client_id)
        return {"success": True, "job_id": job_id}

    @app.post("/jobs/{job_id}/chunks")
    async def submit_chunk(job_id: str, body: ChunkRequest, x_client_id: str = Header(...)):
        """Receive one chunk of pages."""
        pages = [p.to_page() for p in body.pages]
        receipt = coordinator.submit_chunk(x_client_id, job_id, body.chunk_index, pages)
        return {
            "success": True,
            "received_chunks": receipt.received_chunks,
            "total_chunks": receipt.total_chunks,
            "ready": receipt.ready,
            "duplicate": receipt.duplicate,
        }

    @app.post("/jobs/{job_id}/start")
    async def start_job(job_id: str, x_client_id: str = Header(...)):
        """Start processing; progress arrives through /events."""
        coordinator.start(x_client_id, job_id)
        hub.open(x_client_id)
        return {"success": True, "started": True}

    @app.get("/events")
    async def poll_events(x_client_id: str = Header(...)):
        """Drain pending progress and completion events for this client."""
        hub.open(x_client_id)
        return {"events": [e.to_dict() for e in hub.drain(x_client_id)]}

    @app.delete("/events")
    async def close_events(x_client_id: str = Header(...)):
        """Stop receiving events; later events for this client are dropped."""
        hub.close(x_client_id)
        return {"success": True}

    @app.get("/downloads/{filename}")
    async def download(filename: str):
        """Serve a delivered EPUB."""
        if Path(filename).name != filename or not filename.endswith(".epub"):
            raise HTTPException(status_code=400, detail="Invalid filename")
        path = config.output_dir / filename
        if not path.is_file():
            raise HTTPException(status_code=404, detail=f"File not found: {filename}")
        return FileResponse(path, media_type="application/epub+zip", filename=filename)

    @app.get("/settings")
    async def get_settings():
        settings = settings_store.load()
        return {
            "has_api_key": settings.has_credential,
            "api_key_hint": _mask(settings.api_key),
            "analysis_prompt": settings.prompt,
            "default_prompt": DEFAULT_ANALYSIS_PROMPT,
        }

    @app.put("/settings")
    async def update_settings(
        update: SettingsUpdate,
        x_client_id: str = Header(...),
        origin: str | None = Header(None),
    ):
        """Store a new credential or prompt.

        Requests carrying an Origin outside the allowed set are refused,
        whether or not the browser sent a preflight.
        """
        if origin is not None and not origin_allowed(origin, config):
            logger.warning(f"Refused settings update from origin {origin} (client {x_client_id})")
            raise HTTPException(status_code=403, detail=f"Origin not allowed: {origin}")

        current = settings_store.load(include_env=False)
        settings = Settings(
            api_key=current.api_key if update.api_key is None else update.api_key.strip(),
            analysis_prompt=(
                current.analysis_prompt if update.analysis_prompt is None else update.analysis_prompt.strip()
            ),
        )
        settings_store.save(settings)
        logger.info(f"Settings updated by client {x_client_id}")
        return {"success": True, "has_api_key": settings.has_credential}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "active_jobs": len(coordinator.active_jobs()),
            "api_url": config.api_url,
        }

    return app


def serve(host: str = "127.0.0.1", port: int = 8787, config: PipelineConfig | None = None) -> None:
    """Run the server with uvicorn."""
    import uvicorn

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(create_app(config=config), host=host, port=port)
