"""HTTP API for SiteFoundry ingestion and retrieval."""

import datetime
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from pipelines.batch_ingest import validate_http_url
from services.shared.errors import (
    ChunkIntegrityError, DiscoveryError, InvalidInputError, ScrapeError, SiteFoundryError,
)

from .dependencies import SITEMAP_JOB, ServiceContainer, build_services
from .jobs import JobStatus

logger = logging.getLogger(__name__)

ERROR_STATUS = (
    (InvalidInputError, 400),
    (ChunkIntegrityError, 422),
    (ScrapeError, 502),
    (DiscoveryError, 502),
)


class IngestRequest(BaseModel):
    url: str


class SearchRequest(BaseModel):
    query: str
    limit: int = Field(default=5, ge=1, le=50)
    threshold: Optional[float] = Field(default=None, ge=-1.0, le=1.0)


class SitemapIngestRequest(BaseModel):
    sitemap_url: str
    batch_size: int = Field(default=5, ge=1, le=50)
    max_urls: int = Field(default=100, ge=1)
    skip_existing: bool = True
    background: bool = False


def get_services(request: Request) -> ServiceContainer:
    """Dependency to get the service container."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=500, detail="Services not initialized")
    return services


def error_status(exc: Exception) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def require_document(services: ServiceContainer, document_id: int) -> dict:
    document = await services.store.get_document_by_id(document_id)
    if document is None:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the API.

    With ``services`` given the app uses them as is and leaves their
    lifecycle to the caller; otherwise services are built from the
    environment on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services if services is not None else await build_services()
        logger.info("SiteFoundry API started")
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()
            logger.info("SiteFoundry API stopped")

    app = FastAPI(title="SiteFoundry API", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(SiteFoundryError)
    async def handle_sitefoundry_error(request: Request, exc: SiteFoundryError):
        status = error_status(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status, content={"error": type(exc).__name__, "detail": str(exc)})

    @app.get("/health")
    async def health(services: ServiceContainer = Depends(get_services)):
        stats = await services.store.get_database_stats()
        return {"ok": True, "time": datetime.datetime.now(datetime.timezone.utc).isoformat(), "stats": stats}

    @app.post("/ingest")
    async def ingest(req: IngestRequest, services: ServiceContainer = Depends(get_services)):
        """Scrape, chunk and store one page."""
        url = validate_http_url(req.url)
        result = await services.ingestor.ingest_url(url)
        if not result.success:
            if result.stage == "scrape":
                status = 502
            elif result.error_type == ChunkIntegrityError.__name__:
                status = 422
            else:
                status = 500
            return JSONResponse(status_code=status, content={
                "error": result.error_type, "detail": result.error, "stage": result.stage, "url": url
            })
        return {
            "document_id": result.document_id,
            "url": result.url,
            "title": result.title,
            "chunks_created": result.chunks_created,
        }

    @app.post("/ingest/sitemap")
    async def ingest_sitemap(req: SitemapIngestRequest, services: ServiceContainer = Depends(get_services)):
        """Ingest every page of a sitemap, inline or as a background job."""
        sitemap_url = validate_http_url(req.sitemap_url)
        if req.background:
            job_id = await services.jobs.enqueue_job(SITEMAP_JOB, {
                "sitemap_url": sitemap_url,
                "batch_size": req.batch_size,
                "max_urls": req.max_urls,
                "skip_existing": req.skip_existing,
            })
            return JSONResponse(status_code=202, content={
                "job_id": job_id, "status": JobStatus.QUEUED.value, "message": "Sitemap ingestion job enqueued"
            })

        report = await services.ingestor.ingest_sitemap(
            sitemap_url,
            batch_size=req.batch_size,
            max_urls=req.max_urls,
            skip_existing=req.skip_existing,
        )
        return report.to_dict()

    @app.post("/search")
    async def search(req: SearchRequest, services: ServiceContainer = Depends(get_services)):
        results = await services.search.search(req.query, limit=req.limit, threshold=req.threshold)
        return {"query": req.query, "results": [r.to_dict() for r in results], "count": len(results)}

    @app.get("/documents")
    async def list_documents(limit: int = 50, services: ServiceContainer = Depends(get_services)):
        if limit < 1:
            raise InvalidInputError("limit must be at least 1")
        documents = await services.store.get_all_documents(limit)
        return {"documents": documents, "total": len(documents)}

    @app.get("/documents/{document_id}")
    async def get_document(document_id: int, services: ServiceContainer = Depends(get_services)):
        return await require_document(services, document_id)

    @app.get("/documents/{document_id}/chunks")
    async def get_document_chunks(document_id: int, services: ServiceContainer = Depends(get_services)):
        await require_document(services, document_id)
        chunks = await services.store.get_document_chunks(document_id)
        return {"document_id": document_id, "chunks": chunks, "total": len(chunks)}

    @app.get("/documents/{document_id}/metadata")
    async def get_document_metadata(document_id: int, services: ServiceContainer = Depends(get_services)):
        await require_document(services, document_id)
        return await services.store.get_document_metadata(document_id)

    @app.delete("/documents/{document_id}")
    async def delete_document(document_id: int, services: ServiceContainer = Depends(get_services)):
        if not await services.store.delete_document(document_id):
            raise HTTPException(status_code=404, detail="Document not found")
        return {"deleted": True, "document_id": document_id}

    @app.get("/homepage")
    async def homepage(services: ServiceContainer = Depends(get_services)):
        document = await services.homepage.get_homepage()
        if document is None:
            raise HTTPException(status_code=404, detail="Homepage not found")
        return document

    @app.get("/jobs")
    async def list_jobs(status: Optional[str] = None, limit: int = 100,
                        services: ServiceContainer = Depends(get_services)):
        """List jobs with optional status filter"""
        job_status = None
        if status:
            try:
                job_status = JobStatus(status)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid status: {status}")

        jobs = await services.jobs.list_jobs(job_status, limit)
        return {
            "jobs": [
                {
                    "id": job.id,
                    "type": job.type,
                    "status": job.status.value,
                    "created_at": job.created_at.isoformat(),
                    "started_at": job.started_at.isoformat() if job.started_at else None,
                    "completed_at": job.completed_at.isoformat() if job.completed_at else None,
                    "error": job.error
                }
                for job in jobs
            ],
            "total": len(jobs)
        }

    @app.get("/jobs/{job_id}")
    async def get_job_status(job_id: str, services: ServiceContainer = Depends(get_services)):
        """Get job status, logs and result"""
        job_record = await services.jobs.get_job_status(job_id)
        if not job_record:
            raise HTTPException(status_code=404, detail="Job not found")
        return job_record.to_dict()

    @app.post("/jobs/{job_id}/cancel")
    async def cancel_job(job_id: str, services: ServiceContainer = Depends(get_services)):
        job_record = await services.jobs.cancel_job(job_id)
        if not job_record:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"id": job_record.id, "status": job_record.status.value, "cancel_requested": True}

    return app


app = create_app()
