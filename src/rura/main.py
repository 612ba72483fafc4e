import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from datetime import datetime, timezone
import logging
import re
from typing import Annotated, Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from rura.config import collection_names, configure_logging, get_settings
from rura.context import RagContext, build_context
from rura.db import get_engine, init_db
from rura.llm import LLMClientError
from rura.models import ACTIVE_JOB_STATUSES, JOB_TYPE_SITE_UPLOAD, JobRecord
from rura.services.rag.embedding_client import EmbeddingClientError, EmbeddingUnavailableError
from rura.services.rag.query import AnswerEvent
from rura.services.rag.sitemap import require_site_url
from rura.services.rag.types import IngestionProgress, SearchHit
from rura.services.rag.vector_store import (
    VectorDimensionError,
    VectorStoreError,
    VectorStoreUnavailableError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="rura", version="0.1.0")

_context: RagContext | None = None
_cancel_events: dict[str, asyncio.Event] = {}


class UploadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    sitemap_url: str | None = None
    filter_collections: list[str] | None = None
    base_collection: str | None = None


class QueryRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1)
    k: int | None = Field(default=None, ge=1, le=50)
    filter_collections: list[str] | None = None
    base_collection: str | None = None
    model: str | None = None
    stream: bool = False


@app.on_event("startup")
def startup() -> None:
    init_db()


@app.on_event("shutdown")
async def shutdown() -> None:
    global _context
    if _context is not None:
        await _context.aclose()
        _context = None


def get_rag_context() -> RagContext:
    global _context
    if _context is None:
        _context = build_context(get_settings())
    return _context


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _resolve_collections(
    context: RagContext,
    base_collection: str | None,
    filter_collections: list[str] | None,
) -> list[str]:
    filters = [name.strip() for name in filter_collections or [] if name.strip()]
    try:
        return collection_names(
            base_collection or context.settings.base_collection,
            filters or list(context.settings.filter_collections),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, (EmbeddingUnavailableError, VectorStoreUnavailableError)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, VectorDimensionError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, LLMClientError):
        return HTTPException(status_code=502, detail=f"LLM request failed: {exc}")
    return HTTPException(status_code=502, detail=str(exc))


def _job_progress(job: JobRecord) -> dict[str, Any]:
    return {
        "status": job.status,
        "pages_discovered": job.pages_discovered,
        "pages_processed": job.pages_processed,
        "pages_stored": job.pages_stored,
        "pages_failed": job.pages_failed,
    }


def _job_summary(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
    }


def _job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "payload_json": job.payload_json,
        **_job_progress(job),
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": job.result_json,
    }


def _source(hit: SearchHit) -> dict[str, Any]:
    return {
        "fingerprint": hit.fingerprint,
        "collection": hit.collection,
        "url": hit.url,
        "title": hit.payload.get("title"),
        "ordinal": hit.ordinal,
        "score": round(hit.score, 6),
        "text": hit.text,
    }


def _extract_numeric_suffix(value: str) -> int | None:
    match = re.search(r"(\d+)$", value)
    if match is None:
        return None
    return int(match.group(1))


def _next_job_id(session: Session) -> str:
    next_id = 1
    for existing_id in session.scalars(select(JobRecord.id)).all():
        parsed = _extract_numeric_suffix(str(existing_id))
        if parsed is None:
            continue
        next_id = max(next_id, parsed + 1)
    return str(next_id)


def _update_job(job_id: str, **values: Any) -> None:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)
        if job is None:
            return
        for key, value in values.items():
            setattr(job, key, value)
        job.updated_at = datetime.now(timezone.utc)
        session.commit()


async def run_upload_job(
    job_id: str,
    context: RagContext,
    *,
    url: str,
    sitemap_url: str | None,
    collections: list[str],
) -> None:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)
        if job is None or job.status != "queued":
            # cancelled before it started
            return

    cancel_event = asyncio.Event()
    _cancel_events[job_id] = cancel_event
    _update_job(job_id, status="running", started_at=datetime.now(timezone.utc))

    progress_lock = asyncio.Lock()

    async def on_progress(progress: IngestionProgress) -> None:
        # FIFO lock keeps snapshots in order; writes run off the event loop
        async with progress_lock:
            await asyncio.to_thread(
                _update_job,
                job_id,
                pages_discovered=progress.discovered,
                pages_processed=progress.processed,
                pages_stored=progress.stored,
                pages_failed=progress.failed,
            )

    try:
        summary = await context.ingestion().run(
            url,
            collections,
            sitemap_url=sitemap_url,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )
    except Exception as exc:
        logger.exception("Upload job %s failed", job_id)
        _update_job(
            job_id,
            status="failed",
            error=str(exc),
            finished_at=datetime.now(timezone.utc),
        )
        return
    finally:
        _cancel_events.pop(job_id, None)

    _update_job(
        job_id,
        status="cancelled" if cancel_event.is_set() else "succeeded",
        pages_stored=summary.pages_stored,
        pages_failed=summary.pages_failed,
        result_json=summary.as_dict(),
        finished_at=datetime.now(timezone.utc),
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/upload")
def upload(
    request: UploadRequest,
    background_tasks: BackgroundTasks,
    context: Annotated[RagContext, Depends(get_rag_context)],
) -> JSONResponse:
    try:
        url = require_site_url(request.url)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    collections = _resolve_collections(context, request.base_collection, request.filter_collections)

    with Session(get_engine()) as session:
        active = session.scalars(
            select(JobRecord)
            .where(JobRecord.type == JOB_TYPE_SITE_UPLOAD)
            .where(JobRecord.status.in_(ACTIVE_JOB_STATUSES))
        ).all()
        for existing in active:
            if (existing.payload_json or {}).get("url") == url:
                return JSONResponse(
                    status_code=409,
                    content={
                        "detail": "upload of this url already queued/running",
                        "existing_job_id": existing.id,
                    },
                )

        job = JobRecord(
            id=_next_job_id(session),
            type=JOB_TYPE_SITE_UPLOAD,
            status="queued",
            payload_json={
                "url": url,
                "sitemap_url": request.sitemap_url,
                "collections": collections,
            },
            updated_at=datetime.now(timezone.utc),
        )
        session.add(job)
        session.commit()
        job_id = job.id
        job_status = job.status

    background_tasks.add_task(
        run_upload_job,
        job_id,
        context,
        url=url,
        sitemap_url=request.sitemap_url,
        collections=collections,
    )
    return JSONResponse(status_code=202, content={"job_id": job_id, "status": job_status})


@app.get("/get-state")
def get_state() -> dict[str, dict[str, Any]]:
    with Session(get_engine()) as session:
        jobs = session.scalars(
            select(JobRecord)
            .where(JobRecord.type == JOB_TYPE_SITE_UPLOAD)
            .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()
    return {job.id: _job_progress(job) for job in jobs}


@app.get("/jobs")
def list_jobs(
    type: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    with Session(get_engine()) as session:
        stmt = select(JobRecord)
        if type is not None:
            stmt = stmt.where(JobRecord.type == type)
        if status is not None:
            stmt = stmt.where(JobRecord.status == status)

        jobs = session.scalars(
            stmt.order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()

    return [_job_summary(job) for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)

    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


@app.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str) -> dict[str, str]:
    with Session(get_engine()) as session:
        job = session.get(JobRecord, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        if job.status not in ACTIVE_JOB_STATUSES:
            raise HTTPException(status_code=409, detail=f"job already {job.status}")

        if job.status == "queued":
            job.status = "cancelled"
            job.finished_at = datetime.now(timezone.utc)
            job.updated_at = datetime.now(timezone.utc)
            session.commit()
        elif job_id in _cancel_events:
            _cancel_events[job_id].set()
        status = job.status

    return {"job_id": job_id, "status": status}


def _render_event(event: AnswerEvent) -> str:
    if event.kind == "token":
        return event.text
    if event.kind == "interrupted":
        return f"\n\n[answer interrupted: {event.reason}]\n"
    return ""


async def _stream_body(
    first: AnswerEvent | None,
    events: AsyncGenerator[AnswerEvent, None],
) -> AsyncIterator[str]:
    try:
        if first is not None:
            yield _render_event(first)
        async for event in events:
            yield _render_event(event)
    finally:
        await events.aclose()


@app.post("/query", response_model=None)
async def query(
    request: QueryRequest,
    context: Annotated[RagContext, Depends(get_rag_context)],
) -> dict[str, Any] | StreamingResponse:
    question = request.query.strip()
    if not question:
        raise HTTPException(status_code=400, detail="query must not be empty")

    collections = _resolve_collections(context, request.base_collection, request.filter_collections)
    top_k = request.k or context.settings.rag_top_k
    retrieval = context.retrieval()

    if request.stream:
        events = retrieval.stream_answer(question, collections, top_k, request.model)
        try:
            await anext(events)
            first = await anext(events, None)
        except (ValueError, EmbeddingClientError, VectorStoreError, LLMClientError) as exc:
            await events.aclose()
            raise _http_error(exc) from exc
        return StreamingResponse(_stream_body(first, events), media_type="text/plain")

    try:
        answer = await retrieval.answer(question, collections, top_k, request.model)
    except (ValueError, EmbeddingClientError, VectorStoreError, LLMClientError) as exc:
        raise _http_error(exc) from exc

    return {
        "answer": answer.answer,
        "interrupted": answer.interrupted,
        "interruption_reason": answer.interruption_reason,
        "sources": [_source(hit) for hit in answer.hits],
        "meta": {
            "provider": "ollama",
            "model": answer.model,
            "retrieval_k": top_k,
            "retrieved_count": len(answer.hits),
            "collections": collections,
            "ollama_base_url": context.settings.ollama_base_url,
        },
    }


@app.delete("/drop")
async def drop(
    context: Annotated[RagContext, Depends(get_rag_context)],
    collection: str | None = Query(default=None),
) -> dict[str, dict[str, bool]]:
    targets = [collection] if collection else context.settings.target_collections
    dropped: dict[str, bool] = {}
    try:
        for name in targets:
            dropped[name] = await context.gateway.drop(name)
    except VectorStoreError as exc:
        raise _http_error(exc) from exc
    return {"dropped": dropped}


def run() -> None:
    import uvicorn

    configure_logging()
    settings = get_settings()
    uvicorn.run("rura.main:app", host=settings.listen_host, port=settings.listen_port, reload=False)


if __name__ == "__main__":
    run()
