from datetime import datetime, timezone
import json
import re
import time
from typing import Annotated, Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from lumen_api.config import get_settings
from lumen_api.db import get_engine, init_db
from lumen_api.errors import (
    EmbeddingFailure,
    InvalidInput,
    LumenError,
    SourceNotFound,
    StoreFailure,
    UnsupportedMediaType,
)
from lumen_api.llm import LLMClient, LLMClientError, build_llm_client
from lumen_api.logging_setup import configure_logging
from lumen_api.models import JobRecord
from lumen_api.services.rag.crawler import PageFetcher
from lumen_api.services.rag.embedding_client import EmbeddingClient, get_embedding_client as _embedding_client
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import SourceKind, SourceRef
from lumen_api.speech import SpeechClientError, Transcriber, build_transcriber
from lumen_api.wiring import build_chat_service, build_ingestion_service, build_retriever

REINDEX_JOB_TYPE = "source_reindex"

app = FastAPI(title="Lumen Research Assistant API", version="0.1.0")


class ScopeModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: SourceKind
    id: int = Field(ge=1)


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = Field(min_length=1)
    conversation_id: int | None = Field(default=None, ge=1)
    scope: ScopeModel | None = None


class WebsiteIndexRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    url: str = Field(min_length=1)
    max_pages: int | None = Field(default=None, ge=1, le=100)
    timeout_seconds: float | None = Field(default=None, gt=0, le=600)


@app.on_event("startup")
def startup() -> None:
    configure_logging(get_settings().log_level)
    init_db(get_engine())


def get_llm_client() -> LLMClient:
    return build_llm_client(get_settings())


def get_embedding_client() -> EmbeddingClient:
    return _embedding_client(get_settings())


def get_transcriber() -> Transcriber:
    return build_transcriber(get_settings())


def get_page_fetcher() -> PageFetcher | None:
    return None


def get_store() -> SqlSourceStore:
    return SqlSourceStore(get_engine())


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidInput):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, UnsupportedMediaType):
        return HTTPException(status_code=415, detail=str(exc))
    if isinstance(exc, SourceNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, EmbeddingFailure):
        return HTTPException(status_code=502, detail=f"Embedding request failed: {exc}")
    if isinstance(exc, LLMClientError):
        return HTTPException(status_code=502, detail=f"LLM request failed: {exc}")
    if isinstance(exc, SpeechClientError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, StoreFailure):
        return HTTPException(status_code=503, detail=f"Storage unavailable: {exc}")
    return HTTPException(status_code=500, detail=str(exc))


def _ingestion_error(exc: LumenError) -> JSONResponse:
    error = _http_error(exc)
    if not exc.pending_sources:
        raise error from exc
    return JSONResponse(
        status_code=error.status_code,
        content={
            "detail": error.detail,
            "pending_sources": [
                {"kind": source.kind.value, "id": source.id} for source in exc.pending_sources
            ],
        },
    )


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _job_summary(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
    }


def _parse_json_object(value: Any) -> dict[str, Any] | None:
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": _parse_json_object(job.payload_json),
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": _parse_json_object(job.result_json),
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


def _parse_kind(kind: str) -> SourceKind:
    try:
        return SourceKind(kind)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=f"unknown source kind: {kind}") from exc


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/documents", status_code=201, response_model=None)
def upload_document(
    file: Annotated[UploadFile, File()],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
) -> dict[str, Any] | JSONResponse:
    payload = file.file.read()
    try:
        service = build_ingestion_service(
            get_settings(),
            get_engine(),
            embedding_client=embedding_client,
            llm_client=llm_client,
        )
        result = service.ingest_document(
            payload,
            filename=file.filename or "document",
            media_type=file.content_type,
        )
    except LumenError as exc:
        return _ingestion_error(exc)

    return {
        "document_id": result.source.id,
        "chunk_count": result.chunk_count,
        "text_length": result.text_length,
    }


@app.post("/media", status_code=201, response_model=None)
def upload_media(
    file: Annotated[UploadFile, File()],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    transcriber: Annotated[Transcriber, Depends(get_transcriber)],
    target_language: Annotated[str | None, Form()] = None,
    source_language: Annotated[str | None, Form()] = None,
) -> dict[str, Any] | JSONResponse:
    payload = file.file.read()
    try:
        service = build_ingestion_service(
            get_settings(),
            get_engine(),
            embedding_client=embedding_client,
            llm_client=llm_client,
            transcriber=transcriber,
        )
        media = service.ingest_media(
            payload,
            filename=file.filename or "media",
            media_type=file.content_type,
            target_language=target_language or None,
            source_language=source_language or None,
        )
    except LumenError as exc:
        return _ingestion_error(exc)

    return {
        "media_id": media.result.source.id,
        "transcription": media.transcription,
        "translation": media.translation,
        "target_language": media.target_language,
        "chunk_count": media.result.chunk_count,
    }


@app.post("/websites", status_code=201, response_model=None)
def index_website(
    request: WebsiteIndexRequest,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    fetcher: Annotated[PageFetcher | None, Depends(get_page_fetcher)],
) -> dict[str, Any] | JSONResponse:
    settings = get_settings()
    deadline = (
        time.monotonic() + request.timeout_seconds if request.timeout_seconds is not None else None
    )
    try:
        service = build_ingestion_service(
            settings,
            get_engine(),
            embedding_client=embedding_client,
            llm_client=llm_client,
            fetcher=fetcher,
        )
        result = service.ingest_website(
            request.url,
            max_pages=request.max_pages or settings.crawl_max_pages,
            deadline=deadline,
        )
    except LumenError as exc:
        return _ingestion_error(exc)

    return {
        "website_id": result.source.id,
        "pages_indexed": result.pages,
        "chunk_count": result.chunk_count,
        "cancelled": result.cancelled,
    }


@app.get("/sources/{kind}/{source_id}")
def get_source(
    kind: str,
    source_id: int,
    store: Annotated[SqlSourceStore, Depends(get_store)],
) -> dict[str, Any]:
    try:
        details = store.describe_source(_parse_kind(kind), source_id)
    except LumenError as exc:
        raise _http_error(exc) from exc
    if details is None:
        raise HTTPException(status_code=404, detail=f"{kind} {source_id} not found")
    return details


@app.delete("/sources/{kind}/{source_id}", status_code=204)
def delete_source(
    kind: str,
    source_id: int,
    store: Annotated[SqlSourceStore, Depends(get_store)],
) -> Response:
    try:
        store.delete_source(_parse_kind(kind), source_id)
    except LumenError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@app.post("/sources/{kind}/{source_id}/reindex")
def enqueue_source_reindex(
    kind: str,
    source_id: int,
    store: Annotated[SqlSourceStore, Depends(get_store)],
) -> JSONResponse:
    source_kind = _parse_kind(kind)
    if not source_kind.owns_chunks:
        raise HTTPException(status_code=400, detail=f"{kind} sources are reindexed per page")
    try:
        text = store.get_source_text(source_kind, source_id)
    except LumenError as exc:
        raise _http_error(exc) from exc
    if text is None:
        raise HTTPException(status_code=404, detail=f"{kind} {source_id} not found")

    payload_json = {"kind": source_kind.value, "source_id": source_id}

    with Session(get_engine()) as session:
        active = session.scalars(
            select(JobRecord)
            .where(JobRecord.type == REINDEX_JOB_TYPE)
            .where(JobRecord.status.in_(["queued", "running"]))
            .order_by(JobRecord.created_at.asc(), JobRecord.id.asc())
        ).all()
        existing = next(
            (job for job in active if _parse_json_object(job.payload_json) == payload_json),
            None,
        )
        if existing is not None:
            return JSONResponse(
                status_code=409,
                content={
                    "detail": f"{REINDEX_JOB_TYPE} already queued/running for {source_kind.value} {source_id}",
                    "existing_job_id": existing.id,
                },
            )

        job = JobRecord(
            id=_next_job_id(session),
            type=REINDEX_JOB_TYPE,
            status="queued",
            payload_json=payload_json,
            attempts=0,
            max_attempts=get_settings().job_max_attempts,
            updated_at=datetime.now(timezone.utc),
        )
        session.add(job)
        session.commit()
        job_id = job.id
        job_status = job.status

    return JSONResponse(status_code=202, content={"job_id": job_id, "status": job_status})


@app.get("/rag/search")
def rag_search(
    q: str,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    kind: SourceKind | None = None,
    source_id: int | None = Query(default=None, ge=1),
    k: int = 5,
) -> dict[str, Any]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")
    if source_id is not None and kind is None:
        raise HTTPException(status_code=400, detail="source_id requires kind")

    scope = SourceRef(kind, source_id) if kind is not None and source_id is not None else None
    retriever = build_retriever(get_settings(), get_engine(), embedding_client=embedding_client)

    try:
        ranked = retriever.search(q, scope=scope, kind=kind, top_k=max(1, min(k, 50)))
    except LumenError as exc:
        raise _http_error(exc) from exc

    return {
        "ranking": ranked.ranking.value,
        "hits": [
            {
                "source_kind": hit.chunk.source.kind.value,
                "source_id": hit.chunk.source.id,
                "chunk_index": hit.chunk.index,
                "score": round(hit.score, 6) if hit.score is not None else None,
                "text": hit.chunk.text,
            }
            for hit in ranked.hits
        ],
    }


@app.post("/chat")
def chat(
    request: ChatRequest,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
) -> dict[str, Any]:
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="message must not be empty")

    scope = SourceRef(request.scope.kind, request.scope.id) if request.scope is not None else None
    service = build_chat_service(
        get_settings(),
        get_engine(),
        embedding_client=embedding_client,
        llm_client=llm_client,
    )

    try:
        turn = service.answer(message, scope=scope, conversation_id=request.conversation_id)
    except LumenError as exc:
        raise _http_error(exc) from exc

    return {
        "conversation_id": turn.conversation_id,
        "answer": turn.answer,
        "sources": [
            {"kind": source.kind.value, "id": source.id} for source in turn.retrieval.sources
        ],
        "meta": {
            "model": turn.model,
            "used_fallback": turn.used_fallback,
            "retrieval_strategy": turn.retrieval.strategy,
            "context_chars": len(turn.retrieval.context),
        },
    }


@app.get("/conversations/{conversation_id}/messages")
def list_conversation_messages(
    conversation_id: int,
    store: Annotated[SqlSourceStore, Depends(get_store)],
) -> list[dict[str, Any]]:
    try:
        if not store.conversation_exists(conversation_id):
            raise HTTPException(status_code=404, detail="conversation not found")
        messages = store.list_messages(conversation_id)
    except LumenError as exc:
        raise _http_error(exc) from exc

    return [
        {
            "id": message.id,
            "role": message.role,
            "content": message.content,
            "created_at": _to_iso(message.created_at),
        }
        for message in messages
    ]


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


def run() -> None:
    import uvicorn

    uvicorn.run("lumen_api.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
