from __future__ import annotations

import json
import logging
import os
from random import random
from time import sleep
from typing import Any, Callable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from lumen_api.config import get_settings
from lumen_api.db import build_engine, init_db
from lumen_api.logging_setup import configure_logging
from lumen_api.services.rag.types import SourceKind
from lumen_api.wiring import build_ingestion_service

logger = logging.getLogger(__name__)

JOB_TYPE = "source_reindex"

Runner = Callable[[dict[str, Any] | None], dict[str, Any]]


def _get_database_url() -> str:
    return os.getenv("WORKER_DATABASE_URL") or get_settings().database_url


def _get_worker_id() -> str:
    return os.getenv("WORKER_ID", "worker-1")


def _get_poll_seconds() -> int:
    value = os.getenv("WORKER_POLL_SECONDS", "5")
    return max(1, int(value))


def _get_default_max_attempts() -> int:
    value = os.getenv("JOB_MAX_ATTEMPTS", "3")
    return max(1, int(value))


def _get_retry_base_seconds() -> float:
    value = os.getenv("WORKER_DB_RETRY_BASE_SECONDS", "1")
    return max(0.1, float(value))


def _get_retry_max_seconds() -> float:
    value = os.getenv("WORKER_DB_RETRY_MAX_SECONDS", "30")
    return max(0.5, float(value))


def _normalize_payload(payload_json: Any) -> dict[str, Any] | None:
    if isinstance(payload_json, dict):
        return payload_json
    if isinstance(payload_json, str) and payload_json.strip():
        try:
            parsed = json.loads(payload_json)
        except json.JSONDecodeError:
            return None
        if isinstance(parsed, dict):
            return parsed
    return None


def _coerce_job_id(job_id: Any) -> int | str:
    if isinstance(job_id, bool):
        return str(job_id)
    if isinstance(job_id, int):
        return job_id
    if isinstance(job_id, str):
        normalized = job_id.strip()
        if normalized.isdigit():
            return int(normalized)
        return normalized
    return str(job_id)


def _claimed(row: Any) -> dict[str, Any]:
    return {
        "id": _coerce_job_id(row["id"]),
        "payload_json": _normalize_payload(row["payload_json"]),
        "attempts": int(row["attempts"] or 0),
        "max_attempts": int(row["max_attempts"] or _get_default_max_attempts()),
    }


_MARK_RUNNING = """
    UPDATE jobs
    SET status = 'running',
        started_at = CURRENT_TIMESTAMP,
        updated_at = CURRENT_TIMESTAMP,
        finished_at = NULL,
        error = NULL
    WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
"""


def claim_next_job(engine: Engine) -> dict[str, Any] | None:
    """Move the oldest queued reindex job to ``running`` and return it."""
    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            row = connection.execute(
                text(
                    """
                    SELECT id, payload_json, attempts, max_attempts
                    FROM jobs
                    WHERE type = :job_type AND status = 'queued'
                    ORDER BY created_at ASC, id ASC
                    FOR UPDATE SKIP LOCKED
                    LIMIT 1
                    """
                ),
                {"job_type": JOB_TYPE},
            ).mappings().first()
            if row is None:
                return None

            connection.execute(text(_MARK_RUNNING), {"job_id": _coerce_job_id(row["id"])})
            return _claimed(row)

    with engine.begin() as connection:
        row = connection.execute(
            text(
                """
                SELECT id, payload_json, attempts, max_attempts
                FROM jobs
                WHERE type = :job_type AND status = 'queued'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ),
            {"job_type": JOB_TYPE},
        ).mappings().first()
        if row is None:
            return None

        claimed = connection.execute(
            text(_MARK_RUNNING + " AND status = 'queued'"),
            {"job_id": _coerce_job_id(row["id"])},
        )
        if claimed.rowcount != 1:
            return None
        return _claimed(row)


def claim_with_retry(engine: Engine) -> dict[str, Any] | None:
    base = _get_retry_base_seconds()
    max_delay = _get_retry_max_seconds()
    delay = base
    attempt = 1

    while True:
        try:
            return claim_next_job(engine)
        except Exception as exc:
            logger.warning(
                "job claim failed attempt=%d error=%r; retrying in %.1fs", attempt, exc, delay
            )
            sleep(delay + random() * 0.2 * delay)
            delay = min(delay * 2, max_delay)
            attempt += 1


def make_reindex_runner(engine: Engine) -> Runner:
    settings = get_settings()

    def run(payload_json: dict[str, Any] | None) -> dict[str, Any]:
        if payload_json is None:
            raise ValueError("source_reindex job requires a payload")
        try:
            kind = SourceKind(payload_json["kind"])
            source_id = int(payload_json["source_id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid source_reindex payload: {payload_json!r}") from exc

        result = build_ingestion_service(settings, engine).index_source(kind, source_id)
        return {
            "kind": result.source.kind.value,
            "source_id": result.source.id,
            "chunks": result.chunk_count,
            "chars": result.text_length,
        }

    return run


def _mark_job_succeeded(engine: Engine, job_id: int | str, result_json: dict[str, Any]) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = 'succeeded',
                    result_json = :result_json,
                    finished_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    error = NULL
                WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
                """
            ),
            {"job_id": job_id, "result_json": json.dumps(result_json)},
        )


def _mark_job_failure(
    engine: Engine,
    *,
    job_id: int | str,
    attempts: int,
    max_attempts: int,
    error_message: str,
) -> None:
    next_attempts = attempts + 1
    requeue = next_attempts < max_attempts

    with engine.begin() as connection:
        connection.execute(
            text(
                """
                UPDATE jobs
                SET status = CAST(:status AS VARCHAR),
                    attempts = :attempts,
                    error = :error,
                    finished_at = CASE WHEN CAST(:status AS VARCHAR) = 'failed' THEN CURRENT_TIMESTAMP ELSE NULL END,
                    started_at = CASE WHEN CAST(:status AS VARCHAR) = 'queued' THEN NULL ELSE started_at END,
                    updated_at = CURRENT_TIMESTAMP
                WHERE CAST(id AS TEXT) = CAST(:job_id AS TEXT)
                """
            ),
            {
                "job_id": job_id,
                "status": "queued" if requeue else "failed",
                "attempts": next_attempts,
                "error": error_message,
            },
        )


def _process_claimed_job(engine: Engine, job: dict[str, Any], *, runner: Runner) -> None:
    job_id = _coerce_job_id(job["id"])
    attempts = int(job.get("attempts", 0))
    max_attempts = int(job.get("max_attempts") or _get_default_max_attempts())
    payload = _normalize_payload(job.get("payload_json"))

    try:
        result_json = runner(payload)
    except Exception as exc:
        _mark_job_failure(
            engine,
            job_id=job_id,
            attempts=attempts,
            max_attempts=max_attempts,
            error_message=str(exc),
        )
        logger.warning(
            "job failed job_id=%s attempts=%d/%d error=%s",
            job_id,
            attempts + 1,
            max_attempts,
            exc,
        )
        return

    _mark_job_succeeded(engine, job_id, result_json)
    logger.info("job succeeded job_id=%s result=%s", job_id, result_json)


def run_pending_jobs(engine: Engine, *, runner: Runner, limit: int | None = None) -> int:
    """Process queued jobs until the queue is empty or ``limit`` is reached."""
    processed = 0
    while limit is None or processed < limit:
        job = claim_next_job(engine)
        if job is None:
            break
        _process_claimed_job(engine, job, runner=runner)
        processed += 1
    return processed


def main() -> None:
    configure_logging(get_settings().log_level)
    worker_id = _get_worker_id()
    poll_seconds = _get_poll_seconds()
    engine = build_engine(_get_database_url())
    init_db(engine)
    runner = make_reindex_runner(engine)

    logger.info("worker started worker_id=%s poll_seconds=%d", worker_id, poll_seconds)
    while True:
        job = claim_with_retry(engine)
        if job is None:
            sleep(poll_seconds)
            continue

        _process_claimed_job(engine, job, runner=runner)


if __name__ == "__main__":
    main()
