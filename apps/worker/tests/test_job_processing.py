from pathlib import Path

import pytest
from sqlalchemy import create_engine, func, select, text
from sqlalchemy.orm import Session

from lumen_api.config import get_settings
from lumen_api.db import init_db
from lumen_api.models import ChunkRecord, JobRecord
from lumen_api.services.rag.store import SqlSourceStore
from lumen_api.services.rag.types import SourceKind
from lumen_worker.main import (
    _coerce_job_id,
    _process_claimed_job,
    claim_next_job,
    make_reindex_runner,
    run_pending_jobs,
)


def _engine(tmp_path: Path, name: str):
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / name}")
    init_db(engine)
    return engine


def _insert_job(engine, job_id: str, payload: str | None, *, max_attempts: int = 3) -> None:
    with engine.begin() as connection:
        connection.execute(
            text(
                """
                INSERT INTO jobs (id, type, status, payload_json, attempts, max_attempts)
                VALUES (:id, 'source_reindex', 'queued', :payload, 0, :max_attempts)
                """
            ),
            {"id": job_id, "payload": payload, "max_attempts": max_attempts},
        )


def _job_row(engine, job_id: str):
    with engine.connect() as connection:
        return connection.execute(
            text("SELECT status, attempts, result_json, error FROM jobs WHERE id = :id"),
            {"id": job_id},
        ).fetchone()


def _boom(message: str):
    def runner(_payload):
        raise RuntimeError(message)

    return runner


def test_coerce_job_id_converts_numeric_string_to_int() -> None:
    assert _coerce_job_id("42") == 42
    assert _coerce_job_id(7) == 7
    assert _coerce_job_id(" job-a ") == "job-a"


def test_worker_claim_and_execute_success(tmp_path: Path) -> None:
    engine = _engine(tmp_path, "worker-success.db")
    _insert_job(engine, "1", '{"kind": "document", "source_id": 3}')

    job = claim_next_job(engine)
    assert job is not None
    assert job["id"] == 1
    assert job["payload_json"] == {"kind": "document", "source_id": 3}
    assert claim_next_job(engine) is None

    _process_claimed_job(engine, job, runner=lambda _: {"chunks": 12})

    row = _job_row(engine, "1")
    assert row is not None
    assert row[0] == "succeeded"
    assert row[1] == 0
    assert "\"chunks\": 12" in str(row[2])
    assert row[3] is None


def test_worker_ignores_other_job_types(tmp_path: Path) -> None:
    engine = _engine(tmp_path, "worker-types.db")
    with Session(engine) as session:
        session.add(JobRecord(id="9", type="generic", status="queued"))
        session.commit()

    assert claim_next_job(engine) is None


def test_worker_retries_then_fails_after_max_attempts(tmp_path: Path) -> None:
    engine = _engine(tmp_path, "worker-fail.db")
    _insert_job(engine, "2", None, max_attempts=2)

    job = claim_next_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=_boom("boom-1"))

    row = _job_row(engine, "2")
    assert row[0] == "queued"
    assert row[1] == 1
    assert "boom-1" in str(row[3])

    job = claim_next_job(engine)
    assert job is not None
    _process_claimed_job(engine, job, runner=_boom("boom-2"))

    row = _job_row(engine, "2")
    assert row[0] == "failed"
    assert row[1] == 2
    assert "boom-2" in str(row[3])
    assert claim_next_job(engine) is None


def test_reindex_runner_rebuilds_source_chunks(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("RAG_EMBED_PROVIDER", "hash")
    monkeypatch.setenv("RAG_CHUNK_SIZE", "100")
    monkeypatch.setenv("RAG_CHUNK_OVERLAP", "20")
    get_settings.cache_clear()

    engine = _engine(tmp_path, "worker-reindex.db")
    store = SqlSourceStore(engine)
    document_id = store.create_source(
        SourceKind.DOCUMENT, {"filename": "a.txt", "content_text": "alpha " * 50}
    )
    _insert_job(engine, "1", f'{{"kind": "document", "source_id": {document_id}}}')
    _insert_job(engine, "2", '{"kind": "document", "source_id": 999}', max_attempts=1)

    try:
        processed = run_pending_jobs(engine, runner=make_reindex_runner(engine))
    finally:
        get_settings.cache_clear()

    assert processed == 2
    succeeded = _job_row(engine, "1")
    assert succeeded[0] == "succeeded"
    assert "\"chunks\": 4" in str(succeeded[2])
    failed = _job_row(engine, "2")
    assert failed[0] == "failed"
    assert "no stored text" in str(failed[3])

    with Session(engine) as session:
        assert session.scalar(select(func.count()).select_from(ChunkRecord)) == 4


def test_reindex_runner_rejects_malformed_payload(tmp_path: Path) -> None:
    engine = _engine(tmp_path, "worker-payload.db")
    runner = make_reindex_runner(engine)

    with pytest.raises(ValueError, match="requires a payload"):
        runner(None)
    with pytest.raises(ValueError, match="invalid source_reindex payload"):
        runner({"kind": "podcast", "source_id": 1})
