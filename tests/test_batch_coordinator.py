from __future__ import annotations

import asyncio
import json
import threading
import time

import pytest

from invoice_audit.batch.buffers import ChangeBuffer, SeenInvoiceNumbers
from invoice_audit.batch.coordinator import (
    CONTENT_MISSING,
    NOTHING_RECOGNIZED,
    QUOTA_EXHAUSTED,
    BatchCoordinator,
)
from invoice_audit.extraction.client import ExtractionClient
from invoice_audit.extraction.gemini_backend import ExtractionRequest, ExtractionResponse
from invoice_audit.http_client import HttpRequestError
from invoice_audit.models import BatchProgress, DocumentEntry, DocumentStatus, ModelTier
from invoice_audit.session import AuditSession, UploadedFile


def _invoice_text(number: str, total: int = 1050) -> str:
    return json.dumps(
        [
            {
                "invoice_number": number,
                "invoice_date": "2024-01-15",
                "amount_sales": total - 50,
                "amount_tax": 50,
                "amount_total": total,
                "verification": {"logic_is_valid": True},
            }
        ]
    )


class ContentBackend:
    """Answers by document content; tracks how many calls run at once."""

    def __init__(
        self,
        answers: dict[bytes, str | Exception],
        delay_s: float = 0.0,
        barrier: threading.Barrier | None = None,
    ) -> None:
        self.answers = answers
        self.delay_s = delay_s
        self.barrier = barrier
        self.active = 0
        self.max_active = 0
        self.seen_documents: list[bytes] = []
        self._lock = threading.Lock()

    def generate(self, model: str, request: ExtractionRequest) -> ExtractionResponse:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.seen_documents.append(request.document)
        try:
            if self.barrier is not None:
                self.barrier.wait()
            if self.delay_s:
                time.sleep(self.delay_s)
            answer = self.answers[request.document]
            if isinstance(answer, Exception):
                raise answer
            return ExtractionResponse(text=answer)
        finally:
            with self._lock:
                self.active -= 1


async def _no_sleep(delay: float) -> None:
    return None


def _client(backend: ContentBackend) -> ExtractionClient:
    return ExtractionClient(backend, fast_model="fast", accurate_model="accurate", sleep=_no_sleep)


def _session_with(*files: tuple[str, bytes]) -> tuple[AuditSession, list[DocumentEntry]]:
    session = AuditSession("batch")
    queue = session.register_uploads([UploadedFile(name, content) for name, content in files])
    return session, queue


def _coordinator(backend: ContentBackend, session: AuditSession, **kwargs: object) -> BatchCoordinator:
    return BatchCoordinator(
        _client(backend),
        model_tier=ModelTier.FAST,
        seen=session.seen_invoice_numbers,
        on_changes=session.apply_changes,
        preprocess_images=False,
        **kwargs,  # type: ignore[arg-type]
    )


def test_batch_records_success_and_error_outcomes() -> None:
    backend = ContentBackend(
        {
            b"doc-1": _invoice_text("AB11111111"),
            b"doc-2": "[]",
            b"doc-3": HttpRequestError("HTTP 400 bad request", status=400),
        }
    )
    session, queue = _session_with(("V001.pdf", b"doc-1"), ("V002.pdf", b"doc-2"), ("V003.pdf", b"doc-3"))

    summary = asyncio.run(_coordinator(backend, session, concurrency=3).run(queue))

    assert (summary.total, summary.completed, summary.succeeded, summary.failed) == (3, 3, 1, 2)
    docs = session.documents
    assert docs["V001"].status == DocumentStatus.SUCCESS
    assert docs["V001"].extracted_invoices[0].invoice_number == "AB11111111"
    assert docs["V001"].error_message is None
    assert docs["V002"].status == DocumentStatus.ERROR
    assert docs["V002"].error_message == NOTHING_RECOGNIZED
    assert docs["V003"].status == DocumentStatus.ERROR
    assert "400" in (docs["V003"].error_message or "")


def test_quota_exhaustion_gets_a_fixed_message() -> None:
    backend = ContentBackend({b"doc-1": HttpRequestError("HTTP 429 quota", status=429)})
    session, queue = _session_with(("V001.pdf", b"doc-1"))

    asyncio.run(_coordinator(backend, session).run(queue))

    assert session.documents["V001"].status == DocumentStatus.ERROR
    assert session.documents["V001"].error_message == QUOTA_EXHAUSTED
    assert len(backend.seen_documents) == 3


def test_missing_content_fails_without_calling_backend() -> None:
    backend = ContentBackend({})
    session, queue = _session_with(("V001.pdf", b"doc-1"))
    queue[0].content = None

    asyncio.run(_coordinator(backend, session).run(queue))

    assert session.documents["V001"].error_message == CONTENT_MISSING
    assert backend.seen_documents == []


def test_repeated_invoice_number_gets_a_warning() -> None:
    backend = ContentBackend({b"doc-1": _invoice_text("AB11111111"), b"doc-2": _invoice_text("ab-1111 1111")})
    session, queue = _session_with(("V001.pdf", b"doc-1"), ("V002.pdf", b"doc-2"))

    asyncio.run(_coordinator(backend, session, concurrency=1).run(queue))

    first = session.documents["V001"].extracted_invoices[0]
    second = session.documents["V002"].extracted_invoices[0]
    assert not any("already seen" in line for line in first.trace_logs)
    assert any("already seen" in line for line in second.trace_logs)
    assert "AB11111111" in session.seen_invoice_numbers


def test_final_flush_delivers_changes_with_long_interval() -> None:
    backend = ContentBackend({b"doc-1": _invoice_text("AB11111111")})
    session, queue = _session_with(("V001.pdf", b"doc-1"))
    delivered: list[dict] = []

    def on_changes(changes: dict) -> None:
        delivered.append(changes)
        session.apply_changes(changes)

    coordinator = BatchCoordinator(
        _client(backend),
        model_tier=ModelTier.FAST,
        flush_interval_s=60.0,
        on_changes=on_changes,
        preprocess_images=False,
    )
    asyncio.run(coordinator.run(queue))

    assert len(delivered) == 1
    assert delivered[0]["V001"]["status"] == DocumentStatus.SUCCESS
    assert len(coordinator.buffer) == 0
    assert session.documents["V001"].status == DocumentStatus.SUCCESS


def test_concurrency_limit_is_respected() -> None:
    files = [(f"V{n:03d}.pdf", f"doc-{n}".encode()) for n in range(6)]
    backend = ContentBackend(
        {content: _invoice_text(f"AB{n:08d}") for n, (_, content) in enumerate(files)}, delay_s=0.05
    )
    session, queue = _session_with(*files)
    progress: list[BatchProgress] = []

    summary = asyncio.run(_coordinator(backend, session, concurrency=2, on_progress=progress.append).run(queue))

    assert summary.succeeded == 6
    assert 1 <= backend.max_active <= 2
    assert progress[-1].status == "COMPLETED"
    assert progress[-1].current == 6
    assert all(doc.status == DocumentStatus.SUCCESS for doc in session.documents.values())


def test_preprocessing_failure_falls_back_to_original_bytes() -> None:
    backend = ContentBackend({b"raw-image": _invoice_text("AB11111111")})
    session = AuditSession("batch")
    queue = session.register_uploads([UploadedFile("V001.png", b"raw-image", "image/png")])

    def broken_enhancer(data: bytes, mime_type: str) -> bytes:
        raise OSError("cannot decode")

    coordinator = BatchCoordinator(
        _client(backend),
        model_tier=ModelTier.FAST,
        on_changes=session.apply_changes,
        preprocess_images=True,
        enhancer=broken_enhancer,
    )
    asyncio.run(coordinator.run(queue))

    assert backend.seen_documents == [b"raw-image"]
    assert session.documents["V001"].status == DocumentStatus.SUCCESS


def test_invalid_concurrency_is_rejected() -> None:
    with pytest.raises(ValueError):
        BatchCoordinator(_client(ContentBackend({})), concurrency=0)


def test_change_buffer_merges_and_drains() -> None:
    buffer = ChangeBuffer()
    buffer.record("a", status=DocumentStatus.PROCESSING)
    buffer.record("a", status=DocumentStatus.SUCCESS, error_message=None)

    assert buffer.drain() == {"a": {"status": DocumentStatus.SUCCESS, "error_message": None}}
    assert buffer.drain() == {}


def test_seen_invoice_numbers_check_and_add() -> None:
    seen = SeenInvoiceNumbers(["AB-11111111"])

    assert seen.check_and_add("ab11111111")
    assert not seen.check_and_add("CD22222222")
    assert seen.check_and_add("CD22222222")
    assert not seen.check_and_add(None)
    assert seen.snapshot() == ["AB11111111", "CD22222222"]


def test_configured_concurrency_is_reached() -> None:
    files = [(f"V{n:03d}.pdf", f"doc-{n}".encode()) for n in range(20)]
    # Every call waits until all twenty are in flight at once.
    backend = ContentBackend(
        {content: _invoice_text(f"AB{n:08d}") for n, (_, content) in enumerate(files)},
        barrier=threading.Barrier(20, timeout=10),
    )
    session, queue = _session_with(*files)

    summary = asyncio.run(_coordinator(backend, session, concurrency=20).run(queue))

    assert summary.succeeded == 20
    assert backend.max_active == 20


def test_failed_change_delivery_is_retried_and_batch_completes() -> None:
    files = [(f"V{n:03d}.pdf", f"doc-{n}".encode()) for n in range(3)]
    backend = ContentBackend(
        {content: _invoice_text(f"AB{n:08d}") for n, (_, content) in enumerate(files)}, delay_s=0.1
    )
    session, queue = _session_with(*files)
    calls: list[int] = []

    def on_changes(changes: dict) -> None:
        calls.append(len(changes))
        if len(calls) == 1:
            raise OSError("disk full")
        session.apply_changes(changes)

    coordinator = BatchCoordinator(
        _client(backend),
        model_tier=ModelTier.FAST,
        concurrency=3,
        flush_interval_s=0.01,
        on_changes=on_changes,
        preprocess_images=False,
    )
    summary = asyncio.run(coordinator.run(queue))

    assert summary.succeeded == 3
    assert len(calls) >= 2
    assert len(coordinator.buffer) == 0
    assert all(doc.status == DocumentStatus.SUCCESS for doc in session.documents.values())


def test_flush_puts_changes_back_when_delivery_fails() -> None:
    def on_changes(changes: dict) -> None:
        raise OSError("disk full")

    coordinator = BatchCoordinator(_client(ContentBackend({})), on_changes=on_changes)
    coordinator.buffer.record("V001", status=DocumentStatus.PROCESSING)

    with pytest.raises(OSError):
        coordinator.flush()
    coordinator.buffer.record("V001", status=DocumentStatus.SUCCESS)

    assert coordinator.buffer.drain() == {"V001": {"status": DocumentStatus.SUCCESS}}


def test_change_buffer_restore_keeps_newer_values() -> None:
    buffer = ChangeBuffer()
    buffer.record("a", status=DocumentStatus.PROCESSING)
    taken = buffer.drain()
    buffer.record("a", status=DocumentStatus.SUCCESS)
    buffer.record("b", status=DocumentStatus.PROCESSING)

    buffer.restore(taken)

    assert buffer.drain() == {"a": {"status": DocumentStatus.SUCCESS}, "b": {"status": DocumentStatus.PROCESSING}}
