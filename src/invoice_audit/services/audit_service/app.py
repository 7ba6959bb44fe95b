from __future__ import annotations

from urllib.parse import quote

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile
from pydantic import BaseModel, Field

from ...extraction.costs import UsageSummary
from ...ledger.importer import LedgerFormatError, LedgerImportResult
from ...logging_setup import configure_logging
from ...models import AuditRow, BatchProgress, BatchSummary, DocumentEntry, ExtractedInvoice, SessionMeta
from ...reconciliation.engine import accuracy
from ...reconciliation.review import ReviewItem
from ...session import UploadedFile
from .orchestrator import AuditOrchestrator


class NewSessionRequest(BaseModel):
    name: str = Field(min_length=1)


class ReviewedRequest(BaseModel):
    reviewed: bool


class DocumentUploadResult(BaseModel):
    queued: list[DocumentEntry]
    batch: BatchSummary | None = None


class AuditResult(BaseModel):
    accuracy: float
    rows: list[AuditRow]


def create_app(orchestrator: AuditOrchestrator | None = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="Invoice Audit Service", version="0.1.0")
    app.state.orchestrator = orchestrator

    def get(request: Request) -> AuditOrchestrator:
        if request.app.state.orchestrator is None:
            request.app.state.orchestrator = AuditOrchestrator.detect()
        return request.app.state.orchestrator

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok"}

    @app.get("/sessions", response_model=list[SessionMeta])
    def list_sessions(request: Request) -> list[SessionMeta]:
        return get(request).list_sessions()

    @app.post("/sessions", response_model=SessionMeta)
    def new_session(req: NewSessionRequest, request: Request) -> SessionMeta:
        return get(request).new_session(req.name)

    @app.post("/sessions/{session_id}/open", response_model=SessionMeta)
    def open_session(session_id: str, request: Request) -> SessionMeta:
        try:
            return get(request).open_session(session_id)
        except FileNotFoundError:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")

    @app.post("/ledger", response_model=LedgerImportResult)
    async def import_ledger(request: Request, ledger: UploadFile = File(...)) -> LedgerImportResult:
        content = await ledger.read()
        try:
            return get(request).import_ledger(content, filename=ledger.filename)
        except LedgerFormatError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.put("/ledger/{voucher_id}/reviewed")
    def set_reviewed(voucher_id: str, req: ReviewedRequest, request: Request) -> dict:
        updated = get(request).set_reviewed(voucher_id, req.reviewed)
        if not updated:
            raise HTTPException(status_code=404, detail=f"Unknown voucher: {voucher_id}")
        return {"updated": updated}

    @app.post("/documents", response_model=DocumentUploadResult)
    async def upload_documents(
        request: Request,
        files: list[UploadFile] = File(...),
        run: bool = Form(True),
    ) -> DocumentUploadResult:
        uploads = [
            UploadedFile(filename=f.filename or "document", content=await f.read(), mime_type=f.content_type)
            for f in files
        ]
        orchestrator = get(request)
        queued = orchestrator.upload_documents(uploads)
        batch = await orchestrator.run_batch(queued) if run and queued else None
        return DocumentUploadResult(queued=queued, batch=batch)

    @app.post("/batch/run", response_model=BatchSummary)
    async def run_batch(request: Request) -> BatchSummary:
        return await get(request).run_batch()

    @app.get("/batch/progress", response_model=BatchProgress)
    def batch_progress(request: Request) -> BatchProgress:
        return get(request).progress

    @app.put("/documents/{document_id}/invoices/{index}", response_model=DocumentEntry)
    def update_invoice(document_id: str, index: int, invoice: ExtractedInvoice, request: Request) -> DocumentEntry:
        try:
            return get(request).update_invoice(document_id, index, invoice)
        except KeyError:
            raise HTTPException(status_code=404, detail=f"Unknown document: {document_id}")
        except IndexError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @app.get("/audit", response_model=AuditResult)
    def audit(request: Request) -> AuditResult:
        rows = get(request).audit_rows()
        return AuditResult(accuracy=accuracy(rows), rows=rows)

    @app.get("/review", response_model=list[ReviewItem])
    def review(request: Request) -> list[ReviewItem]:
        return get(request).review_items()

    @app.get("/usage", response_model=UsageSummary)
    def usage(request: Request) -> UsageSummary:
        return get(request).usage()

    @app.get("/report.csv")
    def report(request: Request, locale: str | None = None) -> Response:
        filename, content = get(request).export_report(locale=locale)
        return Response(
            content=content,
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
        )

    return app


app = create_app()
