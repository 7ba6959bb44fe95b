from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path

from ...batch.coordinator import BatchCoordinator
from ...batch.buffers import DocumentChanges
from ...config import AuditSettings
from ...extraction.client import ExtractionClient
from ...extraction.costs import UsageSummary, models_used, summarize_usage
from ...ledger.importer import LedgerImporter, LedgerImportResult
from ...models import (
    AuditRow,
    BatchProgress,
    BatchSummary,
    DocumentEntry,
    DocumentStatus,
    ExtractedInvoice,
    ModelTier,
    SessionMeta,
)
from ...project_paths import ProjectPaths
from ...reconciliation.engine import ReconciliationEngine, accuracy
from ...reconciliation.review import ReviewItem, review_queue
from ...report.exporter import RunSummary, export_audit_report_bytes, report_filename
from ...rules.loader import RuleSet
from ...session import AuditSession, UploadedFile
from ...storage import BlobStore, SessionStore


logger = logging.getLogger(__name__)

DEFAULT_SESSION_NAME = "default"


@dataclass(slots=True)
class AuditOrchestrator:
    paths: ProjectPaths
    ruleset: RuleSet
    settings: AuditSettings
    store: SessionStore
    client: ExtractionClient
    importer: LedgerImporter
    engine: ReconciliationEngine
    session: AuditSession | None = None
    progress: BatchProgress = field(default_factory=BatchProgress)
    last_batch: BatchSummary | None = None

    @classmethod
    def detect(cls, *, settings: AuditSettings | None = None) -> "AuditOrchestrator":
        paths = ProjectPaths.detect()
        return cls.build(paths, RuleSet.load_from_dir(paths.rules_dir), settings or AuditSettings.from_env())

    @classmethod
    def build(
        cls,
        paths: ProjectPaths,
        ruleset: RuleSet,
        settings: AuditSettings,
        *,
        client: ExtractionClient | None = None,
    ) -> "AuditOrchestrator":
        paths.ensure_dirs()
        store = SessionStore(paths.sessions_dir, BlobStore(paths.blobs_dir))
        if client is None:
            client = ExtractionClient.from_settings(
                settings,
                sellers=ruleset.sellers,
                ghost_tolerance=ruleset.audit.ghost_total_tolerance,
            )
        return cls(
            paths=paths,
            ruleset=ruleset,
            settings=settings,
            store=store,
            client=client,
            importer=LedgerImporter(ruleset.ledger_columns),
            engine=ReconciliationEngine(required_buyer_tax_id=ruleset.audit.required_buyer_tax_id),
        )

    # Sessions

    def current_session(self) -> AuditSession:
        if self.session is None:
            sessions = self.store.list_sessions()
            if sessions:
                self.session = self.store.load(sessions[0].id)
                logger.info("Resumed session %s (%s)", self.session.name, self.session.id)
            else:
                self.session = AuditSession(DEFAULT_SESSION_NAME)
        return self.session

    def new_session(self, name: str) -> SessionMeta:
        self.session = AuditSession(name)
        self.progress = BatchProgress()
        self.last_batch = None
        self._save()
        return self.session.meta()

    def open_session(self, session_id: str) -> SessionMeta:
        self.session = self.store.load(session_id)
        self.progress = BatchProgress()
        self.last_batch = None
        return self.session.meta()

    def list_sessions(self) -> list[SessionMeta]:
        return self.store.list_sessions()

    # Ledger

    def import_ledger(self, data: bytes | Path, *, filename: str | None = None) -> LedgerImportResult:
        result = self.importer.import_file(data, filename=filename)
        if result.status == "ok":
            self.current_session().replace_ledger(result.records)
            self._save()
        return result

    def set_reviewed(self, voucher_id: str, reviewed: bool) -> int:
        changed = self.current_session().set_reviewed(voucher_id, reviewed)
        if changed:
            self._save()
        return changed

    # Documents

    def upload_documents(self, files: list[UploadedFile]) -> list[DocumentEntry]:
        queue = self.current_session().register_uploads(files)
        self._save()
        return queue

    def pending_documents(self) -> list[DocumentEntry]:
        session = self.current_session()
        out: list[DocumentEntry] = []
        for document in session.documents.values():
            if document.status in {DocumentStatus.PENDING, DocumentStatus.ERROR}:
                self.store.load_content(session, document.id)
                out.append(document)
        return out

    async def run_batch(self, documents: list[DocumentEntry] | None = None) -> BatchSummary:
        session = self.current_session()
        items = documents if documents is not None else self.pending_documents()

        def apply(changes: DocumentChanges) -> None:
            session.apply_changes(changes)
            self._save()

        def publish(progress: BatchProgress) -> None:
            self.progress = progress

        coordinator = BatchCoordinator(
            self.client,
            concurrency=self.settings.concurrency,
            flush_interval_s=self.settings.flush_interval_s,
            model_tier=self.settings.model_tier,
            seen=session.seen_invoice_numbers,
            on_changes=apply,
            on_progress=publish,
            preprocess_images=self.settings.preprocess_images,
        )
        self.last_batch = await coordinator.run(items, known_sellers=session.known_seller_map())
        return self.last_batch

    def update_invoice(self, document_id: str, index: int, invoice: ExtractedInvoice) -> DocumentEntry:
        entry = self.current_session().update_invoice(document_id, index, invoice)
        self._save()
        return entry

    # Results

    def audit_rows(self) -> list[AuditRow]:
        session = self.current_session()
        return self.engine.reconcile(session.ledger_records, session.documents.values())

    def review_items(self) -> list[ReviewItem]:
        return review_queue(
            self.current_session().documents.values(),
            required_buyer_tax_id=self.ruleset.audit.required_buyer_tax_id,
        )

    def usage(self) -> UsageSummary:
        return summarize_usage(self.current_session().documents.values())

    def model_label(self) -> str:
        used = models_used(self.current_session().documents.values())
        if used:
            return " + ".join(used)
        tier = self.settings.model_tier
        if tier == ModelTier.HYBRID:
            return f"{self.settings.fast_model} + {self.settings.accurate_model}"
        return self.settings.model_for(tier)

    def export_report(self, *, locale: str | None = None) -> tuple[str, bytes]:
        session = self.current_session()
        rows = self.audit_rows()
        summary = RunSummary(
            project_name=session.name,
            model=self.model_label(),
            accuracy=accuracy(rows),
            duration_s=self.last_batch.duration_s if self.last_batch else None,
            row_count=len(rows),
        )
        content = export_audit_report_bytes(
            rows,
            summary,
            locale=locale or self.ruleset.audit.report_locale,
            required_buyer_tax_id=self.ruleset.audit.required_buyer_tax_id,
        )
        filename = report_filename(session.name, date.today())
        (self.paths.reports_dir / filename).write_bytes(content)
        return filename, content

    def _save(self) -> None:
        if self.session is not None:
            self.store.save(self.session)
