from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath

from .batch.buffers import DocumentChanges, SeenInvoiceNumbers
from .models import (
    DocumentEntry,
    DocumentStatus,
    ExtractedInvoice,
    LedgerRecord,
    SessionMeta,
    SessionSnapshot,
)
from .rules.sellers import session_seller_map


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class UploadedFile:
    filename: str
    content: bytes
    mime_type: str | None = None


def document_id_for(filename: str) -> str:
    name = PurePath(filename).name
    stem = PurePath(name).stem
    return stem or name


def guess_mime_type(filename: str) -> str:
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or "application/octet-stream"


class AuditSession:
    def __init__(self, name: str, *, session_id: str | None = None) -> None:
        self.id = session_id or str(uuid.uuid4())
        self.name = name
        self.created_at = _now()
        self.updated_at = self.created_at
        self.ledger_records: list[LedgerRecord] = []
        self.documents: dict[str, DocumentEntry] = {}
        self.seen_invoice_numbers = SeenInvoiceNumbers()
        # Document ids whose content has not been written to the blob store yet.
        self.unsaved_content: set[str] = set()

    def replace_ledger(self, records: list[LedgerRecord]) -> None:
        self.ledger_records = list(records)
        self._touch()

    def set_reviewed(self, voucher_id: str, reviewed: bool) -> int:
        changed = 0
        for record in self.ledger_records:
            if record.voucher_id == voucher_id:
                record.reviewed_flag = reviewed
                changed += 1
        if changed:
            self._touch()
        return changed

    def known_seller_map(self) -> dict[str, str]:
        return session_seller_map(self.ledger_records)

    def register_uploads(self, files: list[UploadedFile]) -> list[DocumentEntry]:
        """Add uploaded files to the session and return the entries that need extraction."""
        queue: list[DocumentEntry] = []
        uploaded_at = _now()
        for upload in files:
            filename = PurePath(upload.filename).name
            mime_type = upload.mime_type or guess_mime_type(filename)
            existing = self._by_filename(filename)

            if existing is not None:
                if existing.status == DocumentStatus.SUCCESS or existing.extracted_invoices:
                    existing.content = upload.content
                    existing.mime_type = mime_type
                    existing.uploaded_at = uploaded_at
                    self.unsaved_content.add(existing.id)
                    continue
                entry = DocumentEntry(
                    id=existing.id,
                    filename=filename,
                    mime_type=mime_type,
                    content=upload.content,
                    uploaded_at=uploaded_at,
                )
                self.documents[entry.id] = entry
                queue.append(entry)
                self.unsaved_content.add(entry.id)
                continue

            entry = DocumentEntry(
                id=self._unique_id(filename),
                filename=filename,
                mime_type=mime_type,
                content=upload.content,
                uploaded_at=uploaded_at,
            )
            self.documents[entry.id] = entry
            queue.append(entry)
            self.unsaved_content.add(entry.id)

        self._touch()
        return queue

    def apply_changes(self, changes: DocumentChanges) -> None:
        for document_id, fields in changes.items():
            entry = self.documents.get(document_id)
            if entry is None:
                continue
            for name, value in fields.items():
                setattr(entry, name, value)
        if changes:
            self._touch()

    def update_invoice(self, document_id: str, index: int, invoice: ExtractedInvoice) -> DocumentEntry:
        entry = self.documents[document_id]
        invoices = list(entry.extracted_invoices)
        if 0 <= index < len(invoices):
            invoices[index] = invoice
        elif index == len(invoices):
            invoices.append(invoice)
        else:
            raise IndexError(f"Document {document_id} has no invoice at index {index}")
        entry.extracted_invoices = invoices
        self._touch()
        return entry

    def remove_document(self, document_id: str) -> DocumentEntry | None:
        entry = self.documents.pop(document_id, None)
        self.unsaved_content.discard(document_id)
        if entry is not None:
            self._touch()
        return entry

    def meta(self) -> SessionMeta:
        return SessionMeta(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            updated_at=self.updated_at,
            document_count=len(self.documents),
            ledger_count=len(self.ledger_records),
        )

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            updated_at=self.updated_at,
            ledger_records=[r.model_copy(deep=True) for r in self.ledger_records],
            documents=[d.model_copy(update={"content": None}, deep=True) for d in self.documents.values()],
            seen_invoice_numbers=self.seen_invoice_numbers.snapshot(),
        )

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot) -> "AuditSession":
        session = cls(snapshot.name, session_id=snapshot.id)
        session.created_at = snapshot.created_at
        session.updated_at = snapshot.updated_at
        session.ledger_records = list(snapshot.ledger_records)
        session.documents = {d.id: d.model_copy(update={"content": None}) for d in snapshot.documents}
        session.seen_invoice_numbers = SeenInvoiceNumbers(snapshot.seen_invoice_numbers)
        return session

    def _by_filename(self, filename: str) -> DocumentEntry | None:
        for entry in self.documents.values():
            if entry.filename == filename:
                return entry
        return None

    def _unique_id(self, filename: str) -> str:
        base = document_id_for(filename)
        if base not in self.documents:
            return base
        extension = PurePath(filename).suffix.lstrip(".").casefold()
        first = f"{base}_{extension}" if extension else base
        candidate = first
        n = 2
        while candidate in self.documents:
            candidate = f"{first}_{n}"
            n += 1
        return candidate

    def _touch(self) -> None:
        self.updated_at = _now()
