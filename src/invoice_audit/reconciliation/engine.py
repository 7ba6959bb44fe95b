from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from ..models import (
    AMOUNT_TOLERANCE,
    AuditRow,
    AuditStatus,
    DocumentEntry,
    DocumentType,
    ExtractedInvoice,
    LedgerRecord,
    MatchedInvoice,
    amounts_consistent,
)
from ..rules.normalization import match_key, numbers_match, tax_ids_compatible


logger = logging.getLogger(__name__)

REASON_AMOUNT = "amount"
REASON_TAX_ID = "tax_id"
REASON_BUYER_ID = "buyer_id_error"
REASON_TAX_ID_UNCLEAR = "tax_id_unclear"
REASON_COUNT = "count_mismatch"
REASON_NO_MATCH = "no_match_found"

DIFF_REASONS = (
    REASON_AMOUNT,
    REASON_TAX_ID,
    REASON_BUYER_ID,
    REASON_TAX_ID_UNCLEAR,
    REASON_COUNT,
    REASON_NO_MATCH,
)


def document_matches_voucher(document_id: str, voucher_id: str) -> bool:
    if not voucher_id:
        return False
    return (
        document_id == voucher_id
        or document_id.startswith(voucher_id + "-")
        or document_id.startswith(voucher_id + "_")
    )


def owning_voucher(document_id: str, voucher_ids: Iterable[str]) -> str | None:
    """The longest voucher id the document belongs to, so 'V001-2' goes to 'V001' rather than 'V0'."""
    best: str | None = None
    for voucher_id in voucher_ids:
        if document_matches_voucher(document_id, voucher_id):
            if best is None or len(voucher_id) > len(best):
                best = voucher_id
    return best


def flatten_invoices(documents: Sequence[DocumentEntry]) -> list[MatchedInvoice]:
    """All extracted invoices with their origin, counting exact repeats (same number and total) once."""
    out: list[MatchedInvoice] = []
    seen: set[tuple[str, int]] = set()
    for document in documents:
        for index, invoice in enumerate(document.extracted_invoices):
            if invoice.invoice_number:
                key = (match_key(invoice.invoice_number), invoice.amount_total)
                if key in seen:
                    continue
                seen.add(key)
            out.append(MatchedInvoice(document_id=document.id, invoice_index=index, invoice=invoice))
    return out


def aggregate_invoices(matched: Sequence[MatchedInvoice]) -> ExtractedInvoice:
    first = matched[0].invoice
    numbers: list[str] = []
    for item in matched:
        number = item.invoice.invoice_number
        if number and number not in numbers:
            numbers.append(number)

    sales = sum(m.invoice.amount_sales for m in matched)
    tax = sum(m.invoice.amount_tax for m in matched)
    total = sum(m.invoice.amount_total for m in matched)

    display = first.model_copy(deep=True)
    display.invoice_number = " / ".join(numbers) or None
    display.amount_sales = sales
    display.amount_tax = tax
    display.amount_total = total
    display.verification.logic_is_valid = amounts_consistent(sales, tax, total)
    display.trace_logs = [log for m in matched for log in m.invoice.trace_logs]
    display.usage = None
    return display


def accuracy(rows: Iterable[AuditRow]) -> float:
    considered = [r for r in rows if r.audit_status != AuditStatus.MISSING_DOCUMENT]
    if not considered:
        return 0.0
    return sum(1 for r in considered if r.audit_status == AuditStatus.MATCH) / len(considered)


class ReconciliationEngine:
    def __init__(self, *, required_buyer_tax_id: str | None = None, tolerance: int = AMOUNT_TOLERANCE) -> None:
        self.required_buyer_tax_id = required_buyer_tax_id or None
        self.tolerance = tolerance

    def reconcile(self, ledger_records: Sequence[LedgerRecord], documents: Iterable[DocumentEntry]) -> list[AuditRow]:
        docs = sorted(documents, key=lambda d: d.id)
        voucher_ids = {r.voucher_id for r in ledger_records}

        by_voucher: dict[str, list[DocumentEntry]] = {}
        claimed: set[str] = set()
        for document in docs:
            owner = owning_voucher(document.id, voucher_ids)
            if owner is None:
                continue
            by_voucher.setdefault(owner, []).append(document)
            claimed.add(document.id)

        rows = [self._audit_record(record, by_voucher.get(record.voucher_id, [])) for record in ledger_records]
        for document in docs:
            if document.id not in claimed:
                rows.append(
                    AuditRow(
                        key=f"extra_{document.id}",
                        voucher_id=document.id,
                        matched_documents=[document],
                        primary_document=document,
                        display_extraction=document.extracted_invoices[0] if document.extracted_invoices else None,
                        audit_status=AuditStatus.EXTRA_DOCUMENT,
                    )
                )

        rows.sort(key=lambda r: r.voucher_id)
        _dedupe_keys(rows)
        logger.debug("Reconciled %d ledger records against %d documents", len(ledger_records), len(docs))
        return rows

    def _audit_record(self, record: LedgerRecord, documents: list[DocumentEntry]) -> AuditRow:
        key = f"{record.voucher_id}_{''.join(record.invoice_numbers)}_{record.amount_total}"
        if not documents:
            return AuditRow(
                key=key,
                voucher_id=record.voucher_id,
                ledger_record=record,
                audit_status=AuditStatus.MISSING_DOCUMENT,
            )

        pairs = flatten_invoices(documents)
        candidates = [p for p in pairs if not p.invoice.is_not_invoice]
        matched = [
            p
            for p in candidates
            if any(numbers_match(p.invoice.invoice_number, n) for n in record.invoice_numbers)
        ]
        if not matched and len(record.invoice_numbers) == 1 and len(candidates) == 1:
            matched = list(candidates)

        row = AuditRow(
            key=key,
            voucher_id=record.voucher_id,
            ledger_record=record,
            matched_documents=documents,
            primary_document=documents[0],
            audit_status=AuditStatus.MATCH,
        )

        if not matched:
            fallback = pairs[0].invoice if pairs else None
            row.display_extraction = fallback
            row.audit_status = AuditStatus.MISMATCH
            row.diff_reasons = [REASON_NO_MATCH]
            return row

        row.matched_invoices = matched
        row.display_extraction = aggregate_invoices(matched)
        row.diff_reasons = self._diff_reasons(record, matched, row.display_extraction)
        if row.diff_reasons:
            row.audit_status = AuditStatus.MISMATCH
        return row

    def _diff_reasons(
        self, record: LedgerRecord, matched: list[MatchedInvoice], display: ExtractedInvoice
    ) -> list[str]:
        reasons: list[str] = []
        domestic = [m.invoice for m in matched if m.invoice.document_type != DocumentType.COMMERCIAL_INVOICE]

        if abs(display.amount_total - record.amount_total) > self.tolerance:
            reasons.append(REASON_AMOUNT)

        ledger_tax_id = record.seller_tax_id.strip()
        if ledger_tax_id and any(
            inv.seller_tax_id and not tax_ids_compatible(inv.seller_tax_id, ledger_tax_id) for inv in domestic
        ):
            reasons.append(REASON_TAX_ID)

        if self.required_buyer_tax_id and any(
            (inv.buyer_tax_id or "").strip() != self.required_buyer_tax_id for inv in domestic
        ):
            reasons.append(REASON_BUYER_ID)

        if any(m.invoice.has_unclear_seller_tax_id for m in matched):
            reasons.append(REASON_TAX_ID_UNCLEAR)

        if len(record.invoice_numbers) != len(matched):
            reasons.append(REASON_COUNT)

        return reasons


def _dedupe_keys(rows: list[AuditRow]) -> None:
    counts: dict[str, int] = {}
    for row in rows:
        n = counts.get(row.key, 0) + 1
        counts[row.key] = n
        if n > 1:
            row.key = f"{row.key}#{n}"
