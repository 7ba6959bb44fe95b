from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel

from ..models import DocumentEntry, DocumentType


class ReviewItem(BaseModel):
    document_id: str
    invoice_index: int
    reasons: list[str]


def review_queue(documents: Iterable[DocumentEntry], *, required_buyer_tax_id: str | None = None) -> list[ReviewItem]:
    """Extracted invoices a human should look at, addressed by document id and position."""
    items: list[ReviewItem] = []
    for document in sorted(documents, key=lambda d: d.id):
        for index, invoice in enumerate(document.extracted_invoices):
            if invoice.manually_verified:
                continue
            reasons: list[str] = []
            if (
                required_buyer_tax_id
                and invoice.document_type != DocumentType.COMMERCIAL_INVOICE
                and invoice.buyer_tax_id
                and invoice.buyer_tax_id != required_buyer_tax_id
            ):
                reasons.append("buyer_id_error")
            if not invoice.verification.logic_is_valid:
                reasons.append("logic_invalid")
            if invoice.has_unclear_seller_tax_id:
                reasons.append("tax_id_unclear")
            if reasons:
                items.append(ReviewItem(document_id=document.id, invoice_index=index, reasons=reasons))
    return items
