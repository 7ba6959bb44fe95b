from __future__ import annotations

import json
import logging
from collections.abc import Mapping

from pydantic import ValidationError

from ..models import ErrorCode, ExtractedInvoice, amounts_consistent
from ..rules.normalization import normalize_invoice_number
from ..rules.sellers import lookup_seller_tax_id


logger = logging.getLogger(__name__)

GHOST_TOTAL_TOLERANCE = 5
REQUIRED_FIELDS = ("invoice_number", "invoice_date")


class ResponseFormatError(ValueError):
    pass


def parse_response_text(text: str) -> list[ExtractedInvoice]:
    """Validate the model's JSON answer into invoices; a bare object counts as a one-element array."""
    if not text or not text.strip():
        return []
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(f"Extraction response is not valid JSON: {exc}") from exc

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ResponseFormatError(f"Expected a JSON array of invoices, got {type(data).__name__}")

    invoices: list[ExtractedInvoice] = []
    for idx, item in enumerate(data):
        if not isinstance(item, dict):
            logger.warning("Dropping non-object extraction entry #%d", idx)
            continue
        try:
            invoices.append(ExtractedInvoice.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping malformed extraction entry #%d: %s", idx, exc.errors()[:3])
    return invoices


def postprocess_invoice(invoice: ExtractedInvoice, seller_map: Mapping[str, str]) -> ExtractedInvoice:
    item = invoice.model_copy(deep=True)
    trace = item.trace_logs

    if item.error_code is None:
        item.error_code = ErrorCode.SUCCESS

    if not item.seller_tax_id or "?" in item.seller_tax_id:
        found = lookup_seller_tax_id(item.seller_name, seller_map)
        if found:
            trace.append(f"Seller tax id {item.seller_tax_id or '(missing)'} -> {found} from known seller '{item.seller_name}'")
            item.seller_tax_id = found

    if item.invoice_number is not None:
        normalized = normalize_invoice_number(item.invoice_number)
        if normalized != item.invoice_number:
            trace.append(f"Invoice number normalized: '{item.invoice_number}' -> '{normalized}'")
        item.invoice_number = normalized or None

    if item.has_unclear_seller_tax_id and "seller_tax_id" not in item.verification.flagged_fields:
        item.verification.flag("seller_tax_id")
        trace.append(f"Seller tax id {item.seller_tax_id} has unclear digits; flagged for review")

    corrected = False
    if item.amount_total < item.amount_tax:
        trace.append(
            f"Swapped amount_total and amount_tax (total {item.amount_total} < tax {item.amount_tax})"
        )
        item.amount_total, item.amount_tax = item.amount_tax, item.amount_total
        corrected = True

    if not amounts_consistent(item.amount_sales, item.amount_tax, item.amount_total):
        computed = item.amount_sales + item.amount_tax
        trace.append(
            f"Recomputed amount_total {item.amount_total} -> {computed} "
            f"(sales {item.amount_sales} + tax {item.amount_tax})"
        )
        item.amount_total = computed
        corrected = True

    if corrected:
        item.verification.logic_is_valid = True

    return item


def drop_ghost_entries(
    invoices: list[ExtractedInvoice], *, tolerance: int = GHOST_TOTAL_TOLERANCE
) -> list[ExtractedInvoice]:
    """Drop number-less entries whose total shadows a numbered entry in the same response."""
    numbered_totals = [inv.amount_total for inv in invoices if inv.invoice_number]
    kept: list[ExtractedInvoice] = []
    for inv in invoices:
        if not inv.invoice_number and any(abs(inv.amount_total - t) <= tolerance for t in numbered_totals):
            logger.info("Dropping ghost entry without invoice number (total %d)", inv.amount_total)
            continue
        kept.append(inv)
    return kept


def postprocess_response(
    invoices: list[ExtractedInvoice],
    seller_map: Mapping[str, str],
    *,
    ghost_tolerance: int = GHOST_TOTAL_TOLERANCE,
) -> list[ExtractedInvoice]:
    processed = [postprocess_invoice(inv, seller_map) for inv in invoices]
    return drop_ghost_entries(processed, tolerance=ghost_tolerance)


def validation_failures(invoice: ExtractedInvoice) -> list[str]:
    failures: list[str] = []
    if invoice.error_code not in (None, ErrorCode.SUCCESS):
        failures.append(f"error_code={invoice.error_code.value}")
    if not invoice.verification.logic_is_valid:
        failures.append("logic_invalid")
    for name in REQUIRED_FIELDS:
        if not getattr(invoice, name):
            failures.append(f"missing:{name}")
    return failures
