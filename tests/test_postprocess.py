import json

import pytest

from invoice_audit.extraction.postprocess import (
    ResponseFormatError,
    drop_ghost_entries,
    parse_response_text,
    postprocess_invoice,
    validation_failures,
)
from invoice_audit.models import DocumentType, ErrorCode, ExtractedInvoice


def test_swapped_total_and_tax_are_corrected() -> None:
    invoice = ExtractedInvoice(
        invoice_number="AB12345678",
        invoice_date="2024-01-15",
        amount_sales=195,
        amount_tax=205,
        amount_total=10,
    )

    fixed = postprocess_invoice(invoice, {})

    assert fixed.amount_total == 205
    assert fixed.amount_tax == 10
    assert fixed.verification.logic_is_valid
    assert any("Swapped" in line for line in fixed.trace_logs)
    assert invoice.amount_total == 10


def test_inconsistent_total_is_recomputed() -> None:
    invoice = ExtractedInvoice(amount_sales=1000, amount_tax=50, amount_total=1500)

    fixed = postprocess_invoice(invoice, {})

    assert fixed.amount_total == 1050
    assert fixed.verification.logic_is_valid
    assert any("Recomputed" in line for line in fixed.trace_logs)


def test_consistent_amounts_keep_model_verdict() -> None:
    invoice = ExtractedInvoice(amount_sales=1000, amount_tax=50, amount_total=1051)

    fixed = postprocess_invoice(invoice, {})

    assert fixed.amount_total == 1051
    assert not fixed.verification.logic_is_valid
    assert fixed.error_code == ErrorCode.SUCCESS


def test_unclear_tax_id_is_flagged_when_seller_unknown() -> None:
    invoice = ExtractedInvoice(seller_name="某商行", seller_tax_id="1234?678")

    fixed = postprocess_invoice(invoice, {"中華電信": "96979933"})

    assert fixed.seller_tax_id == "1234?678"
    assert fixed.verification.flagged_fields == ["seller_tax_id"]
    assert any("unclear" in line for line in fixed.trace_logs)


def test_known_seller_fills_missing_or_unclear_tax_id() -> None:
    invoice = ExtractedInvoice(seller_name="中華電信股份有限公司", seller_tax_id="9697?933")

    fixed = postprocess_invoice(invoice, {"中華電信": "96979933"})

    assert fixed.seller_tax_id == "96979933"
    assert "seller_tax_id" not in fixed.verification.flagged_fields
    assert any("96979933" in line for line in fixed.trace_logs)


def test_invoice_number_whitespace_is_removed() -> None:
    fixed = postprocess_invoice(ExtractedInvoice(invoice_number="ab 1234 5678"), {})

    assert fixed.invoice_number == "AB12345678"


def test_ghost_entry_without_number_is_dropped() -> None:
    invoices = [
        ExtractedInvoice(invoice_number="AB12345678", amount_total=1050),
        ExtractedInvoice(invoice_number=None, amount_total=1053),
        ExtractedInvoice(invoice_number=None, amount_total=5000),
    ]

    kept = drop_ghost_entries(invoices, tolerance=5)

    assert [inv.amount_total for inv in kept] == [1050, 5000]


def test_parse_response_repairs_loose_json() -> None:
    text = json.dumps(
        {
            "document_type": "統一發票",
            "invoice_number": " AB12345678 ",
            "amount_total": "1,050",
            "amount_tax": None,
            "error_code": "weird",
            "verification": {"ai_confidence": 140, "flagged_fields": ["a", "a"]},
        },
        ensure_ascii=False,
    )

    invoices = parse_response_text(text)

    assert len(invoices) == 1
    invoice = invoices[0]
    assert invoice.document_type == DocumentType.STANDARD_INVOICE
    assert invoice.invoice_number == "AB12345678"
    assert invoice.amount_total == 1050
    assert invoice.amount_tax == 0
    assert invoice.error_code == ErrorCode.UNKNOWN
    assert invoice.verification.ai_confidence == 100.0
    assert invoice.verification.flagged_fields == ["a"]


def test_parse_response_drops_non_objects_and_rejects_garbage() -> None:
    assert parse_response_text("") == []
    assert len(parse_response_text('[{"invoice_number": "A1"}, 3, "x"]')) == 1

    with pytest.raises(ResponseFormatError):
        parse_response_text("not json")
    with pytest.raises(ResponseFormatError):
        parse_response_text("42")


def test_validation_failures_lists_missing_fields() -> None:
    invoice = ExtractedInvoice(invoice_number="AB12345678", error_code="BLURRY")

    assert validation_failures(invoice) == ["error_code=BLURRY", "logic_invalid", "missing:invoice_date"]


def test_swap_then_recompute_records_both_corrections() -> None:
    invoice = ExtractedInvoice(amount_sales=100, amount_tax=1000, amount_total=105)

    fixed = postprocess_invoice(invoice, {})

    assert (fixed.amount_sales, fixed.amount_tax, fixed.amount_total) == (100, 105, 205)
    assert fixed.verification.logic_is_valid
    assert len(fixed.trace_logs) == 2
