from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from datetime import date, datetime, timezone

from pydantic import BaseModel, Field

from ..models import AuditRow, AuditStatus
from ..storage import slug


BOM = "\ufeff"

HEADERS = {
    "en": [
        "voucher_id",
        "status",
        "ledger_invoice_numbers",
        "extracted_invoice_numbers",
        "buyer_tax_id_status",
        "ledger_seller_tax_id",
        "extracted_seller_tax_id",
        "ledger_total",
        "extracted_total",
        "diff_reasons",
    ],
    "zh-TW": [
        "傳票編號",
        "狀態",
        "ERP_發票號碼",
        "OCR_發票號碼",
        "買方統編狀態",
        "ERP_賣方統編",
        "OCR_賣方統編",
        "ERP_含稅總額",
        "OCR_含稅總額",
        "差異說明",
    ],
}

STATUS_LABELS = {
    "en": {
        AuditStatus.MATCH: "OK",
        AuditStatus.MISMATCH: "abnormal",
        AuditStatus.MISSING_DOCUMENT: "missing",
        AuditStatus.EXTRA_DOCUMENT: "extra",
    },
    "zh-TW": {
        AuditStatus.MATCH: "OK",
        AuditStatus.MISMATCH: "異常",
        AuditStatus.MISSING_DOCUMENT: "缺件",
        AuditStatus.EXTRA_DOCUMENT: "多餘",
    },
}

REASON_PHRASES = {
    "en": {
        "amount": "amount mismatch",
        "tax_id": "seller tax id mismatch",
        "buyer_id_error": "buyer tax id error",
        "tax_id_unclear": "unclear seller tax id",
        "count_mismatch": "invoice count mismatch",
        "no_match_found": "no match found",
    },
    "zh-TW": {
        "amount": "金額不符",
        "tax_id": "賣方統編不符",
        "buyer_id_error": "買方統編錯誤",
        "tax_id_unclear": "統編模糊",
        "count_mismatch": "張數不符",
        "no_match_found": "找不到對應發票",
    },
}

SUMMARY_LABELS = {
    "en": ["project", "exported_at", "model", "accuracy", "duration", "rows"],
    "zh-TW": ["專案名稱", "匯出時間", "使用模型", "準確率", "處理時間", "筆數"],
}


class RunSummary(BaseModel):
    project_name: str
    model: str
    accuracy: float = Field(ge=0.0, le=1.0)
    duration_s: float | None = None
    row_count: int = 0
    exported_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat(timespec="seconds"))


def _locale(locale: str) -> str:
    return locale if locale in HEADERS else "en"


def reason_phrases(reasons: Sequence[str], *, locale: str = "en") -> str:
    phrases = REASON_PHRASES[_locale(locale)]
    return ";".join(phrases.get(r, r) for r in reasons)


def buyer_tax_id_status(row: AuditRow, required_buyer_tax_id: str | None) -> str:
    buyer = (row.display_extraction.buyer_tax_id if row.display_extraction else None) or ""
    if required_buyer_tax_id and buyer == required_buyer_tax_id:
        return "OK"
    return buyer


def export_audit_report(
    rows: Sequence[AuditRow],
    summary: RunSummary,
    *,
    locale: str = "en",
    required_buyer_tax_id: str | None = None,
) -> str:
    loc = _locale(locale)
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")

    duration = f"{summary.duration_s:.1f}s" if summary.duration_s is not None else ""
    values = [
        summary.project_name,
        summary.exported_at,
        summary.model,
        f"{summary.accuracy * 100:.1f}%",
        duration,
        str(summary.row_count),
    ]
    for label, value in zip(SUMMARY_LABELS[loc], values):
        writer.writerow([label, value])
    writer.writerow([])

    writer.writerow(HEADERS[loc])
    statuses = STATUS_LABELS[loc]
    for row in rows:
        record = row.ledger_record
        display = row.display_extraction
        writer.writerow(
            [
                row.voucher_id,
                statuses[row.audit_status],
                " / ".join(record.invoice_numbers) if record else "",
                (display.invoice_number or "") if display else "",
                buyer_tax_id_status(row, required_buyer_tax_id),
                record.seller_tax_id if record else "",
                (display.seller_tax_id or "") if display else "",
                record.amount_total if record else 0,
                display.amount_total if display else 0,
                reason_phrases(row.diff_reasons, locale=loc),
            ]
        )
    return BOM + out.getvalue()


def export_audit_report_bytes(rows: Sequence[AuditRow], summary: RunSummary, **kwargs: object) -> bytes:
    return export_audit_report(rows, summary, **kwargs).encode("utf-8")  # type: ignore[arg-type]


def report_filename(project_name: str, on: date | None = None) -> str:
    day = (on or date.today()).isoformat()
    return f"audit_report_{slug(project_name)}_{day}.csv"
