from __future__ import annotations

import math
from enum import Enum

from pydantic import BaseModel, Field, field_validator


AMOUNT_TOLERANCE = 1


def amounts_consistent(sales: int, tax: int, total: int, *, tolerance: int = AMOUNT_TOLERANCE) -> bool:
    return abs(sales + tax - total) <= tolerance


class DocumentType(str, Enum):
    STANDARD_INVOICE = "STANDARD_INVOICE"
    COMMERCIAL_INVOICE = "COMMERCIAL_INVOICE"
    CUSTOMS_DECLARATION = "CUSTOMS_DECLARATION"
    NOT_INVOICE = "NOT_INVOICE"


# Labels the vision model was prompted with.
_DOCUMENT_TYPE_ALIASES = {
    "統一發票": DocumentType.STANDARD_INVOICE,
    "invoice": DocumentType.COMMERCIAL_INVOICE,
    "進口報關": DocumentType.CUSTOMS_DECLARATION,
    "進口報單": DocumentType.CUSTOMS_DECLARATION,
    "非發票": DocumentType.NOT_INVOICE,
}


class ErrorCode(str, Enum):
    SUCCESS = "SUCCESS"
    BLURRY = "BLURRY"
    NOT_INVOICE = "NOT_INVOICE"
    PARTIAL = "PARTIAL"
    UNKNOWN = "UNKNOWN"


class DocumentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class AuditStatus(str, Enum):
    MATCH = "MATCH"
    MISMATCH = "MISMATCH"
    MISSING_DOCUMENT = "MISSING_DOCUMENT"
    EXTRA_DOCUMENT = "EXTRA_DOCUMENT"


class ModelTier(str, Enum):
    FAST = "fast"
    ACCURATE = "accurate"
    HYBRID = "hybrid"


class LedgerRecord(BaseModel):
    voucher_id: str = Field(min_length=1)
    invoice_date: str = ""
    invoice_numbers: list[str] = Field(default_factory=list)
    seller_name: str = ""
    seller_tax_id: str = ""
    amount_sales: int = 0
    amount_tax: int = 0
    amount_total: int = 0
    raw_row: list[str] = Field(default_factory=list)
    reviewed_flag: bool = False


class Verification(BaseModel):
    ai_confidence: float = 0.0
    logic_is_valid: bool = False
    flagged_fields: list[str] = Field(default_factory=list)

    @field_validator("ai_confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: object) -> float:
        return _clamp_score(value)

    @field_validator("flagged_fields", mode="before")
    @classmethod
    def _dedupe_flags(cls, value: object) -> list[str]:
        if not isinstance(value, list):
            return []
        out: list[str] = []
        for item in value:
            s = str(item)
            if s and s not in out:
                out.append(s)
        return out

    def flag(self, field_name: str) -> None:
        if field_name not in self.flagged_fields:
            self.flagged_fields.append(field_name)


class FieldConfidence(BaseModel):
    invoice_number: float = 0.0
    invoice_date: float = 0.0
    buyer_tax_id: float = 0.0
    seller_name: float = 0.0
    seller_tax_id: float = 0.0
    amount_sales: float = 0.0
    amount_tax: float = 0.0
    amount_total: float = 0.0

    @field_validator("*", mode="before")
    @classmethod
    def _clamp(cls, value: object) -> float:
        return _clamp_score(value)


class UsageMetadata(BaseModel):
    prompt_token_count: int = 0
    candidates_token_count: int = 0
    total_token_count: int = 0
    model: str | None = None
    cost_usd: float | None = None


class ExtractedInvoice(BaseModel):
    document_type: DocumentType = DocumentType.STANDARD_INVOICE
    invoice_number: str | None = None
    invoice_date: str | None = None
    buyer_tax_id: str | None = None
    seller_name: str = ""
    seller_tax_id: str | None = None
    amount_sales: int = 0
    amount_tax: int = 0
    amount_total: int = 0
    has_stamp: bool = False
    verification: Verification = Field(default_factory=Verification)
    field_confidence: FieldConfidence = Field(default_factory=FieldConfidence)
    error_code: ErrorCode | None = None
    manually_verified: bool = False
    trace_logs: list[str] = Field(default_factory=list)
    usage: UsageMetadata | None = None

    @field_validator("document_type", mode="before")
    @classmethod
    def _document_type(cls, value: object) -> object:
        if value is None:
            return DocumentType.STANDARD_INVOICE
        if isinstance(value, str):
            alias = _DOCUMENT_TYPE_ALIASES.get(value.strip()) or _DOCUMENT_TYPE_ALIASES.get(value.strip().casefold())
            if alias is not None:
                return alias
            try:
                return DocumentType(value.strip().upper())
            except ValueError:
                return DocumentType.STANDARD_INVOICE
        return value

    @field_validator("error_code", mode="before")
    @classmethod
    def _error_code(cls, value: object) -> object:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            try:
                return ErrorCode(value.strip().upper())
            except ValueError:
                return ErrorCode.UNKNOWN
        return value

    @field_validator("invoice_number", "invoice_date", "buyer_tax_id", "seller_tax_id", mode="before")
    @classmethod
    def _optional_text(cls, value: object) -> str | None:
        if value is None:
            return None
        s = str(value).strip()
        return s or None

    @field_validator("seller_name", mode="before")
    @classmethod
    def _text(cls, value: object) -> str:
        return "" if value is None else str(value).strip()

    @field_validator("amount_sales", "amount_tax", "amount_total", mode="before")
    @classmethod
    def _amount(cls, value: object) -> int:
        return parse_amount(value)

    @field_validator("has_stamp", mode="before")
    @classmethod
    def _flag(cls, value: object) -> bool:
        return bool(value) if value is not None else False

    @field_validator("verification", "field_confidence", mode="before")
    @classmethod
    def _nested(cls, value: object) -> object:
        return value if value is not None else {}

    @property
    def has_unclear_seller_tax_id(self) -> bool:
        return bool(self.seller_tax_id) and "?" in str(self.seller_tax_id)

    @property
    def is_not_invoice(self) -> bool:
        return self.document_type == DocumentType.NOT_INVOICE or self.error_code == ErrorCode.NOT_INVOICE


class DocumentEntry(BaseModel):
    id: str = Field(min_length=1)
    filename: str
    mime_type: str = "application/octet-stream"
    content: bytes | None = Field(default=None, exclude=True, repr=False)
    uploaded_at: str | None = None
    status: DocumentStatus = DocumentStatus.PENDING
    extracted_invoices: list[ExtractedInvoice] = Field(default_factory=list)
    error_message: str | None = None


class MatchedInvoice(BaseModel):
    document_id: str
    invoice_index: int
    invoice: ExtractedInvoice


class AuditRow(BaseModel):
    key: str
    voucher_id: str
    ledger_record: LedgerRecord | None = None
    matched_documents: list[DocumentEntry] = Field(default_factory=list)
    primary_document: DocumentEntry | None = None
    matched_invoices: list[MatchedInvoice] = Field(default_factory=list)
    display_extraction: ExtractedInvoice | None = None
    audit_status: AuditStatus
    diff_reasons: list[str] = Field(default_factory=list)


class BatchProgress(BaseModel):
    current: int = 0
    total: int = 0
    status: str = "IDLE"


class BatchSummary(BaseModel):
    total: int
    completed: int
    succeeded: int
    failed: int
    duration_s: float


class SessionMeta(BaseModel):
    id: str
    name: str
    created_at: str
    updated_at: str
    document_count: int = 0
    ledger_count: int = 0


class SessionSnapshot(BaseModel):
    schema_version: str = "1.0"
    id: str
    name: str
    created_at: str
    updated_at: str
    ledger_records: list[LedgerRecord] = Field(default_factory=list)
    documents: list[DocumentEntry] = Field(default_factory=list)
    seen_invoice_numbers: list[str] = Field(default_factory=list)


def parse_amount(value: object) -> int:
    """Tolerant currency parsing: numbers pass through, strings lose thousands separators, anything else is 0."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(round(value)) if math.isfinite(value) else 0
    if isinstance(value, str):
        cleaned = value.replace(",", "").replace("，", "").strip()
        if not cleaned:
            return 0
        try:
            number = float(cleaned)
        except ValueError:
            return 0
        return int(round(number)) if math.isfinite(number) else 0
    return 0


def _clamp_score(value: object) -> float:
    try:
        score = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if score != score:
        return 0.0
    return max(0.0, min(100.0, score))
