from __future__ import annotations

import csv
import io
import logging
import zipfile
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from openpyxl import load_workbook
from pydantic import BaseModel, Field

from ..models import LedgerRecord, parse_amount
from ..rules.loader import LedgerColumnRules
from ..rules.normalization import split_invoice_numbers


logger = logging.getLogger(__name__)


class LedgerFormatError(ValueError):
    pass


class LedgerImportResult(BaseModel):
    status: str
    records: list[LedgerRecord] = Field(default_factory=list)
    header_row_index: int | None = None
    source_name: str | None = None


@dataclass(frozen=True, slots=True)
class HeaderMatch:
    row_index: int
    columns: dict[str, int]


@dataclass(frozen=True, slots=True)
class LedgerImporter:
    rules: LedgerColumnRules

    @classmethod
    def default(cls) -> "LedgerImporter":
        return cls(LedgerColumnRules.default())

    def import_rows(self, rows: Sequence[Sequence[object]]) -> list[LedgerRecord]:
        records, _ = self._parse(rows)
        return records

    def import_file(self, data: bytes | Path, *, filename: str | None = None) -> LedgerImportResult:
        if isinstance(data, Path):
            filename = filename or data.name
        rows = read_table(data, filename=filename)
        records, header = self._parse(rows)
        status = "ok" if records else "no_data"
        if not records:
            logger.warning("Ledger %s parsed but yielded no records", filename or "<bytes>")
        else:
            logger.info("Imported %d ledger records from %s", len(records), filename or "<bytes>")
        return LedgerImportResult(
            status=status,
            records=records,
            header_row_index=header.row_index if header else None,
            source_name=filename,
        )

    def detect_header(self, row: Sequence[object], row_index: int) -> HeaderMatch | None:
        cells = [_cell_text(c) for c in row]
        voucher_keywords = self.rules.keywords.get("voucher_id") or []
        if not any(k in cell for cell in cells for k in voucher_keywords):
            return None

        columns: dict[str, int] = {}
        quality: dict[str, int] = {}
        for idx, cell in enumerate(cells):
            if not cell:
                continue
            for key, keywords in self.rules.keywords.items():
                rank = next((i for i, k in enumerate(keywords) if k in cell), None)
                if rank is None:
                    continue
                if rank < quality.get(key, len(keywords)):
                    columns[key] = idx
                    quality[key] = rank
        return HeaderMatch(row_index=row_index, columns=columns)

    def _parse(self, rows: Sequence[Sequence[object]]) -> tuple[list[LedgerRecord], HeaderMatch | None]:
        header: HeaderMatch | None = None
        for row_index, row in enumerate(rows):
            header = self.detect_header(list(row or []), row_index)
            if header is not None:
                break

        if header is not None:
            columns = header.columns
            body = rows[header.row_index + 1 :]
        else:
            columns = self.rules.fixed_indices
            body = rows

        voucher_keywords = self.rules.keywords.get("voucher_id") or []
        records: list[LedgerRecord] = []
        for row in body:
            cells = list(row or [])
            voucher_id = _cell_text(_pick(cells, columns, "voucher_id"))
            if not voucher_id:
                continue
            if any(k in voucher_id for k in voucher_keywords):
                continue

            records.append(
                LedgerRecord(
                    voucher_id=voucher_id,
                    invoice_date=_cell_text(_pick(cells, columns, "invoice_date")),
                    invoice_numbers=split_invoice_numbers(_pick(cells, columns, "invoice_number")),
                    seller_name=_cell_text(_pick(cells, columns, "seller_name")),
                    seller_tax_id=_cell_text(_pick(cells, columns, "seller_tax_id")),
                    amount_sales=parse_amount(_pick(cells, columns, "amount_sales")),
                    amount_tax=parse_amount(_pick(cells, columns, "amount_tax")),
                    amount_total=parse_amount(_pick(cells, columns, "amount_total")),
                    raw_row=[_cell_text(c) for c in cells],
                )
            )

        return records, header


def read_table(data: bytes | Path, *, filename: str | None = None) -> list[list[object]]:
    """Read the first sheet of an xlsx workbook, or a delimited text file, as a 2D array of cells."""
    if isinstance(data, Path):
        filename = filename or data.name
        data = data.read_bytes()
    suffix = Path(filename or "").suffix.casefold()
    if suffix in {".xlsx", ".xlsm"} or (not suffix and data[:2] == b"PK"):
        return _read_xlsx(data)
    if suffix in {".csv", ".txt", ""}:
        return _read_csv(data)
    raise LedgerFormatError(f"Unsupported ledger file type: {suffix}")


def _read_xlsx(data: bytes) -> list[list[object]]:
    try:
        workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except (zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise LedgerFormatError(f"Could not read workbook: {exc}") from exc
    try:
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def _read_csv(data: bytes) -> list[list[object]]:
    for encoding in ("utf-8-sig", "big5"):
        try:
            text = data.decode(encoding)
            break
        except UnicodeDecodeError:
            continue
    else:
        raise LedgerFormatError("Could not decode ledger text as UTF-8 or Big5")

    try:
        dialect = csv.Sniffer().sniff(text[:4096], delimiters=",;\t")
    except csv.Error:
        dialect = csv.excel
    try:
        return [list(row) for row in csv.reader(io.StringIO(text), dialect)]
    except csv.Error as exc:
        raise LedgerFormatError(f"Could not parse ledger text: {exc}") from exc


def _pick(cells: list[object], columns: dict[str, int], key: str) -> object:
    idx = columns.get(key)
    if idx is None or idx < 0 or idx >= len(cells):
        return None
    return cells[idx]


def _cell_text(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()
