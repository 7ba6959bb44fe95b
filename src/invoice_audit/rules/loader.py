from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml


LEDGER_FIELDS = (
    "voucher_id",
    "invoice_number",
    "invoice_date",
    "seller_name",
    "seller_tax_id",
    "amount_sales",
    "amount_tax",
    "amount_total",
)

# Most specific keyword first; the column matched by the lowest index wins.
DEFAULT_HEADER_KEYWORDS: dict[str, list[str]] = {
    "voucher_id": ["傳票編號", "傳票號碼", "單號", "Voucher", "傳票", "NO.", "帳款單號"],
    "invoice_number": ["發票號碼", "發票編號", "Invoice No", "發票", "多發票號碼"],
    "invoice_date": ["發票日期", "日期", "Date"],
    "seller_name": ["廠商名稱", "廠商", "Vendor", "客戶名稱", "摘要"],
    "seller_tax_id": ["統一編號", "統編", "Tax ID"],
    "amount_sales": ["未稅金額(本幣)(查詢 1 與 fin_apb)", "未稅金額", "銷售額", "Sales Amount", "未稅"],
    "amount_tax": ["稅額(本幣)(查詢 1 與 fin_apb)", "稅額", "營業稅", "Tax Amount", "稅金", "稅額(本幣)"],
    "amount_total": [
        "含稅金額(本幣)(查詢 1 與 fin_apb)",
        "含稅金額",
        "總額",
        "總計",
        "Total Amount",
        "金額",
        "本幣借方金額",
    ],
}

# Column layout of the headerless accounts-payable export.
DEFAULT_FIXED_INDICES: dict[str, int] = {
    "voucher_id": 1,
    "invoice_date": 2,
    "seller_name": 8,
    "invoice_number": 10,
    "seller_tax_id": 11,
    "amount_sales": 13,
    "amount_tax": 14,
    "amount_total": 15,
}


@dataclass(frozen=True, slots=True)
class LedgerColumnRules:
    keywords: dict[str, list[str]]
    fixed_indices: dict[str, int]

    @classmethod
    def default(cls) -> "LedgerColumnRules":
        return cls(
            keywords={k: list(v) for k, v in DEFAULT_HEADER_KEYWORDS.items()},
            fixed_indices=dict(DEFAULT_FIXED_INDICES),
        )


@dataclass(frozen=True, slots=True)
class Seller:
    name: str
    tax_id: str


@dataclass(frozen=True, slots=True)
class SellerDirectory:
    sellers: list[Seller] = field(default_factory=list)

    def as_map(self) -> dict[str, str]:
        return {s.name: s.tax_id for s in self.sellers}


@dataclass(frozen=True, slots=True)
class AuditRules:
    required_buyer_tax_id: str | None = None
    ghost_total_tolerance: int = 5
    report_locale: str = "en"


@dataclass(frozen=True, slots=True)
class RuleSet:
    ledger_columns: LedgerColumnRules
    sellers: SellerDirectory
    audit: AuditRules

    @classmethod
    def default(cls) -> "RuleSet":
        return cls(ledger_columns=LedgerColumnRules.default(), sellers=SellerDirectory(), audit=AuditRules())

    @classmethod
    def load_from_dir(cls, rules_dir: Path) -> "RuleSet":
        columns = _load_yaml(rules_dir / "ledger_columns.yml")
        sellers = _load_yaml(rules_dir / "sellers.yml")
        audit = _load_yaml(rules_dir / "audit.yml")

        keywords = {k: list(v) for k, v in DEFAULT_HEADER_KEYWORDS.items()}
        for key, values in ((columns or {}).get("keywords") or {}).items():
            if key not in LEDGER_FIELDS:
                raise ValueError(f"Unknown ledger field in ledger_columns.yml: {key}")
            keywords[key] = [str(v) for v in (values or [])]

        fixed_indices = dict(DEFAULT_FIXED_INDICES)
        for key, value in ((columns or {}).get("fixed_indices") or {}).items():
            if key not in LEDGER_FIELDS:
                raise ValueError(f"Unknown ledger field in ledger_columns.yml: {key}")
            fixed_indices[key] = int(value)

        seller_directory = SellerDirectory(
            sellers=[
                Seller(name=str(s["name"]), tax_id=str(s["tax_id"]))
                for s in ((sellers or {}).get("sellers") or [])
                if s.get("name") and s.get("tax_id")
            ]
        )

        audit_data = audit or {}
        required_buyer = audit_data.get("required_buyer_tax_id")
        audit_rules = AuditRules(
            required_buyer_tax_id=str(required_buyer) if required_buyer else None,
            ghost_total_tolerance=int(audit_data.get("ghost_total_tolerance") or 5),
            report_locale=str(audit_data.get("report_locale") or "en"),
        )

        return cls(
            ledger_columns=LedgerColumnRules(keywords=keywords, fixed_indices=fixed_indices),
            sellers=seller_directory,
            audit=audit_rules,
        )


def _load_yaml(path: Path) -> dict | None:
    if not path.exists():
        raise FileNotFoundError(str(path))
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping at {path}, got {type(data).__name__}.")
    return data
