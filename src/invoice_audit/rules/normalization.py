from __future__ import annotations

import re
import unicodedata


_WS = re.compile(r"\s+")
_WS_OR_HYPHEN = re.compile(r"[\s\-]+")
_INVOICE_SPLIT = re.compile(r"[\s,，、;；/]+")
_NON_WORD = re.compile(r"[\W_]+")


def normalize_invoice_number(value: str | None) -> str | None:
    if value is None:
        return None
    return _WS.sub("", value).upper()


def match_key(value: str | None) -> str:
    """Comparison form of an invoice number: no whitespace, no hyphens, upper case."""
    if not value:
        return ""
    return _WS_OR_HYPHEN.sub("", value).upper()


def numbers_match(a: str | None, b: str | None) -> bool:
    key_a = match_key(a)
    key_b = match_key(b)
    if not key_a or not key_b:
        return False
    return key_a in key_b or key_b in key_a


def split_invoice_numbers(cell: object) -> list[str]:
    if cell is None:
        return []
    return [t for t in _INVOICE_SPLIT.split(str(cell)) if t]


def clean_text(value: str) -> str:
    value = unicodedata.normalize("NFKC", value).casefold()
    return _NON_WORD.sub("", value)


def tax_ids_compatible(extracted: str, ledger: str) -> bool:
    """True when every legible digit of the extracted tax id agrees with the ledger's."""
    extracted = _WS.sub("", extracted)
    ledger = _WS.sub("", ledger)
    if len(extracted) != len(ledger):
        return False
    return all(e == "?" or e == d for e, d in zip(extracted, ledger))
