from __future__ import annotations

from collections.abc import Iterable, Mapping

from ..models import LedgerRecord
from .loader import SellerDirectory
from .normalization import clean_text


def session_seller_map(records: Iterable[LedgerRecord]) -> dict[str, str]:
    out: dict[str, str] = {}
    for record in records:
        name = record.seller_name.strip()
        tax_id = record.seller_tax_id.strip()
        if name and tax_id and "?" not in tax_id:
            out[name] = tax_id
    return out


def merge_seller_maps(directory: SellerDirectory, session_map: Mapping[str, str]) -> dict[str, str]:
    merged = directory.as_map()
    merged.update(session_map)
    return merged


def lookup_seller_tax_id(seller_name: str | None, seller_map: Mapping[str, str]) -> str | None:
    haystack = clean_text(seller_name or "")
    if not haystack:
        return None
    best: tuple[int, str] | None = None
    for name, tax_id in seller_map.items():
        needle = clean_text(name)
        if not needle:
            continue
        if needle in haystack or haystack in needle:
            if best is None or len(needle) > best[0]:
                best = (len(needle), tax_id)
    return best[1] if best else None
