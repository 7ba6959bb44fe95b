from invoice_audit.models import LedgerRecord
from invoice_audit.rules.loader import Seller, SellerDirectory
from invoice_audit.rules.normalization import (
    match_key,
    normalize_invoice_number,
    numbers_match,
    split_invoice_numbers,
    tax_ids_compatible,
)
from invoice_audit.rules.sellers import lookup_seller_tax_id, merge_seller_maps, session_seller_map


def test_normalize_invoice_number_removes_whitespace_and_uppercases() -> None:
    assert normalize_invoice_number(" ab 1234\t5678 ") == "AB12345678"
    assert normalize_invoice_number(None) is None


def test_normalize_invoice_number_is_idempotent() -> None:
    for raw in ["ab 12345678", "AB-1234 5678", "  x  ", "國際 inv 9"]:
        once = normalize_invoice_number(raw)
        assert normalize_invoice_number(once) == once


def test_numbers_match_is_symmetric_and_ignores_hyphens() -> None:
    pairs = [
        ("AB-12345678", "ab12345678"),
        ("12345678", "AB12345678"),
        ("AB12345678", "CD12345678"),
        ("", "AB12345678"),
    ]
    for a, b in pairs:
        assert numbers_match(a, b) == numbers_match(b, a)

    assert numbers_match("AB-12345678", "ab 12345678")
    assert numbers_match("12345678", "AB12345678")
    assert not numbers_match("AB12345678", "CD12345678")


def test_empty_numbers_never_match() -> None:
    assert match_key("  ") == ""
    assert not numbers_match(None, "AB12345678")
    assert not numbers_match("", "")


def test_split_invoice_numbers_handles_mixed_separators() -> None:
    assert split_invoice_numbers("AB11111111 AB22222222") == ["AB11111111", "AB22222222"]
    assert split_invoice_numbers("AB1、AB2;AB3/AB4,AB5，AB6") == ["AB1", "AB2", "AB3", "AB4", "AB5", "AB6"]
    assert split_invoice_numbers(None) == []
    assert split_invoice_numbers("   ") == []


def test_tax_ids_compatible_treats_question_mark_as_wildcard() -> None:
    assert tax_ids_compatible("1234567?", "12345678")
    assert tax_ids_compatible("12345678", "12345678")
    assert not tax_ids_compatible("1234567?", "12345679 0")
    assert not tax_ids_compatible("87654321", "12345678")


def test_session_seller_map_skips_unclear_ids() -> None:
    records = [
        LedgerRecord(voucher_id="V1", seller_name="中華電信股份有限公司", seller_tax_id="96979933"),
        LedgerRecord(voucher_id="V2", seller_name="模糊商行", seller_tax_id="1234?678"),
        LedgerRecord(voucher_id="V3", seller_name="", seller_tax_id="11111111"),
    ]

    assert session_seller_map(records) == {"中華電信股份有限公司": "96979933"}


def test_session_mappings_override_directory() -> None:
    directory = SellerDirectory(sellers=[Seller(name="台灣電力", tax_id="03795904")])

    merged = merge_seller_maps(directory, {"台灣電力": "99999999", "新廠商": "12345678"})

    assert merged == {"台灣電力": "99999999", "新廠商": "12345678"}


def test_lookup_seller_tax_id_prefers_longest_name() -> None:
    seller_map = {"電信": "11111111", "中華電信": "96979933"}

    assert lookup_seller_tax_id("中華電信股份有限公司 台北營運處", seller_map) == "96979933"
    assert lookup_seller_tax_id("Unknown Vendor", seller_map) is None
    assert lookup_seller_tax_id(None, seller_map) is None
