from __future__ import annotations


SYSTEM_INSTRUCTION = """
Role: You are a detail-oriented Taiwanese audit expert digitizing vendor invoices for reconciliation.
Target: Extract structured data for ALL invoices found in the provided image or PDF. Return a JSON array of invoice objects.

Document type classification (apply in this priority order, first match wins):
1. "Invoice": a commercial or foreign invoice (English layout, foreign currency, no uniform invoice number).
2. "進口報關": an import customs declaration.
3. "統一發票": a Taiwanese uniform invoice.
4. "非發票": anything else (delivery notes, quotations, blank pages).

Critical extraction rules:
1. Invoice number: remove ALL whitespace, e.g. "XX 12345678" -> "XX12345678".
2. Buyer tax id: the "買受人統一編號" box.
3. Seller tax id: the "統一編號" inside the seller stamp. If any digit is blurry, blocked or unclear, output "?" for that digit.
   Do NOT guess or hallucinate digits. Example: "23?456?8".
4. Amounts: integers; ensure sales + tax = total within 1 unit.
5. Dates: convert ROC years to Gregorian, e.g. 114/05/01 -> 2025-05-01.
6. error_code: SUCCESS, BLURRY, NOT_INVOICE, PARTIAL or UNKNOWN.

Confidence scoring: assign every extracted field a confidence score from 0 to 100.
""".strip()

USER_PROMPT = (
    "Extract all invoice data. STRICTLY remove spaces from invoice numbers. "
    "Use '?' for any unclear digits in tax ids."
)

_SCORED_FIELDS = [
    "invoice_number",
    "invoice_date",
    "buyer_tax_id",
    "seller_name",
    "seller_tax_id",
    "amount_sales",
    "amount_tax",
    "amount_total",
]

INVOICE_OBJECT_SCHEMA: dict = {
    "type": "OBJECT",
    "properties": {
        "document_type": {"type": "STRING", "enum": ["統一發票", "Invoice", "進口報關", "非發票"]},
        "invoice_number": {"type": "STRING", "nullable": True},
        "invoice_date": {"type": "STRING", "nullable": True},
        "buyer_tax_id": {"type": "STRING", "nullable": True, "description": "Tax id of the buyer (買受人)"},
        "seller_name": {"type": "STRING"},
        "seller_tax_id": {
            "type": "STRING",
            "nullable": True,
            "description": "Tax id of the seller. Use '?' for unclear digits.",
        },
        "amount_sales": {"type": "INTEGER"},
        "amount_tax": {"type": "INTEGER"},
        "amount_total": {"type": "INTEGER"},
        "has_stamp": {"type": "BOOLEAN"},
        "error_code": {"type": "STRING", "enum": ["SUCCESS", "BLURRY", "NOT_INVOICE", "PARTIAL", "UNKNOWN"]},
        "verification": {
            "type": "OBJECT",
            "properties": {
                "ai_confidence": {"type": "NUMBER"},
                "logic_is_valid": {"type": "BOOLEAN"},
                "flagged_fields": {"type": "ARRAY", "items": {"type": "STRING"}},
            },
            "required": ["ai_confidence", "logic_is_valid", "flagged_fields"],
        },
        "field_confidence": {
            "type": "OBJECT",
            "properties": {name: {"type": "NUMBER"} for name in _SCORED_FIELDS},
            "required": list(_SCORED_FIELDS),
        },
    },
    "required": [
        "document_type",
        *_SCORED_FIELDS,
        "has_stamp",
        "verification",
        "field_confidence",
    ],
}

RESPONSE_SCHEMA: dict = {"type": "ARRAY", "items": INVOICE_OBJECT_SCHEMA}
