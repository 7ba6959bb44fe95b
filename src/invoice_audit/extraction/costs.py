from __future__ import annotations

from collections.abc import Iterable

from pydantic import BaseModel

from ..models import DocumentEntry, UsageMetadata


# USD per million tokens: (input, output).
MODEL_PRICES: dict[str, tuple[float, float]] = {
    "gemini-2.5-flash": (0.30, 2.50),
    "gemini-2.5-flash-lite": (0.10, 0.40),
    "gemini-2.5-pro": (1.25, 10.00),
}


class UsageSummary(BaseModel):
    calls: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0


def price_usage(usage: UsageMetadata) -> UsageMetadata:
    prices = MODEL_PRICES.get(usage.model or "")
    if prices is None:
        return usage
    input_price, output_price = prices
    cost = (usage.prompt_token_count * input_price + usage.candidates_token_count * output_price) / 1_000_000
    return usage.model_copy(update={"cost_usd": round(cost, 6)})


def combine_usage(parts: Iterable[UsageMetadata]) -> UsageMetadata | None:
    parts = list(parts)
    if not parts:
        return None
    costs = [p.cost_usd for p in parts if p.cost_usd is not None]
    return UsageMetadata(
        prompt_token_count=sum(p.prompt_token_count for p in parts),
        candidates_token_count=sum(p.candidates_token_count for p in parts),
        total_token_count=sum(p.total_token_count for p in parts),
        model="+".join(dict.fromkeys(p.model or "unknown" for p in parts)),
        cost_usd=round(sum(costs), 6) if costs else None,
    )


def summarize_usage(documents: Iterable[DocumentEntry]) -> UsageSummary:
    summary = UsageSummary()
    for doc in documents:
        for invoice in doc.extracted_invoices:
            usage = invoice.usage
            if usage is None:
                continue
            summary.calls += 1
            summary.prompt_tokens += usage.prompt_token_count
            summary.output_tokens += usage.candidates_token_count
            summary.total_tokens += usage.total_token_count
            summary.cost_usd = round(summary.cost_usd + (usage.cost_usd or 0.0), 6)
    return summary


def models_used(documents: Iterable[DocumentEntry]) -> list[str]:
    """Model names recorded in usage metadata, in first-seen order."""
    names: dict[str, None] = {}
    for doc in documents:
        for invoice in doc.extracted_invoices:
            if invoice.usage is None or not invoice.usage.model:
                continue
            for name in invoice.usage.model.split("+"):
                if name and name != "unknown":
                    names.setdefault(name, None)
    return list(names)
