from __future__ import annotations

import os
from dataclasses import dataclass

from .models import ModelTier


DEFAULT_FAST_MODEL = "gemini-2.5-flash"
DEFAULT_ACCURATE_MODEL = "gemini-2.5-pro"
DEFAULT_CONCURRENCY = 20
FREE_TIER_CONCURRENCY = 3


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default) not in {"0", "false", "False", "no"}


@dataclass(frozen=True, slots=True)
class AuditSettings:
    api_key: str | None = None
    fast_model: str = DEFAULT_FAST_MODEL
    accurate_model: str = DEFAULT_ACCURATE_MODEL
    model_tier: ModelTier = ModelTier.HYBRID
    concurrency: int = DEFAULT_CONCURRENCY
    flush_interval_s: float = 0.5
    preprocess_images: bool = True
    request_timeout_s: float = 120.0

    @classmethod
    def from_env(cls) -> "AuditSettings":
        free_tier = _env_flag("INVOICE_AUDIT_FREE_TIER", "0")
        default_concurrency = FREE_TIER_CONCURRENCY if free_tier else DEFAULT_CONCURRENCY
        return cls(
            api_key=os.getenv("GEMINI_API_KEY") or os.getenv("API_KEY"),
            fast_model=os.getenv("INVOICE_AUDIT_FAST_MODEL", DEFAULT_FAST_MODEL),
            accurate_model=os.getenv("INVOICE_AUDIT_ACCURATE_MODEL", DEFAULT_ACCURATE_MODEL),
            model_tier=ModelTier(os.getenv("INVOICE_AUDIT_MODEL_TIER", ModelTier.HYBRID.value)),
            concurrency=max(1, int(os.getenv("INVOICE_AUDIT_CONCURRENCY", str(default_concurrency)))),
            flush_interval_s=float(os.getenv("INVOICE_AUDIT_FLUSH_INTERVAL_S", "0.5")),
            preprocess_images=_env_flag("INVOICE_AUDIT_PREPROCESS", "1"),
            request_timeout_s=float(os.getenv("INVOICE_AUDIT_REQUEST_TIMEOUT_S", "120")),
        )

    def model_for(self, tier: ModelTier) -> str:
        if tier == ModelTier.ACCURATE:
            return self.accurate_model
        return self.fast_model
