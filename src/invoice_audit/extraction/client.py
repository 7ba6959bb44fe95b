from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from concurrent.futures import Executor
from dataclasses import dataclass
from enum import Enum

from ..config import AuditSettings
from ..http_client import HttpRequestError
from ..models import ExtractedInvoice, ModelTier, UsageMetadata
from ..rules.loader import SellerDirectory
from ..rules.sellers import merge_seller_maps
from .costs import combine_usage, price_usage
from .gemini_backend import ExtractionBackend, ExtractionRequest, GeminiBackend
from .postprocess import (
    GHOST_TOTAL_TOLERANCE,
    ResponseFormatError,
    parse_response_text,
    postprocess_response,
    validation_failures,
)
from .prompt import RESPONSE_SCHEMA, SYSTEM_INSTRUCTION, USER_PROMPT


logger = logging.getLogger(__name__)

ESCALATION_MARKER = "[escalated] fast-tier result failed validation; re-extracted with the accurate tier"


class ExtractionError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.status = status
        self.attempts = attempts


class QuotaExhaustedError(ExtractionError):
    pass


class ExtractionStage(str, Enum):
    ATTEMPT_FAST = "ATTEMPT_FAST"
    ATTEMPT_ACCURATE = "ATTEMPT_ACCURATE"
    DONE = "DONE"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_s: float = 1.0
    max_jitter_s: float = 0.5

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        return self.base_delay_s * (2 ** (attempt - 1)) + rng.uniform(0, self.max_jitter_s)


class ExtractionClient:
    def __init__(
        self,
        backend: ExtractionBackend,
        *,
        fast_model: str,
        accurate_model: str,
        sellers: SellerDirectory | None = None,
        retry: RetryPolicy | None = None,
        ghost_tolerance: int = GHOST_TOTAL_TOLERANCE,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.backend = backend
        self.fast_model = fast_model
        self.accurate_model = accurate_model
        self.sellers = sellers or SellerDirectory()
        self.retry = retry or RetryPolicy()
        self.ghost_tolerance = ghost_tolerance
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls,
        settings: AuditSettings,
        *,
        sellers: SellerDirectory | None = None,
        ghost_tolerance: int = GHOST_TOTAL_TOLERANCE,
    ) -> "ExtractionClient":
        backend = GeminiBackend(api_key=settings.api_key, timeout_s=settings.request_timeout_s)
        return cls(
            backend,
            fast_model=settings.fast_model,
            accurate_model=settings.accurate_model,
            sellers=sellers,
            ghost_tolerance=ghost_tolerance,
        )

    async def extract(
        self,
        document_bytes: bytes,
        mime_type: str,
        model_tier: ModelTier = ModelTier.HYBRID,
        known_seller_map: Mapping[str, str] | None = None,
        *,
        executor: Executor | None = None,
    ) -> list[ExtractedInvoice]:
        """Extract every invoice in the document.

        Backend calls block, so they run on `executor`; without one the event loop's default pool is used.
        """
        seller_map = merge_seller_maps(self.sellers, known_seller_map or {})
        request = ExtractionRequest(
            document=document_bytes,
            mime_type=mime_type,
            system_instruction=SYSTEM_INSTRUCTION,
            prompt=USER_PROMPT,
            response_schema=RESPONSE_SCHEMA,
        )

        stage = ExtractionStage.ATTEMPT_ACCURATE if model_tier == ModelTier.ACCURATE else ExtractionStage.ATTEMPT_FAST
        usages: list[UsageMetadata] = []
        escalated = False
        results: list[ExtractedInvoice] = []

        while stage != ExtractionStage.DONE:
            model = self.fast_model if stage == ExtractionStage.ATTEMPT_FAST else self.accurate_model
            results, usage = await self._call(model, request, seller_map, executor)
            if usage is not None:
                usages.append(usage)

            if stage == ExtractionStage.ATTEMPT_FAST and model_tier == ModelTier.HYBRID:
                failures = {i: validation_failures(r) for i, r in enumerate(results)}
                failures = {i: f for i, f in failures.items() if f}
                if failures:
                    logger.info("Escalating to %s: fast-tier validation failed %s", self.accurate_model, failures)
                    escalated = True
                    stage = ExtractionStage.ATTEMPT_ACCURATE
                    continue
            stage = ExtractionStage.DONE

        if escalated:
            for item in results:
                item.trace_logs.insert(0, ESCALATION_MARKER)
        if results:
            results[0].usage = combine_usage(usages)
        return results

    async def _call(
        self,
        model: str,
        request: ExtractionRequest,
        seller_map: Mapping[str, str],
        executor: Executor | None = None,
    ) -> tuple[list[ExtractedInvoice], UsageMetadata | None]:
        loop = asyncio.get_running_loop()
        attempts = self.retry.max_attempts
        for attempt in range(1, attempts + 1):
            try:
                response = await loop.run_in_executor(executor, self.backend.generate, model, request)
            except HttpRequestError as exc:
                if exc.retryable and attempt < attempts:
                    delay = self.retry.delay_for(attempt, self._rng)
                    logger.warning(
                        "Extraction call to %s failed (HTTP %s); retrying in %.0fms (attempt %d/%d)",
                        model,
                        exc.status,
                        delay * 1000,
                        attempt,
                        attempts,
                    )
                    await self._sleep(delay)
                    continue
                raise _extraction_error(exc, attempt) from exc

            try:
                invoices = parse_response_text(response.text)
            except ResponseFormatError as exc:
                raise ExtractionError(str(exc), attempts=attempt) from exc

            usage = price_usage(response.usage) if response.usage is not None else None
            return postprocess_response(invoices, seller_map, ghost_tolerance=self.ghost_tolerance), usage

        raise ExtractionError(f"Extraction with {model} did not complete", attempts=attempts)


def _extraction_error(exc: HttpRequestError, attempts: int) -> ExtractionError:
    if exc.status == 429:
        return QuotaExhaustedError(str(exc), status=429, attempts=attempts)
    return ExtractionError(str(exc), status=exc.status, attempts=attempts)
