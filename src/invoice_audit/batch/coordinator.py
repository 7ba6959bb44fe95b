from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Executor, ThreadPoolExecutor

from ..extraction.client import ExtractionClient, ExtractionError, QuotaExhaustedError
from ..models import BatchProgress, BatchSummary, DocumentEntry, DocumentStatus, ModelTier
from ..preprocessing.image_enhance import enhance_for_ocr, is_enhanceable
from .buffers import ChangeBuffer, DocumentChanges, SeenInvoiceNumbers


logger = logging.getLogger(__name__)

NOTHING_RECOGNIZED = "No invoice content recognized"
QUOTA_EXHAUSTED = "API quota exhausted; try again later"
RECOGNITION_FAILED = "Recognition failed"
CONTENT_MISSING = "File content missing; upload the document again"


class BatchCoordinator:
    def __init__(
        self,
        client: ExtractionClient,
        *,
        concurrency: int = 20,
        flush_interval_s: float = 0.5,
        model_tier: ModelTier = ModelTier.HYBRID,
        seen: SeenInvoiceNumbers | None = None,
        on_changes: Callable[[DocumentChanges], None] | None = None,
        on_progress: Callable[[BatchProgress], None] | None = None,
        preprocess_images: bool = True,
        enhancer: Callable[[bytes, str], bytes] = enhance_for_ocr,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.client = client
        self.concurrency = concurrency
        self.flush_interval_s = flush_interval_s
        self.model_tier = model_tier
        self.seen = seen if seen is not None else SeenInvoiceNumbers()
        self.on_changes = on_changes
        self.on_progress = on_progress
        self.preprocess_images = preprocess_images
        self.enhancer = enhancer
        self.buffer = ChangeBuffer()
        self._flush_lock = threading.Lock()
        self._completed = 0
        self._succeeded = 0
        self._total = 0

    async def run(
        self, items: Sequence[DocumentEntry], known_sellers: Mapping[str, str] | None = None
    ) -> BatchSummary:
        started = time.monotonic()
        self._completed = 0
        self._succeeded = 0
        self._total = len(items)

        queue: asyncio.Queue[DocumentEntry] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        self._publish_progress("PROCESSING")
        executor = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="invoice-extract")
        flusher = asyncio.create_task(self._flush_periodically())
        try:
            workers = [
                asyncio.create_task(self._worker(queue, known_sellers or {}, executor))
                for _ in range(min(self.concurrency, len(items)))
            ]
            await asyncio.gather(*workers)
        finally:
            flusher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await flusher
            executor.shutdown(wait=False, cancel_futures=True)
            await asyncio.to_thread(self.flush)

        self._publish_progress("COMPLETED")
        summary = BatchSummary(
            total=self._total,
            completed=self._completed,
            succeeded=self._succeeded,
            failed=self._completed - self._succeeded,
            duration_s=round(time.monotonic() - started, 3),
        )
        logger.info(
            "Batch finished: %d/%d completed, %d failed in %.1fs",
            summary.completed,
            summary.total,
            summary.failed,
            summary.duration_s,
        )
        return summary

    def flush(self) -> None:
        """Hand buffered changes to `on_changes`; if it raises they go back into the buffer."""
        with self._flush_lock:
            changes = self.buffer.drain()
            if not changes or self.on_changes is None:
                return
            try:
                self.on_changes(changes)
            except Exception:
                self.buffer.restore(changes)
                raise

    async def _flush_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval_s)
            try:
                await asyncio.to_thread(self.flush)
            except Exception:
                logger.exception("Applying buffered document changes failed; retrying on the next flush")

    async def _worker(
        self, queue: asyncio.Queue[DocumentEntry], known_sellers: Mapping[str, str], executor: Executor
    ) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(item, known_sellers, executor)
            finally:
                queue.task_done()

    async def _process(self, item: DocumentEntry, known_sellers: Mapping[str, str], executor: Executor) -> None:
        self.buffer.record(item.id, status=DocumentStatus.PROCESSING)
        try:
            if item.content is None:
                self._fail(item, CONTENT_MISSING)
                return

            content = await self._preprocess(item, item.content, executor)
            results = await self.client.extract(
                content, item.mime_type, self.model_tier, known_sellers, executor=executor
            )

            if not results:
                self._fail(item, NOTHING_RECOGNIZED)
                return

            for result in results:
                if result.invoice_number and self.seen.check_and_add(result.invoice_number):
                    result.trace_logs.append(
                        f"Warning: invoice number {result.invoice_number} was already seen in this session"
                    )

            self.buffer.record(
                item.id,
                status=DocumentStatus.SUCCESS,
                extracted_invoices=results,
                error_message=None,
            )
            self._succeeded += 1
        except QuotaExhaustedError as exc:
            logger.warning("Quota exhausted while extracting %s: %s", item.id, exc)
            self._fail(item, QUOTA_EXHAUSTED)
        except ExtractionError as exc:
            logger.warning("Extraction failed for %s: %s", item.id, exc)
            self._fail(item, str(exc) or RECOGNITION_FAILED)
        except Exception as exc:
            logger.exception("Unexpected failure while processing %s", item.id)
            self._fail(item, str(exc) or RECOGNITION_FAILED)
        finally:
            self._completed += 1
            self._publish_progress("PROCESSING")

    async def _preprocess(self, item: DocumentEntry, content: bytes, executor: Executor) -> bytes:
        if not (self.preprocess_images and is_enhanceable(item.mime_type)):
            return content
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(executor, self.enhancer, content, item.mime_type)
        except Exception as exc:
            logger.warning("Pre-processing failed for %s, using original: %s", item.id, exc)
            return content

    def _fail(self, item: DocumentEntry, message: str) -> None:
        self.buffer.record(item.id, status=DocumentStatus.ERROR, extracted_invoices=[], error_message=message)

    def _publish_progress(self, status: str) -> None:
        if self.on_progress is not None:
            self.on_progress(BatchProgress(current=self._completed, total=self._total, status=status))
