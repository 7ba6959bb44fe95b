from __future__ import annotations

import threading
from collections.abc import Iterable

from ..rules.normalization import match_key


DocumentChanges = dict[str, dict[str, object]]


class ChangeBuffer:
    """Pending per-document field updates; readers take the whole buffer by swapping it out."""

    def __init__(self) -> None:
        self._pending: DocumentChanges = {}
        self._lock = threading.Lock()

    def record(self, document_id: str, **changes: object) -> None:
        with self._lock:
            self._pending.setdefault(document_id, {}).update(changes)

    def drain(self) -> DocumentChanges:
        with self._lock:
            pending, self._pending = self._pending, {}
        return pending

    def restore(self, changes: DocumentChanges) -> None:
        """Put drained changes back underneath anything recorded since the drain."""
        with self._lock:
            for document_id, fields in changes.items():
                newer = self._pending.get(document_id, {})
                self._pending[document_id] = {**fields, **newer}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class SeenInvoiceNumbers:
    def __init__(self, initial: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._seen: set[str] = {k for k in (match_key(n) for n in initial) if k}

    def check_and_add(self, invoice_number: str | None) -> bool:
        """Record the number; True when it had already been seen."""
        key = match_key(invoice_number)
        if not key:
            return False
        with self._lock:
            if key in self._seen:
                return True
            self._seen.add(key)
            return False

    def snapshot(self) -> list[str]:
        with self._lock:
            return sorted(self._seen)

    def __contains__(self, invoice_number: object) -> bool:
        key = match_key(invoice_number if isinstance(invoice_number, str) else None)
        with self._lock:
            return bool(key) and key in self._seen

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
