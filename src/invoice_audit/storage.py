from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

from .models import SessionMeta, SessionSnapshot
from .session import AuditSession


logger = logging.getLogger(__name__)


def slug(value: str) -> str:
    out = []
    for ch in value.casefold():
        if ch.isalnum() or ch in "-_":
            out.append(ch)
        else:
            out.append("_")
    slug_value = "".join(out)
    while "__" in slug_value:
        slug_value = slug_value.replace("__", "_")
    return slug_value.strip("_") or "unknown"


def write_json(path: Path, data: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


@dataclass(frozen=True, slots=True)
class BlobStore:
    root: Path

    def _path(self, session_id: str, document_id: str) -> Path:
        digest = hashlib.sha1(document_id.encode("utf-8")).hexdigest()[:10]
        return self.root / slug(session_id) / f"{slug(document_id)}-{digest}.bin"

    def put(self, session_id: str, document_id: str, content: bytes) -> Path:
        path = self._path(session_id, document_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return path

    def get(self, session_id: str, document_id: str) -> bytes | None:
        path = self._path(session_id, document_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete(self, session_id: str, document_id: str) -> None:
        self._path(session_id, document_id).unlink(missing_ok=True)

    def prune(self, max_age_s: float = 24 * 60 * 60, *, now: float | None = None) -> int:
        cutoff = (now if now is not None else time.time()) - max_age_s
        removed = 0
        if not self.root.exists():
            return 0
        for path in self.root.glob("*/*.bin"):
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("Pruned %d stored document files older than %.0fs", removed, max_age_s)
        return removed


@dataclass(frozen=True, slots=True)
class SessionStore:
    sessions_dir: Path
    blobs: BlobStore

    def _path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{slug(session_id)}.json"

    def save(self, session: AuditSession) -> Path:
        """Write the JSON snapshot plus any document content not stored yet."""
        for document_id in sorted(session.unsaved_content.copy()):
            document = session.documents.get(document_id)
            if document is not None and document.content is not None:
                self.blobs.put(session.id, document.id, document.content)
            session.unsaved_content.discard(document_id)
        path = self._path(session.id)
        write_json(path, session.to_snapshot().model_dump(mode="json"))
        return path

    def load(self, session_id: str) -> AuditSession:
        path = self._path(session_id)
        if not path.exists():
            raise FileNotFoundError(str(path))
        snapshot = SessionSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        return AuditSession.from_snapshot(snapshot)

    def load_content(self, session: AuditSession, document_id: str) -> bytes | None:
        document = session.documents.get(document_id)
        if document is None:
            return None
        if document.content is None:
            document.content = self.blobs.get(session.id, document_id)
        return document.content

    def list_sessions(self) -> list[SessionMeta]:
        metas: list[SessionMeta] = []
        if not self.sessions_dir.exists():
            return metas
        for path in sorted(self.sessions_dir.glob("*.json")):
            snapshot = SessionSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
            metas.append(
                SessionMeta(
                    id=snapshot.id,
                    name=snapshot.name,
                    created_at=snapshot.created_at,
                    updated_at=snapshot.updated_at,
                    document_count=len(snapshot.documents),
                    ledger_count=len(snapshot.ledger_records),
                )
            )
        metas.sort(key=lambda m: m.updated_at, reverse=True)
        return metas

    def delete(self, session_id: str) -> None:
        self._path(session_id).unlink(missing_ok=True)
