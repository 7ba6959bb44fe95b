from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _resolve_from_root(root: Path, value: str) -> Path:
    candidate = Path(value)
    if candidate.is_absolute():
        return candidate
    return (root / candidate).resolve()


def find_project_root(start: Path | None = None) -> Path:
    cursor = (start or Path.cwd()).resolve()
    for candidate in [cursor, *cursor.parents]:
        if (candidate / "pyproject.toml").exists():
            return candidate
    raise RuntimeError("Could not find project root (missing pyproject.toml in parent chain).")


@dataclass(frozen=True, slots=True)
class ProjectPaths:
    root: Path
    data_dir: Path
    sessions_dir: Path
    blobs_dir: Path
    reports_dir: Path
    rules_dir: Path

    @classmethod
    def detect(cls, start: Path | None = None) -> "ProjectPaths":
        root = find_project_root(start)

        data_dir = _resolve_from_root(root, os.getenv("INVOICE_AUDIT_DATA_DIR", "data"))
        rules_dir = _resolve_from_root(root, os.getenv("INVOICE_AUDIT_RULES_DIR", str(data_dir / "rules")))

        return cls.under(root, data_dir, rules_dir=rules_dir)

    @classmethod
    def under(cls, root: Path, data_dir: Path, *, rules_dir: Path | None = None) -> "ProjectPaths":
        return cls(
            root=root,
            data_dir=data_dir,
            sessions_dir=data_dir / "sessions",
            blobs_dir=data_dir / "blobs",
            reports_dir=data_dir / "reports",
            rules_dir=rules_dir or data_dir / "rules",
        )

    def ensure_dirs(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.reports_dir.mkdir(parents=True, exist_ok=True)
