"""Workspace walker producing hashed text documents for indexing."""

import hashlib
import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from viking_rag.logging import get_logger

log = get_logger(__name__)


@dataclass
class WorkspaceDocument:
    path: str
    content: str
    hash: str


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8", errors="ignore")).hexdigest()


def collect_workspace_documents(
    root: Path | str,
    *,
    include_extensions: Iterable[str] = (),
    exclude_dirs: Iterable[str] = (),
    max_file_bytes: int = 1_048_576,
    max_files: int = 5000,
) -> list[WorkspaceDocument]:
    """Walk ``root`` and return readable text files as documents.

    Paths are POSIX-style and relative to ``root``. Empty files, files over
    ``max_file_bytes`` and files with extensions outside
    ``include_extensions`` (when given) are skipped; the walk stops at
    ``max_files`` documents.
    """
    base = Path(root).expanduser().resolve()
    if not base.is_dir():
        return []
    extensions = {ext.strip().lower() for ext in include_extensions if ext.strip()}
    excluded = {name.strip().lower() for name in exclude_dirs if name.strip()}

    documents: list[WorkspaceDocument] = []
    for current, dirs, files in os.walk(base):
        dirs[:] = sorted(d for d in dirs if d.strip().lower() not in excluded)
        for filename in sorted(files):
            if len(documents) >= max_files:
                log.info("Workspace file cap reached", root=str(base), max_files=max_files)
                return documents
            file_path = Path(current) / filename
            if extensions and file_path.suffix.lower() not in extensions:
                continue
            try:
                stat = file_path.stat()
            except OSError:
                continue
            if not file_path.is_file() or stat.st_size <= 0 or stat.st_size > max_file_bytes:
                continue
            try:
                raw = file_path.read_text(encoding="utf-8", errors="ignore")
            except OSError as exc:
                log.debug("Skipping unreadable file", path=str(file_path), error=str(exc))
                continue
            if not raw.strip():
                continue
            rel_path = file_path.relative_to(base).as_posix()
            documents.append(WorkspaceDocument(path=rel_path, content=raw, hash=content_hash(raw)))
    return documents
