"""Result store: cached composite analyses, chat transcripts and usage counters."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from pydantic import ValidationError

from .errors import StoreError
from .models import ChatMessage, CompositeAnalysis, StoredAnalysis

logger = logging.getLogger("codeatlas.store")


@runtime_checkable
class ResultStore(Protocol):
    """Keyed storage for finished analyses plus a monotonic usage counter."""

    def get(self, repository_url: str, user_id: str) -> CompositeAnalysis | None: ...

    def put(self, repository_url: str, user_id: str, analysis: CompositeAnalysis) -> None: ...

    def list_analyses(self, user_id: str) -> list[StoredAnalysis]: ...

    def save_chat_history(
        self, repository_url: str, user_id: str, messages: Sequence[Mapping[str, str]]
    ) -> bool: ...

    def increment_usage_counter(self, user_id: str) -> int: ...

    def get_usage_counter(self, user_id: str) -> int: ...


def _record(
    repository_url: str,
    user_id: str,
    analysis: CompositeAnalysis,
    previous: StoredAnalysis | None,
) -> StoredAnalysis:
    # re-analysis keeps the conversation held against the same repository
    return StoredAnalysis(
        repository_url=repository_url,
        user_id=user_id,
        analysis=analysis,
        chat_history=previous.chat_history if previous is not None else [],
        last_analyzed_at=analysis.generated_at,
    )


def _newest_first(records: list[StoredAnalysis]) -> list[StoredAnalysis]:
    return sorted(records, key=lambda r: r.last_analyzed_at, reverse=True)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryResultStore:
    """Process-local store. Documents are copied in and out, never shared."""

    def __init__(self) -> None:
        self._documents: dict[tuple[str, str], dict[str, Any]] = {}
        self._usage: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, repository_url: str, user_id: str) -> CompositeAnalysis | None:
        record = self._load(repository_url, user_id)
        return record.analysis if record is not None else None

    def put(self, repository_url: str, user_id: str, analysis: CompositeAnalysis) -> None:
        with self._lock:
            record = _record(repository_url, user_id, analysis, self._load(repository_url, user_id))
            self._documents[(user_id, repository_url)] = record.to_document()

    def list_analyses(self, user_id: str) -> list[StoredAnalysis]:
        records = [
            StoredAnalysis.from_document(doc)
            for (owner, _), doc in list(self._documents.items())
            if owner == user_id
        ]
        return _newest_first(records)

    def save_chat_history(
        self, repository_url: str, user_id: str, messages: Sequence[Mapping[str, str]]
    ) -> bool:
        with self._lock:
            record = self._load(repository_url, user_id)
            if record is None:
                return False
            record.chat_history = [ChatMessage.model_validate(dict(m)) for m in messages]
            self._documents[(user_id, repository_url)] = record.to_document()
            return True

    def increment_usage_counter(self, user_id: str) -> int:
        with self._lock:
            self._usage[user_id] = self._usage.get(user_id, 0) + 1
            return self._usage[user_id]

    def get_usage_counter(self, user_id: str) -> int:
        with self._lock:
            return self._usage.get(user_id, 0)

    def _load(self, repository_url: str, user_id: str) -> StoredAnalysis | None:
        document = self._documents.get((user_id, repository_url))
        if document is None:
            return None
        return StoredAnalysis.from_document(document)

    def __len__(self) -> int:
        return len(self._documents)


# ---------------------------------------------------------------------------
# JSON files
# ---------------------------------------------------------------------------

def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


class JsonFileResultStore:
    """One JSON file per (user, repository) under *root*; counters in ``usage.json``.

    Layout::

        <root>/analyses/<user digest>/<url digest>.json
        <root>/usage.json

    Every write goes to a temporary file in the target directory and is
    then moved into place with ``os.replace``, so readers never observe a
    half-written document.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()

    @property
    def analyses_dir(self) -> Path:
        return self.root / "analyses"

    @property
    def usage_file(self) -> Path:
        return self.root / "usage.json"

    def user_dir(self, user_id: str) -> Path:
        return self.analyses_dir / _digest(user_id)

    def document_path(self, repository_url: str, user_id: str) -> Path:
        return self.user_dir(user_id) / f"{_digest(repository_url)}.json"

    # -- analyses -----------------------------------------------------------

    def get(self, repository_url: str, user_id: str) -> CompositeAnalysis | None:
        record = self._read_record(self.document_path(repository_url, user_id))
        return record.analysis if record is not None else None

    def put(self, repository_url: str, user_id: str, analysis: CompositeAnalysis) -> None:
        path = self.document_path(repository_url, user_id)
        with self._lock:
            record = _record(repository_url, user_id, analysis, self._read_record(path))
            self._write_json(path, record.to_document())
        logger.info("Saved analysis for %s → %s", repository_url, path)

    def list_analyses(self, user_id: str) -> list[StoredAnalysis]:
        folder = self.user_dir(user_id)
        if not folder.is_dir():
            return []
        records = [self._read_record(path) for path in sorted(folder.glob("*.json"))]
        return _newest_first([r for r in records if r is not None])

    def save_chat_history(
        self, repository_url: str, user_id: str, messages: Sequence[Mapping[str, str]]
    ) -> bool:
        path = self.document_path(repository_url, user_id)
        with self._lock:
            record = self._read_record(path)
            if record is None:
                return False
            record.chat_history = [ChatMessage.model_validate(dict(m)) for m in messages]
            self._write_json(path, record.to_document())
        logger.debug("Saved %d chat message(s) for %s", len(messages), repository_url)
        return True

    # -- usage counters -----------------------------------------------------

    def increment_usage_counter(self, user_id: str) -> int:
        with self._lock:
            usage = self._read_usage()
            usage[user_id] = int(usage.get(user_id, 0)) + 1
            self._write_json(self.usage_file, usage)
            return usage[user_id]

    def get_usage_counter(self, user_id: str) -> int:
        with self._lock:
            return int(self._read_usage().get(user_id, 0))

    # -- helpers ------------------------------------------------------------

    def _read_record(self, path: Path) -> StoredAnalysis | None:
        if not path.exists():
            return None
        try:
            return StoredAnalysis.from_document(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise StoreError(f"Cannot read cached analysis {path}: {exc}") from exc

    def _read_usage(self) -> dict[str, int]:
        if not self.usage_file.exists():
            return {}
        try:
            data = json.loads(self.usage_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(f"Cannot read usage counters {self.usage_file}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreError(f"Usage counters in {self.usage_file} are not an object")
        return data

    def _write_json(self, path: Path, payload: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, indent=2, default=str)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, TypeError, ValueError) as exc:
            raise StoreError(f"Cannot write {path}: {exc}") from exc
