from __future__ import annotations

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Protocol

from compliance_client.exceptions import NoActiveDocumentError, SessionNotHydratedError

DOCUMENT_KEY = "documentId"
ANALYSIS_KEY = "analysisId"

logger = logging.getLogger(__name__)


class SessionBackend(Protocol):
    """Durable storage for one record of identity keys per session key."""

    def load(self, session_key: str) -> Dict[str, str]: ...

    def save(self, session_key: str, values: Dict[str, str]) -> None: ...

    def delete(self, session_key: str) -> None: ...


class MemorySessionBackend:
    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, str]] = {}
        self.writes = 0

    def load(self, session_key: str) -> Dict[str, str]:
        return dict(self.records.get(session_key, {}))

    def save(self, session_key: str, values: Dict[str, str]) -> None:
        self.writes += 1
        self.records[session_key] = dict(values)

    def delete(self, session_key: str) -> None:
        self.writes += 1
        self.records.pop(session_key, None)


class FileSessionBackend:
    """One JSON file per session key under a storage directory."""

    def __init__(self, storage_dir: Path | str):
        self.storage_dir = Path(storage_dir)

    def _path(self, session_key: str) -> Path:
        safe_key = re.sub(r"[^A-Za-z0-9_.-]+", "_", session_key).strip(".") or "default"
        return self.storage_dir / f"{safe_key}.json"

    def load(self, session_key: str) -> Dict[str, str]:
        path = self._path(session_key)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "Discarding unreadable session record", extra={"path": str(path), "error": str(exc)}
            )
            return {}
        if not isinstance(data, dict):
            return {}
        return {key: value for key, value in data.items() if isinstance(value, str)}

    def save(self, session_key: str, values: Dict[str, str]) -> None:
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(session_key)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(values), encoding="utf-8")
        tmp_path.replace(path)

    def delete(self, session_key: str) -> None:
        self._path(session_key).unlink(missing_ok=True)


class SessionIdentityStore:
    """Current document and analysis identities for one session key.

    Values live in memory and every change is mirrored to the backend in a
    single write. Nothing can be read until ``hydrate()`` has loaded the
    durable record, so a restarted client never acts on a default state that
    the durable record is about to replace.
    """

    def __init__(self, backend: SessionBackend, session_key: str):
        self.backend = backend
        self.session_key = session_key
        self._values: Dict[str, str] = {}
        self._hydrated = asyncio.Event()

    @property
    def is_hydrated(self) -> bool:
        return self._hydrated.is_set()

    def hydrate(self) -> None:
        if self.is_hydrated:
            return
        self._values = self.backend.load(self.session_key)
        self._hydrated.set()
        logger.debug(
            "Session hydrated",
            extra={"session_key": self.session_key, "document_id": self._values.get(DOCUMENT_KEY)},
        )

    async def wait_hydrated(self) -> None:
        await self._hydrated.wait()

    def _require_hydrated(self) -> None:
        if not self.is_hydrated:
            raise SessionNotHydratedError(f"Session {self.session_key} has not been hydrated yet")

    def _persist(self) -> None:
        if self._values:
            self.backend.save(self.session_key, dict(self._values))
        else:
            self.backend.delete(self.session_key)

    def get_document_identity(self) -> Optional[str]:
        self._require_hydrated()
        return self._values.get(DOCUMENT_KEY)

    def set_document_identity(self, document_id: str) -> None:
        # A new document invalidates whatever analysis belonged to the previous one.
        self._require_hydrated()
        self._values = {DOCUMENT_KEY: document_id}
        self._persist()

    def clear_document_identity(self) -> None:
        self.clear()

    def get_analysis_identity(self) -> Optional[str]:
        self._require_hydrated()
        return self._values.get(ANALYSIS_KEY)

    def set_analysis_identity(self, analysis_id: str) -> None:
        self._require_hydrated()
        if DOCUMENT_KEY not in self._values:
            raise NoActiveDocumentError("Cannot store an analysis without a current document")
        self._values[ANALYSIS_KEY] = analysis_id
        self._persist()

    def clear_analysis_identity(self) -> None:
        self._require_hydrated()
        if self._values.pop(ANALYSIS_KEY, None) is not None:
            self._persist()

    def clear(self) -> None:
        self._require_hydrated()
        self._values = {}
        self._persist()
