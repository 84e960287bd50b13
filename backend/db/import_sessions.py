"""
File-backed scratch storage for the two-step import flow.

`POST /data_exchange/import/match` stores the uploaded document, its match
results and stats under a fresh session id; `import/execute` reads them back
and stores the report. Files live in IMPORT_SESSION_DIR as
`<session_id>_<part>.json`.
"""

import json
import logging
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from config import first_env

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60
_PARTS = ("data", "matches", "stats", "version", "report")


def _default_session_dir() -> Path:
    configured = first_env(["IMPORT_SESSION_DIR"])
    if configured:
        return Path(configured).expanduser()
    return Path(__file__).resolve().parent.parent / "tmp" / "data_exchange"


class ImportSessionStore:
    def __init__(self, base_dir: Optional[Union[Path, str]] = None):
        self.base_dir = Path(base_dir) if base_dir is not None else _default_session_dir()

    @staticmethod
    def _valid_session_id(session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        try:
            return str(uuid.UUID(str(session_id))) == str(session_id).lower()
        except ValueError:
            return False

    def _path(self, session_id: str, part: str) -> Path:
        return self.base_dir / f"{session_id}_{part}.json"

    def _write(self, session_id: str, part: str, payload: Any) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self._path(session_id, part).write_text(
            json.dumps(payload, ensure_ascii=False), encoding="utf-8"
        )

    def _read(self, session_id: str, part: str) -> Optional[Any]:
        if not self._valid_session_id(session_id):
            return None
        path = self._path(session_id, part)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except ValueError as exc:
            logger.error("ImportSessionStore: failed to parse %s file: %s", part, exc)
            return None

    def create(
        self,
        import_data: Dict[str, Any],
        matches: List[Dict[str, Any]],
        stats: Dict[str, Any],
        version: Optional[str],
    ) -> str:
        session_id = str(uuid.uuid4())
        self._write(session_id, "data", import_data)
        self._write(session_id, "matches", matches)
        self._write(session_id, "stats", stats)
        self._write(session_id, "version", {"version": version})
        return session_id

    def exists(self, session_id: Optional[str]) -> bool:
        return self._valid_session_id(session_id) and self._path(session_id, "data").exists()

    def load_data(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._read(session_id, "data")

    def load_matches(self, session_id: str) -> Optional[List[Dict[str, Any]]]:
        return self._read(session_id, "matches")

    def load_stats(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._read(session_id, "stats")

    def load_version(self, session_id: str) -> Optional[str]:
        payload = self._read(session_id, "version")
        if isinstance(payload, dict):
            return payload.get("version")
        return None

    def store_report(self, session_id: str, report: Dict[str, Any]) -> None:
        if not self._valid_session_id(session_id):
            raise ValueError(f"Invalid import session id: {session_id!r}")
        self._write(session_id, "report", report)

    def load_report(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self._read(session_id, "report")

    def report_exists(self, session_id: Optional[str]) -> bool:
        return (
            self._valid_session_id(session_id)
            and self._path(session_id, "report").exists()
        )

    def cleanup(self, session_id: Optional[str], keep_report: bool = False) -> None:
        if not self._valid_session_id(session_id):
            return
        for part in _PARTS:
            if keep_report and part == "report":
                continue
            self._path(session_id, part).unlink(missing_ok=True)

    def cleanup_old_sessions(self, max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS) -> int:
        """Delete session files older than `max_age_seconds`; returns files removed."""
        if not self.base_dir.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for path in self.base_dir.glob("*.json"):
            if path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info("ImportSessionStore: purged %d stale session files", removed)
        return removed
