"""
SESSION_LOG
===========

Store and load session logs as JSON files.

Directory Structure
-------------------
::

    data/cycleCore/SESSIONS/
    ├── {session_id}.json
    └── ...

Each file holds::

    {
      "session_id": "...",
      "saved_at": "2026-01-01T12:00:00+00:00",
      "total_cycles": 3,
      "summary": {...},          # HistorySnapshot
      "cycles": [{...}, ...]     # Cycle.to_dict()
    }

Cleanup
-------
After each save, logs beyond ``MAX_SESSIONS`` (50) are deleted, oldest
first by modification time.
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..models import Cycle
from .history import CycleHistoryStore

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


class SessionLogStore:
    """Persists history stores to ``{sessions_dir}/{session_id}.json``."""

    MAX_SESSIONS = 50

    def __init__(self, sessions_dir: str):
        self.sessions_dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path:
        if not _SAFE_ID.match(session_id) or session_id.startswith("."):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}.json"

    def save(self, session_id: str, history: CycleHistoryStore) -> Path:
        """
        Write the current history to disk.

        Args:
            session_id: File stem for the log
            history: Store to serialize

        Returns:
            Path of the written file
        """
        path = self._path(session_id)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        cycles = history.all()
        data = {
            "session_id": session_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "total_cycles": len(cycles),
            "summary": history.snapshot().to_dict(),
            "cycles": [c.to_dict() for c in cycles],
        }
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        logger.info("Saved session %s (%d cycles) to %s", session_id, len(cycles), path)

        self._cleanup_old_sessions()
        return path

    def load(self, session_id: str) -> Optional[List[Cycle]]:
        """Load a saved session's cycles. Returns None if it does not exist."""
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [Cycle.from_dict(c) for c in data.get("cycles", [])]
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning("Could not read session log %s: %s", path, e)
            return None

    def load_into(self, session_id: str, history: CycleHistoryStore) -> int:
        """Append a saved session's cycles to a history store."""
        cycles = self.load(session_id) or []
        for cycle in cycles:
            history.store(cycle)
        return len(cycles)

    def list_sessions(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Summaries of saved sessions, newest first."""
        if not self.sessions_dir.exists():
            return []
        sessions = []
        for path in sorted(self.sessions_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Skipping unreadable session log %s", path)
                continue
            sessions.append({
                "session_id": data.get("session_id", path.stem),
                "saved_at": data.get("saved_at"),
                "total_cycles": data.get("total_cycles", 0),
            })
            if len(sessions) >= limit:
                break
        return sessions

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _cleanup_old_sessions(self) -> int:
        """Delete the oldest logs beyond MAX_SESSIONS. Returns how many were removed."""
        files = sorted(self.sessions_dir.glob("*.json"), key=lambda p: p.stat().st_mtime)
        if len(files) <= self.MAX_SESSIONS:
            return 0
        deleted = 0
        for path in files[:len(files) - self.MAX_SESSIONS]:
            try:
                path.unlink()
                deleted += 1
            except OSError as e:
                logger.warning("Failed to delete old session %s: %s", path, e)
        if deleted:
            logger.info("Cleaned up %d old sessions (kept %d)", deleted, self.MAX_SESSIONS)
        return deleted
