"""
BookGen V1.0 - Session Registry & Persistence
=============================================
``FileBlobStore`` keeps one JSON snapshot per session id on disk.
``SessionRegistry`` is the process-scoped owner of live sessions:

    startup   → rehydrate() loads snapshots, force-failing in-flight ones
    runtime   → create/get/save/delete, admission checks, delayed cleanup
    periodic  → sweep_expired(ttl) drops idle, non-generating sessions
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Optional

from bookgen.config import MAX_CONCURRENT_SESSIONS, SESSION_TTL, SESSIONS_DIR, BookConfig
from bookgen.state import (
    GENERATING,
    IN_FLIGHT_STATUSES,
    Session,
    fail_session,
    new_session,
    purge_content,
)

RESTART_FAILURE_MESSAGE = "Server restarted during generation"


class FileBlobStore:
    """Opaque key-value blob store: ``<directory>/<key>.json``."""

    def __init__(self, directory: Path | str = SESSIONS_DIR):
        self.directory = Path(directory)

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def put(self, key: str, snapshot: dict) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(snapshot, ensure_ascii=False), encoding="utf-8")
        tmp.replace(path)

    def get(self, key: str) -> Optional[dict]:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class SessionRegistry:
    """In-memory map of live sessions, mirrored to a blob store."""

    def __init__(self, blob_store: FileBlobStore | None = None):
        self.blob_store = blob_store
        self._sessions: dict[str, Session] = {}
        self._cleanup_handles: dict[str, asyncio.TimerHandle] = {}

    # ── CRUD ──
    def create_session(
        self,
        topic: str,
        model: str | None = None,
        author: str | None = None,
        config: BookConfig | None = None,
    ) -> Session:
        session = new_session(topic, model=model, author=author, config=config)
        self._sessions[session.id] = session
        self.save(session)
        return session

    def get(self, session_id: str) -> Optional[Session]:
        session = self._sessions.get(session_id)
        if session is None and self.blob_store is not None:
            snapshot = self.blob_store.get(session_id)
            if snapshot is not None:
                session = Session.from_dict(snapshot)
                self._sessions[session.id] = session
        return session

    def save(self, session: Session) -> None:
        self._sessions[session.id] = session
        if self.blob_store is not None:
            self.blob_store.put(session.id, session.to_dict())

    def delete(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is not None:
            purge_content(session)
        handle = self._cleanup_handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()
        if self.blob_store is not None:
            self.blob_store.delete(session_id)
        print(f"[Registry] 🗑️ Session {session_id[:8]} deleted")

    def all(self) -> list[Session]:
        return list(self._sessions.values())

    # ── Admission ──
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.status in IN_FLIGHT_STATUSES)

    def can_accept(self, max_concurrent: int = MAX_CONCURRENT_SESSIONS) -> bool:
        return self.active_count() < max_concurrent

    # ── Lifecycle ──
    def schedule_cleanup(self, session_id: str, delay: float, loop: asyncio.AbstractEventLoop | None = None):
        """Delete the session ``delay`` seconds from now on the running event loop."""
        loop = loop or asyncio.get_running_loop()
        previous = self._cleanup_handles.pop(session_id, None)
        if previous is not None:
            previous.cancel()
        handle = loop.call_later(delay, self._cleanup_due, session_id)
        self._cleanup_handles[session_id] = handle
        return handle

    def _cleanup_due(self, session_id: str) -> None:
        self._cleanup_handles.pop(session_id, None)
        self.delete(session_id)

    def sweep_expired(self, ttl: float = SESSION_TTL, now: float | None = None) -> list[str]:
        now = time.time() if now is None else now
        expired = [
            sid
            for sid, s in self._sessions.items()
            if s.status != GENERATING and now - s.last_activity_at > ttl
        ]
        for sid in expired:
            self.delete(sid)
        if expired:
            print(f"[Registry] 🧹 Swept {len(expired)} expired session(s)")
        return expired

    def rehydrate(self) -> int:
        """Load persisted snapshots. Sessions caught mid-flight are marked failed."""
        if self.blob_store is None:
            return 0
        loaded = 0
        for key in self.blob_store.keys():
            try:
                snapshot = self.blob_store.get(key)
                if snapshot is None:
                    continue
                session = Session.from_dict(snapshot)
            except (ValueError, TypeError, KeyError) as e:
                print(f"[Registry] ⚠️ Skipping unreadable snapshot {key}: {e}")
                continue
            if session.status in IN_FLIGHT_STATUSES:
                fail_session(session, RESTART_FAILURE_MESSAGE)
                self.blob_store.put(session.id, session.to_dict())
            self._sessions[session.id] = session
            loaded += 1
        print(f"[Registry] ♻️ Rehydrated {loaded} session(s)")
        return loaded
