# src/marketplace_bff/session_store.py

"""
Durable server-side session storage.

Sessions live in a SQLite file through SqliteDict so they survive restarts and
are shared by every worker process on the host. Each operation opens and closes
its own handle; writes are serialized by a thread lock plus a cross-process
file lock, and each write is one SQLite statement, so a concurrent reader sees
either the old record or the new one.
"""
import json
import secrets
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

import structlog
from sqlitedict import SqliteDict  # type: ignore

from .errors import AuthError, AuthErrorKind
from .locks import StoreLockTimeout, store_write_lock
from .log import session_hint
from .session_data import AuthType, SessionMetadata, SessionRecord

logger = structlog.get_logger("marketplace_bff.session_store")

SESSION_ID_BYTES = 32
MAX_ID_ATTEMPTS = 5

_STORE_ERRORS = (sqlite3.Error, OSError, RuntimeError, StoreLockTimeout)


class SqliteDictStore:
    """Shared plumbing for SqliteDict-backed tables in one database file."""

    def __init__(self, db_path: Path, *, lock_timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._lock_path = self.db_path.with_suffix(self.db_path.suffix + ".lock")
        self._lock_timeout_s = lock_timeout_s

    def _table(self, name: str) -> SqliteDict:
        # Open/close per operation; avoids sharing SQLite handles across threads.
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return SqliteDict(
            str(self.db_path),
            tablename=name,
            autocommit=True,
            encode=json.dumps,
            decode=json.loads,
        )

    @contextmanager
    def _write_lock(self) -> Iterator[None]:
        with self._lock, store_write_lock(self._lock_path, timeout_s=self._lock_timeout_s):
            yield

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Translate storage-layer failures into STORE_UNAVAILABLE."""
        try:
            yield
        except AuthError:
            raise
        except _STORE_ERRORS as e:
            logger.error("store_failure", operation=operation, db_path=str(self.db_path), error=str(e))
            raise AuthError(AuthErrorKind.STORE_UNAVAILABLE, f"{operation} failed: {e}") from e


class SessionStore(SqliteDictStore):
    TABLE = "sessions"

    def __init__(
        self,
        db_path: Path,
        *,
        max_age_seconds: int = 7 * 24 * 60 * 60,
        lock_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = lambda: secrets.token_urlsafe(SESSION_ID_BYTES),
    ) -> None:
        super().__init__(db_path, lock_timeout_s=lock_timeout_s)
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._id_factory = id_factory

    def _sessions(self) -> SqliteDict:
        return self._table(self.TABLE)

    def _is_expired(self, record: SessionRecord, now: float) -> bool:
        return now - record.created_at > self.max_age_seconds

    # --- Operations ---

    def create_session(
        self,
        refresh_token: str,
        auth_type: Union[AuthType, str],
        metadata: Optional[Union[SessionMetadata, Dict[str, Any]]] = None,
    ) -> str:
        if not refresh_token:
            raise ValueError("refresh_token is required")
        auth_type = AuthType(auth_type)
        if metadata is None:
            meta = SessionMetadata()
        elif isinstance(metadata, SessionMetadata):
            meta = metadata
        else:
            meta = SessionMetadata(**metadata)

        with self._guard("create_session"), self._write_lock(), self._sessions() as db:
            for _ in range(MAX_ID_ATTEMPTS):
                session_id = self._id_factory()
                if session_id not in db:
                    break
                logger.warning("session_id_collision", session=session_hint(session_id))
            else:
                raise AuthError(AuthErrorKind.STORE_UNAVAILABLE, "could not allocate a unique session id")

            now = self._clock()
            record = SessionRecord(
                session_id=session_id,
                refresh_token=refresh_token,
                auth_type=auth_type,
                user_id=meta.user_id,
                ip_address=meta.ip_address,
                user_agent=meta.user_agent,
                created_at=now,
                last_rotated_at=now,
            )
            db[session_id] = record.model_dump(mode="json")

        logger.info("session_created", session=session_hint(session_id), auth_type=auth_type.value)
        return session_id

    def get_session(self, session_id: str) -> SessionRecord:
        if not session_id:
            raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, "empty session id")
        with self._guard("get_session"):
            with self._lock, self._sessions() as db:
                raw = db.get(session_id)
            if raw is None:
                raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, f"session {session_hint(session_id)} not found")
            record = SessionRecord(**raw)
            if self._is_expired(record, self._clock()):
                logger.info("session_expired", session=session_hint(session_id))
                self.delete_session(session_id)
                raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, f"session {session_hint(session_id)} expired")
            return record

    def rotate_session(self, session_id: str, new_refresh_token: str) -> SessionRecord:
        if not new_refresh_token:
            raise ValueError("new_refresh_token is required")
        with self._guard("rotate_session"), self._write_lock(), self._sessions() as db:
            raw = db.get(session_id) if session_id else None
            if raw is None:
                raise AuthError(AuthErrorKind.SESSION_NOT_FOUND, f"session {session_hint(session_id)} not found")
            current = SessionRecord(**raw)
            # Rotation time is strictly monotonic per session even on coarse clocks.
            rotated_at = max(self._clock(), current.last_rotated_at + 1e-6)
            updated = current.model_copy(update={"refresh_token": new_refresh_token, "last_rotated_at": rotated_at})
            db[session_id] = updated.model_dump(mode="json")

        logger.info("session_rotated", session=session_hint(session_id))
        return updated

    def delete_session(self, session_id: str) -> None:
        if not session_id:
            return
        with self._guard("delete_session"), self._write_lock(), self._sessions() as db:
            existed = session_id in db
            if existed:
                del db[session_id]
        logger.info("session_deleted", session=session_hint(session_id), existed=existed)

    def purge_expired(self, max_age_seconds: Optional[int] = None) -> int:
        max_age = self.max_age_seconds if max_age_seconds is None else max_age_seconds
        now = self._clock()
        removed = 0
        with self._guard("purge_expired"), self._write_lock(), self._sessions() as db:
            expired = [sid for sid, raw in db.items() if now - float(raw.get("created_at", 0)) > max_age]
            for sid in expired:
                del db[sid]
                removed += 1
        if removed:
            logger.info("sessions_purged", count=removed)
        return removed

    def session_stats(self) -> Dict[str, int]:
        with self._guard("session_stats"):
            with self._lock, self._sessions() as db:
                return {"count": len(db)}
