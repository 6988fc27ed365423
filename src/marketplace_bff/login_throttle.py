# src/marketplace_bff/login_throttle.py

import math
import time
from pathlib import Path
from typing import Callable, Optional, Union

import structlog
from pydantic import BaseModel

from .backoff import calculate_backoff_delay
from .config import Settings
from .errors import AuthError, AuthErrorKind
from .session_data import AuthType
from .session_store import SqliteDictStore

logger = structlog.get_logger("marketplace_bff.login_throttle")


class AttemptRecord(BaseModel):
    failures: int = 0
    last_failure_at: float = 0.0
    locked_until: Optional[float] = None


def attempt_key(ip_address: Optional[str], auth_type: Union[AuthType, str], username: str) -> str:
    return f"{ip_address or 'unknown'}:{AuthType(auth_type).value}:{(username or '').strip().lower()}"


class LoginThrottle(SqliteDictStore):
    """
    Failed-login bookkeeping per (client ip, auth type, username).

    After each failure the next attempt must wait calculate_backoff_delay(base,
    failures - 1) milliseconds; once max_failures is reached the key is locked
    for lockout_seconds. A successful login clears the record.
    """

    TABLE = "login_attempts"

    def __init__(
        self,
        db_path: Path,
        *,
        max_failures: int = 5,
        lockout_seconds: int = 30 * 60,
        backoff_base_ms: float = 500,
        backoff_max_ms: float = 30_000,
        lock_timeout_s: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(db_path, lock_timeout_s=lock_timeout_s)
        self.max_failures = max_failures
        self.lockout_seconds = lockout_seconds
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "LoginThrottle":
        return cls(
            settings.SESSION_DB_PATH,
            max_failures=settings.LOGIN_MAX_FAILURES,
            lockout_seconds=settings.LOGIN_LOCKOUT_SECONDS,
            backoff_base_ms=settings.LOGIN_BACKOFF_BASE_MS,
            backoff_max_ms=settings.LOGIN_BACKOFF_MAX_MS,
            lock_timeout_s=settings.STORE_TIMEOUT_SECONDS,
            **kwargs,
        )

    def _load(self, key: str) -> AttemptRecord:
        with self._lock, self._table(self.TABLE) as db:
            raw = db.get(key)
        return AttemptRecord(**raw) if raw else AttemptRecord()

    def wait_seconds(self, record: AttemptRecord, now: float) -> float:
        """Seconds until the next attempt is allowed (0 when allowed now)."""
        if record.locked_until is not None:
            return max(0.0, record.locked_until - now)
        if record.failures <= 0:
            return 0.0
        delay_ms = calculate_backoff_delay(self.backoff_base_ms, record.failures - 1, max_delay_ms=self.backoff_max_ms)
        return max(0.0, record.last_failure_at + delay_ms / 1000.0 - now)

    def check(self, key: str) -> None:
        """Raise RATE_LIMITED when the key is locked or still backing off."""
        with self._guard("throttle_check"):
            record = self._load(key)
        now = self._clock()
        if record.locked_until is not None and record.locked_until <= now:
            # Lockout served; start counting again.
            self.reset(key)
            return
        wait = self.wait_seconds(record, now)
        if wait > 0:
            raise AuthError(
                AuthErrorKind.RATE_LIMITED,
                f"login throttled for {key.split(':', 1)[0]} failures={record.failures}",
                retry_after=max(1, math.ceil(wait)),
            )

    def record_failure(self, key: str) -> AttemptRecord:
        now = self._clock()
        with self._guard("throttle_record_failure"), self._write_lock(), self._table(self.TABLE) as db:
            raw = db.get(key)
            record = AttemptRecord(**raw) if raw else AttemptRecord()
            record.failures += 1
            record.last_failure_at = now
            if record.failures >= self.max_failures:
                record.locked_until = now + self.lockout_seconds
            db[key] = record.model_dump()

        if record.locked_until is not None:
            logger.warning("login_locked", failures=record.failures, lockout_seconds=self.lockout_seconds)
        else:
            logger.info("login_failure_recorded", failures=record.failures)
        return record

    def record_success(self, key: str) -> None:
        self.reset(key)

    def reset(self, key: str) -> None:
        with self._guard("throttle_reset"), self._write_lock(), self._table(self.TABLE) as db:
            if key in db:
                del db[key]

    def is_locked(self, key: str) -> bool:
        with self._guard("throttle_is_locked"):
            record = self._load(key)
        return record.locked_until is not None and record.locked_until > self._clock()
