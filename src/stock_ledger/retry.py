"""Bounded exponential-backoff retries with a local backup fallback.

Each write runs through :meth:`RetryController.execute`, which drives this
state machine::

    ATTEMPT(1) -> success -> DONE
    ATTEMPT(n) -> retryable, n < max -> WAIT(backoff(n)) -> ATTEMPT(n+1)
    ATTEMPT(n) -> retryable, n == max -> FAILED (payload kept in BackupCache)
    ATTEMPT(n) -> anything else -> error re-raised

Attempts are strictly sequential. The sleep function and the cache clock
are injectable so tests never wait on a real clock.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from . import get_logger
from .constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CEILING_SECONDS,
    DEFAULT_BACKUP_TTL_SECONDS,
    DEFAULT_MAX_RETRIES,
    RETRYABLE_ERROR_CODES,
    RETRYABLE_MESSAGE_MARKERS,
    BackupKind,
)
from .errors import (
    AuthError,
    BusinessRuleViolation,
    PermissionDeniedError,
    RetryExhaustedError,
    StorageError,
    TransientStorageError,
    ValidationError,
)


log = get_logger(__name__)

BackupKey = Tuple[str, str, str]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve for a write."""

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_base: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_ceiling: float = DEFAULT_BACKOFF_CEILING_SECONDS

    def backoff(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt``."""

        return min(self.backoff_base ** attempt, self.backoff_ceiling)


class SaveState(str, Enum):
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class SaveOutcome:
    """Result of one :meth:`RetryController.execute` call."""

    state: SaveState
    attempts: int
    label: str
    result: Any = None
    error: Optional[BaseException] = None
    backup_key: Optional[BackupKey] = None
    backup_saved: bool = False

    @property
    def succeeded(self) -> bool:
        return self.state is SaveState.DONE

    def raise_for_failure(self) -> Any:
        """Return the operation result, or raise :class:`RetryExhaustedError`."""

        if self.state is SaveState.DONE:
            return self.result
        raise RetryExhaustedError(
            f"{self.label} failed after {self.attempts} attempts: {self.error}",
            attempts=self.attempts,
            backup_saved=self.backup_saved,
            context=self.label,
            original_error=self.error,
        ) from self.error


@dataclass(frozen=True)
class BackupUsage:
    items: int
    size_bytes: int


@dataclass(frozen=True)
class _BackupEntry:
    payload: Dict[str, Any]
    saved_at: float


def backup_key(kind: BackupKind, store_id: str, day: date) -> BackupKey:
    return (kind.value, store_id, day.isoformat())


def order_backup_key(store_id: str, order_id: str) -> BackupKey:
    """Backup slot for one order; a store can hold several orders per day."""

    return (BackupKind.ORDER.value, store_id, order_id)


class BackupCache:
    """In-process store of payloads whose writes exhausted their retries.

    Entries expire ``ttl_seconds`` after they were saved; expired entries are
    evicted lazily on read.
    """

    def __init__(self, ttl_seconds: float = DEFAULT_BACKUP_TTL_SECONDS, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[BackupKey, _BackupEntry] = {}

    def save(self, key: BackupKey, payload: Dict[str, Any]) -> None:
        self._entries[key] = _BackupEntry(payload=dict(payload), saved_at=self._clock())
        log.info("Backup saved for %s", "/".join(key))

    def get(self, key: BackupKey) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.saved_at > self.ttl_seconds:
            del self._entries[key]
            log.info("Backup for %s expired", "/".join(key))
            return None
        return dict(entry.payload)

    def remove(self, key: BackupKey) -> None:
        if self._entries.pop(key, None) is not None:
            log.debug("Backup for %s cleared", "/".join(key))

    def clear(self) -> None:
        self._entries.clear()

    def keys(self) -> List[BackupKey]:
        """Live keys, after evicting anything past its TTL."""

        return [key for key in list(self._entries) if self.get(key) is not None]

    def usage(self) -> BackupUsage:
        live = self.keys()
        size = sum(len(json.dumps(self._entries[key].payload, default=str)) for key in live)
        return BackupUsage(items=len(live), size_bytes=size)


def is_retryable(error: BaseException) -> bool:
    """Classify ``error`` as a connectivity-class failure worth another attempt."""

    if isinstance(error, (PermissionDeniedError, AuthError, ValidationError, BusinessRuleViolation)):
        return False
    if isinstance(error, TransientStorageError):
        return True
    if isinstance(error, StorageError) and error.code in RETRYABLE_ERROR_CODES:
        return True
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in RETRYABLE_MESSAGE_MARKERS)


class RetryController:
    """Run write operations under a :class:`RetryPolicy`."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        *,
        backup_cache: Optional[BackupCache] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.backup_cache = backup_cache if backup_cache is not None else BackupCache()
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], Any],
        *,
        label: str,
        backup_key: Optional[BackupKey] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> SaveOutcome:
        """Call ``operation`` until it succeeds or the retry budget runs out.

        Args:
            operation (Callable[[], Any]): Zero-argument write to attempt.
            label (str): Human-readable name used in logs and errors.
            backup_key (BackupKey | None): Cache slot for ``payload`` when
                every attempt fails.
            payload (dict | None): Data needed to replay the write later.

        Returns:
            SaveOutcome: ``DONE`` with the operation's return value, or
                ``FAILED`` after ``max_retries`` retryable failures.

        Raises:
            Exception: Any non-retryable error, on the attempt it occurred.
        """

        max_retries = self.policy.max_retries
        last_error: Optional[BaseException] = None

        for attempt in range(1, max_retries + 1):
            log.info("%s: attempt %d of %d", label, attempt, max_retries)
            try:
                result = operation()
            except Exception as exc:
                if not is_retryable(exc):
                    log.error("%s: attempt %d failed with non-retryable error: %s", label, attempt, exc)
                    raise
                last_error = exc
                log.warning("%s: attempt %d failed: %s", label, attempt, exc)
                if attempt < max_retries:
                    delay = self.policy.backoff(attempt)
                    log.info("%s: waiting %.0fs before retrying", label, delay)
                    self._sleep(delay)
                continue

            if backup_key is not None:
                self.backup_cache.remove(backup_key)
            log.info("%s: succeeded on attempt %d", label, attempt)
            return SaveOutcome(state=SaveState.DONE, attempts=attempt, label=label, result=result)

        backup_saved = False
        if backup_key is not None and payload is not None:
            self.backup_cache.save(backup_key, payload)
            backup_saved = True
        log.error("%s: giving up after %d attempts (backup saved: %s)", label, max_retries, backup_saved)
        return SaveOutcome(
            state=SaveState.FAILED,
            attempts=max_retries,
            label=label,
            error=last_error,
            backup_key=backup_key,
            backup_saved=backup_saved,
        )
