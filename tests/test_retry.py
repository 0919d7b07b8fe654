"""Tests for the retry controller state machine and the backup cache."""

from __future__ import annotations

from datetime import date

import pytest

from stock_ledger.constants import BackupKind
from stock_ledger.errors import (
    AuthError,
    BusinessRuleViolation,
    NotFoundError,
    PermissionDeniedError,
    RetryExhaustedError,
    StorageError,
    TransientStorageError,
    ValidationError,
)
from stock_ledger.retry import (
    BackupCache,
    RetryController,
    RetryPolicy,
    SaveState,
    backup_key,
    is_retryable,
    order_backup_key,
)


KEY = backup_key(BackupKind.STOCK, "fc-road", date(2024, 1, 15))


class _Operation:
    """Callable that raises the queued errors in order, then succeeds."""

    def __init__(self, *errors: Exception, result: object = "written") -> None:
        self.errors = list(errors)
        self.calls = 0
        self.result = result

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def controller(sleep_calls, clock):
    return RetryController(RetryPolicy(), backup_cache=BackupCache(3600, clock=clock), sleep=sleep_calls.append)


def test_backoff_doubles_and_caps_at_ceiling():
    policy = RetryPolicy()

    assert [policy.backoff(n) for n in range(1, 7)] == [2, 4, 8, 16, 32, 32]


def test_success_on_first_attempt(controller, sleep_calls):
    operation = _Operation()

    outcome = controller.execute(operation, label="save", backup_key=KEY, payload={"stock": {}})

    assert outcome.state is SaveState.DONE
    assert outcome.attempts == 1
    assert outcome.result == "written"
    assert sleep_calls == []


def test_always_transient_exhausts_budget_and_saves_backup(controller, sleep_calls):
    """Five failing attempts, four waits in between, then FAILED with a backup entry."""

    operation = _Operation(*[TransientStorageError("unavailable") for _ in range(10)])
    payload = {"storeId": "fc-road", "stock": {"MILKSHAKE-Mango": "5"}}

    outcome = controller.execute(operation, label="save", backup_key=KEY, payload=payload)

    assert operation.calls == 5
    assert outcome.state is SaveState.FAILED
    assert outcome.attempts == 5
    assert outcome.backup_saved is True
    assert sleep_calls == [2, 4, 8, 16]
    assert controller.backup_cache.get(KEY) == payload


def test_non_retryable_error_propagates_after_one_attempt(controller, sleep_calls):
    operation = _Operation(PermissionDeniedError("permission-denied"))

    with pytest.raises(PermissionDeniedError):
        controller.execute(operation, label="save", backup_key=KEY, payload={"stock": {}})

    assert operation.calls == 1
    assert sleep_calls == []
    assert controller.backup_cache.get(KEY) is None


def test_recovers_after_transient_failures_and_clears_stale_backup(controller, sleep_calls):
    controller.backup_cache.save(KEY, {"stale": True})
    operation = _Operation(ConnectionError("reset"), TimeoutError("slow"))

    outcome = controller.execute(operation, label="save", backup_key=KEY, payload={"stock": {}})

    assert outcome.succeeded
    assert outcome.attempts == 3
    assert sleep_calls == [2, 4]
    assert controller.backup_cache.get(KEY) is None


def test_failure_without_payload_reports_no_backup(sleep_calls):
    controller = RetryController(RetryPolicy(max_retries=2), sleep=sleep_calls.append)

    outcome = controller.execute(_Operation(TimeoutError(), TimeoutError()), label="save")

    assert outcome.state is SaveState.FAILED
    assert outcome.backup_saved is False
    assert sleep_calls == [2]


def test_raise_for_failure_wraps_last_error(controller):
    outcome = controller.execute(
        _Operation(*[TransientStorageError("network down") for _ in range(5)]),
        label="Stock save",
        backup_key=KEY,
        payload={"stock": {}},
    )

    with pytest.raises(RetryExhaustedError) as excinfo:
        outcome.raise_for_failure()
    assert excinfo.value.attempts == 5
    assert excinfo.value.backup_saved is True
    assert isinstance(excinfo.value.original_error, TransientStorageError)


def test_every_attempt_is_logged_with_its_ordinal(controller, caplog):
    caplog.set_level("INFO", logger="stock_ledger")

    controller.execute(_Operation(TransientStorageError("x")), label="Stock save", backup_key=KEY, payload={})

    messages = [record.getMessage() for record in caplog.records]
    assert "Stock save: attempt 1 of 5" in messages
    assert "Stock save: attempt 2 of 5" in messages


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (TransientStorageError("anything"), True),
        (StorageError("busy", code="aborted"), True),
        (StorageError("slow", code="deadline-exceeded"), True),
        (ConnectionError("reset by peer"), True),
        (RuntimeError("Network request failed"), True),
        (RuntimeError("request Timeout"), True),
        (PermissionDeniedError("network says no"), False),
        (AuthError("token expired"), False),
        (ValidationError("bad key"), False),
        (BusinessRuleViolation("empty snapshot"), False),
        (StorageError("invalid", code="invalid-argument"), False),
        (NotFoundError("gone"), False),
        (KeyError("missing"), False),
    ],
)
def test_is_retryable_classification(error, expected):
    assert is_retryable(error) is expected


# ---------------------------------------------------------------------------
# BackupCache
# ---------------------------------------------------------------------------


def test_backup_cache_expires_entries_after_ttl(clock):
    cache = BackupCache(60, clock=clock)
    cache.save(KEY, {"stock": {"A-x": "1"}})

    clock.advance(59)
    assert cache.get(KEY) == {"stock": {"A-x": "1"}}

    clock.advance(2)
    assert cache.get(KEY) is None
    assert cache.keys() == []


def test_backup_cache_keys_are_independent(clock):
    cache = BackupCache(clock=clock)
    other = backup_key(BackupKind.STOCK, "camp", date(2024, 1, 15))
    cache.save(KEY, {"a": 1})
    cache.save(other, {"b": 2})
    cache.remove(KEY)

    assert cache.keys() == [other]
    assert cache.get(other) == {"b": 2}


def test_backup_cache_usage_reports_items_and_size(clock):
    cache = BackupCache(clock=clock)
    cache.save(KEY, {"a": 1})

    usage = cache.usage()

    assert usage.items == 1
    assert usage.size_bytes == len('{"a": 1}')

    cache.clear()
    assert cache.usage().items == 0


def test_order_backup_keys_are_per_order():
    first = order_backup_key("fc-road", "fc-road-1705348800000")
    second = order_backup_key("fc-road", "fc-road-1705350600000")

    assert first == ("order", "fc-road", "fc-road-1705348800000")
    assert first != second
