"""Tests for the idempotent operation coordinator.

Tests cover:
A) Replay returns the stored response without re-running the callback
B) Failed executions free the key for a retry
C) Expired records are treated as absent and overwritten
D) Tenant isolation - the same key in two tenants never collides
E) Key policy - passthrough without key, required keys, malformed keys
F) In-flight duplicates and key reuse are rejected
G) Store failures before and after the callback
H) Entity linkage
I) Completion recorded inside the caller's transaction
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator
from typing import Any

import pytest
from pydantic import BaseModel

from idemco.idempotency.config import IdempotencyConfig
from idemco.idempotency.coordinator import (
    IdempotencyCoordinator,
    ReplayOutcome,
    check_replay,
)
from idemco.idempotency.errors import (
    CompletionNotRecordedError,
    IdempotencyConflictError,
    IdempotencyKeyInvalidError,
    IdempotencyKeyMismatchError,
    IdempotencyKeyRequiredError,
    IdempotencyStoreError,
)
from idemco.idempotency.models import (
    EntityLink,
    IdempotencyOperation,
    IdempotencyRecord,
    IdempotencyStatus,
    Linkage,
    ScopeKey,
)
from idemco.idempotency.store import SqliteIdempotencyStore
from tests.fixtures.clock import FakeClock
from tests.fixtures.stores import (
    CompletionFailingStore,
    FailureWriteFailingStore,
    ResponselessReplayStore,
    StaleReadStore,
    UnreachableStore,
)

TENANT_A = "tenant-a"
TENANT_B = "tenant-b"
PAYMENT = IdempotencyOperation.CREATE_PAYMENT


class CountingCallback:
    """Callback double that records how often it ran."""

    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.calls = 0
        self._result = result if result is not None else {"id": "pay_1", "amount": "10.00"}
        self._error = error

    def __call__(self) -> Any:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return self._result


class PaymentReceipt(BaseModel):
    id: str
    amount: str


@pytest.fixture
def required_config() -> IdempotencyConfig:
    """Policy mandating a key for CREATE_PAYMENT."""
    return IdempotencyConfig(
        default_ttl_seconds=3600, required_operations=frozenset({PAYMENT})
    )


class TestReplay:
    """Tests for replaying completed executions."""

    def test_first_call_runs_callback(self, coordinator: IdempotencyCoordinator) -> None:
        """First call executes and reports a fresh result."""
        callback = CountingCallback()

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 1
        assert result.replayed is False
        assert result.value == {"id": "pay_1", "amount": "10.00"}
        assert result.response == b'{"amount":"10.00","id":"pay_1"}'
        assert result.idempotency_key == "key-1"
        assert result.recorded is True

    def test_second_call_replays_without_running(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """Retry with the same key returns the stored response; callback runs once."""
        callback = CountingCallback()

        first = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)
        second = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 1
        assert second.replayed is True
        assert second.response == first.response
        assert second.value == first.value

    def test_many_retries_execute_once(self, coordinator: IdempotencyCoordinator) -> None:
        """N sequential retries collapse to one effect and N identical responses."""
        callback = CountingCallback()

        results = [coordinator.execute("key-1", TENANT_A, PAYMENT, callback) for _ in range(5)]

        assert callback.calls == 1
        assert len({r.response for r in results}) == 1
        assert [r.replayed for r in results] == [False, True, True, True, True]

    def test_operation_accepts_string_tag(self, coordinator: IdempotencyCoordinator) -> None:
        """Operation may be passed as its string tag."""
        callback = CountingCallback()

        coordinator.execute("key-1", TENANT_A, "CREATE_PAYMENT", callback)
        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert result.replayed is True
        assert callback.calls == 1

    def test_unknown_operation_rejected(self, coordinator: IdempotencyCoordinator) -> None:
        """Unknown operation tags are a programming error."""
        callback = CountingCallback()

        with pytest.raises(ValueError, match="Unknown idempotency operation"):
            coordinator.execute("key-1", TENANT_A, "NOT_AN_OPERATION", callback)

        assert callback.calls == 0

    def test_pydantic_result_replays_as_json(self, coordinator: IdempotencyCoordinator) -> None:
        """Model results are stored as JSON and replayed as decoded JSON."""
        callback = CountingCallback(result=PaymentReceipt(id="pay_9", amount="5.00"))

        first = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)
        second = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert isinstance(first.value, PaymentReceipt)
        assert second.value == {"id": "pay_9", "amount": "5.00"}
        assert second.response == first.response

    def test_completed_record_is_stored(
        self, coordinator: IdempotencyCoordinator, sqlite_store: SqliteIdempotencyStore
    ) -> None:
        """Successful execution leaves a COMPLETED record with the response."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())

        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))

        assert record is not None
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.operation == PAYMENT
        assert record.response == b'{"amount":"10.00","id":"pay_1"}'
        assert record.attempts == 1


class TestFailureRetry:
    """Tests for retrying after a failed execution."""

    def test_callback_error_propagates_unchanged(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """The callback's own exception reaches the caller."""
        error = ValueError("insufficient funds")

        with pytest.raises(ValueError) as exc_info:
            coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback(error=error))

        assert exc_info.value is error

    def test_failed_record_marked_failed(
        self, coordinator: IdempotencyCoordinator, sqlite_store: SqliteIdempotencyStore
    ) -> None:
        """A failed callback leaves the record FAILED."""
        with pytest.raises(RuntimeError):
            coordinator.execute(
                "key-1", TENANT_A, PAYMENT, CountingCallback(error=RuntimeError("boom"))
            )

        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.FAILED

    def test_retry_after_failure_runs_again(
        self, coordinator: IdempotencyCoordinator, sqlite_store: SqliteIdempotencyStore
    ) -> None:
        """After a failure the same key claims and executes afresh."""
        with pytest.raises(RuntimeError):
            coordinator.execute(
                "key-1", TENANT_A, PAYMENT, CountingCallback(error=RuntimeError("boom"))
            )

        callback = CountingCallback()
        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 1
        assert result.replayed is False
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.attempts == 2

    def test_failed_key_reusable_for_other_operation(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A FAILED record does not pin the key to its operation."""
        with pytest.raises(RuntimeError):
            coordinator.execute(
                "key-1", TENANT_A, PAYMENT, CountingCallback(error=RuntimeError("boom"))
            )

        result = coordinator.execute(
            "key-1", TENANT_A, IdempotencyOperation.EMIT_INVOICE, CountingCallback()
        )

        assert result.replayed is False

    def test_failure_write_error_does_not_mask_callback_error(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """When FAILED cannot be recorded the caller still sees the business error."""
        coordinator = IdempotencyCoordinator(
            FailureWriteFailingStore(sqlite_store), idempotency_config, clock
        )

        with (
            caplog.at_level(logging.ERROR, logger="idemco.idempotency.coordinator"),
            pytest.raises(KeyError),
        ):
            coordinator.execute(
                "key-1", TENANT_A, PAYMENT, CountingCallback(error=KeyError("missing"))
            )

        assert "Failed to record failure" in caplog.text


class TestExpiry:
    """Tests for TTL-based expiry."""

    def test_lookup_ignores_expired_record(
        self, coordinator: IdempotencyCoordinator, clock: FakeClock
    ) -> None:
        """Records read as absent once expires_at is reached."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        assert coordinator.lookup(TENANT_A, "key-1") is not None

        clock.advance(seconds=3600)

        assert coordinator.lookup(TENANT_A, "key-1") is None

    def test_record_live_just_before_expiry(
        self, coordinator: IdempotencyCoordinator, clock: FakeClock
    ) -> None:
        """One second before expiry the response still replays."""
        callback = CountingCallback()
        coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        clock.advance(seconds=3599)
        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert result.replayed is True
        assert callback.calls == 1

    def test_expired_completed_record_is_overwritten(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        clock: FakeClock,
    ) -> None:
        """After expiry the key executes again and the record is replaced."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        clock.advance(seconds=3601)

        callback = CountingCallback(result={"id": "pay_2"})
        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 1
        assert result.replayed is False
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.response == b'{"id":"pay_2"}'
        assert record.expires_at == clock() + coordinator.config.ttl_for(PAYMENT)

    def test_expired_processing_record_can_be_reclaimed(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        clock: FakeClock,
    ) -> None:
        """A claimant that crashed blocks the key only until expiry."""
        now = clock()
        expires_at = now + coordinator.config.ttl_for(PAYMENT)
        sqlite_store.claim(ScopeKey(TENANT_A, "key-1"), PAYMENT, None, now, expires_at)

        with pytest.raises(IdempotencyConflictError):
            coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())

        clock.advance(hours=1)
        result = coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())

        assert result.replayed is False

    def test_expired_record_reusable_for_other_operation(
        self, coordinator: IdempotencyCoordinator, clock: FakeClock
    ) -> None:
        """Expiry lifts the operation binding of a key."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        clock.advance(hours=2)

        result = coordinator.execute(
            "key-1", TENANT_A, IdempotencyOperation.CONFIRM_DEPOSIT, CountingCallback()
        )

        assert result.replayed is False

    def test_ttl_override_applies_per_operation(
        self, sqlite_store: SqliteIdempotencyStore, clock: FakeClock
    ) -> None:
        """Operations with a TTL override expire on their own schedule."""
        config = IdempotencyConfig(
            default_ttl_seconds=3600,
            ttl_overrides={IdempotencyOperation.IMPORT_BANK_STATEMENT: 60},
            required_operations=frozenset(),
        )
        coordinator = IdempotencyCoordinator(sqlite_store, config, clock)

        coordinator.execute(
            "key-1", TENANT_A, IdempotencyOperation.IMPORT_BANK_STATEMENT, CountingCallback()
        )
        coordinator.execute("key-2", TENANT_A, PAYMENT, CountingCallback())
        clock.advance(seconds=61)

        assert coordinator.lookup(TENANT_A, "key-1") is None
        assert coordinator.lookup(TENANT_A, "key-2") is not None


class TestTenantIsolation:
    """Tests for tenant scoping of keys."""

    def test_same_key_different_tenants_both_execute(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """The same literal key in two tenants is two independent records."""
        callback_a = CountingCallback(result={"id": "pay_a"})
        callback_b = CountingCallback(result={"id": "pay_b"})

        result_a = coordinator.execute("shared-key", TENANT_A, PAYMENT, callback_a)
        result_b = coordinator.execute("shared-key", TENANT_B, PAYMENT, callback_b)

        assert callback_a.calls == 1
        assert callback_b.calls == 1
        assert result_a.replayed is False
        assert result_b.replayed is False
        assert result_b.value == {"id": "pay_b"}

    def test_replay_stays_within_tenant(self, coordinator: IdempotencyCoordinator) -> None:
        """Each tenant replays its own response."""
        coordinator.execute("shared-key", TENANT_A, PAYMENT, CountingCallback({"id": "pay_a"}))
        coordinator.execute("shared-key", TENANT_B, PAYMENT, CountingCallback({"id": "pay_b"}))

        replay_a = coordinator.execute("shared-key", TENANT_A, PAYMENT, CountingCallback())
        replay_b = coordinator.execute("shared-key", TENANT_B, PAYMENT, CountingCallback())

        assert replay_a.value == {"id": "pay_a"}
        assert replay_b.value == {"id": "pay_b"}

    def test_lookup_is_tenant_scoped(self, coordinator: IdempotencyCoordinator) -> None:
        """A tenant cannot see another tenant's record."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())

        assert coordinator.lookup(TENANT_B, "key-1") is None


class TestKeyPolicy:
    """Tests for optional, required and malformed keys."""

    def test_no_key_runs_every_time(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        clock: FakeClock,
    ) -> None:
        """Without a key the callback runs on every call and nothing is stored."""
        callback = CountingCallback()

        first = coordinator.execute(None, TENANT_A, IdempotencyOperation.EMIT_INVOICE, callback)
        second = coordinator.execute(None, TENANT_A, IdempotencyOperation.EMIT_INVOICE, callback)

        assert callback.calls == 2
        assert first.replayed is False
        assert second.replayed is False
        assert first.response is None
        assert first.idempotency_key is None
        assert sqlite_store.delete_expired(clock.advance(days=3650), 100) == 0

    def test_blank_key_treated_as_absent(self, coordinator: IdempotencyCoordinator) -> None:
        """Whitespace-only keys disable deduplication."""
        callback = CountingCallback()

        coordinator.execute("   ", TENANT_A, IdempotencyOperation.EMIT_INVOICE, callback)
        coordinator.execute("   ", TENANT_A, IdempotencyOperation.EMIT_INVOICE, callback)

        assert callback.calls == 2

    def test_key_is_stripped(self, coordinator: IdempotencyCoordinator) -> None:
        """Surrounding whitespace does not change the key."""
        callback = CountingCallback()

        coordinator.execute("key-1", TENANT_A, PAYMENT, callback)
        result = coordinator.execute("  key-1  ", TENANT_A, PAYMENT, callback)

        assert result.replayed is True
        assert callback.calls == 1

    def test_required_key_missing_rejected(
        self,
        sqlite_store: SqliteIdempotencyStore,
        required_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """Mandatory operations reject calls without a key before running."""
        coordinator = IdempotencyCoordinator(sqlite_store, required_config, clock)
        callback = CountingCallback()

        with pytest.raises(IdempotencyKeyRequiredError) as exc_info:
            coordinator.execute(None, TENANT_A, PAYMENT, callback)

        assert callback.calls == 0
        assert exc_info.value.code == "IDEMPOTENCY_KEY_REQUIRED"
        assert exc_info.value.http_status == 400

    def test_required_key_only_applies_to_listed_operations(
        self,
        sqlite_store: SqliteIdempotencyStore,
        required_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """Other operations still run without a key."""
        coordinator = IdempotencyCoordinator(sqlite_store, required_config, clock)

        result = coordinator.execute(
            None, TENANT_A, IdempotencyOperation.EMIT_INVOICE, CountingCallback()
        )

        assert result.replayed is False

    def test_malformed_key_rejected(self, coordinator: IdempotencyCoordinator) -> None:
        """Keys with inner whitespace or control characters are invalid."""
        callback = CountingCallback()

        with pytest.raises(IdempotencyKeyInvalidError):
            coordinator.execute("bad key", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0


class TestConflicts:
    """Tests for in-flight duplicates and key reuse."""

    def test_duplicate_while_processing_conflicts(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A duplicate arriving during execution fails fast with a retry hint."""
        inner_errors: list[IdempotencyConflictError] = []
        duplicate = CountingCallback()

        def outer() -> dict[str, str]:
            try:
                coordinator.execute("key-1", TENANT_A, PAYMENT, duplicate)
            except IdempotencyConflictError as e:
                inner_errors.append(e)
            return {"id": "pay_1"}

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, outer)

        assert result.replayed is False
        assert duplicate.calls == 0
        assert len(inner_errors) == 1
        assert inner_errors[0].retry_after_seconds == 2
        assert inner_errors[0].retryable is True
        assert inner_errors[0].http_status == 409

    def test_key_reused_for_other_operation_rejected(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A live key cannot be reused for a different operation."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        callback = CountingCallback()

        with pytest.raises(IdempotencyKeyMismatchError) as exc_info:
            coordinator.execute("key-1", TENANT_A, IdempotencyOperation.EMIT_INVOICE, callback)

        assert callback.calls == 0
        assert exc_info.value.http_status == 422
        assert "CREATE_PAYMENT" in exc_info.value.message

    def test_key_reused_with_other_payload_rejected(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A live key cannot be reused with a different request fingerprint."""
        coordinator.execute(
            "key-1", TENANT_A, PAYMENT, CountingCallback(), request_fingerprint="sha256:aaa"
        )

        with pytest.raises(IdempotencyKeyMismatchError, match="different payload"):
            coordinator.execute(
                "key-1", TENANT_A, PAYMENT, CountingCallback(), request_fingerprint="sha256:bbb"
            )

    def test_same_fingerprint_replays(self, coordinator: IdempotencyCoordinator) -> None:
        """Matching fingerprints replay normally."""
        callback = CountingCallback()
        coordinator.execute("key-1", TENANT_A, PAYMENT, callback, request_fingerprint="sha256:a")

        result = coordinator.execute(
            "key-1", TENANT_A, PAYMENT, callback, request_fingerprint="sha256:a"
        )

        assert result.replayed is True

    def test_missing_fingerprint_replays(self, coordinator: IdempotencyCoordinator) -> None:
        """Fingerprints are only compared when both sides supply one."""
        callback = CountingCallback()
        coordinator.execute("key-1", TENANT_A, PAYMENT, callback, request_fingerprint="sha256:a")

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert result.replayed is True

    def test_lost_claim_replays_winner_response(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """When the pre-check misses a concurrent completion, the claim still replays."""
        winner = IdempotencyCoordinator(sqlite_store, idempotency_config, clock)
        winner.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        loser = IdempotencyCoordinator(StaleReadStore(sqlite_store), idempotency_config, clock)
        callback = CountingCallback()

        result = loser.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0
        assert result.replayed is True
        assert result.value == {"id": "pay_1", "amount": "10.00"}

    def test_lost_claim_to_in_flight_conflicts(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """When the pre-check misses an in-flight claim, the claim reports a conflict."""
        now = clock()
        sqlite_store.claim(ScopeKey(TENANT_A, "key-1"), PAYMENT, None, now, now.replace(year=2027))
        loser = IdempotencyCoordinator(StaleReadStore(sqlite_store), idempotency_config, clock)
        callback = CountingCallback()

        with pytest.raises(IdempotencyConflictError):
            loser.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0


class TestStoreFailures:
    """Tests for store failures around the callback."""

    def test_store_unreachable_fails_closed(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """A failing pre-check raises and never runs the callback."""
        coordinator = IdempotencyCoordinator(
            UnreachableStore(sqlite_store), idempotency_config, clock
        )
        callback = CountingCallback()

        with pytest.raises(IdempotencyStoreError):
            coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0

    def test_store_unreachable_does_not_block_keyless_calls(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """Calls without a key never touch the store."""
        coordinator = IdempotencyCoordinator(
            UnreachableStore(sqlite_store), idempotency_config, clock
        )

        result = coordinator.execute(None, TENANT_A, PAYMENT, CountingCallback())

        assert result.value == {"id": "pay_1", "amount": "10.00"}

    def test_completion_not_recorded_is_reported(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Effect applied but not recorded: result is returned with the error attached."""
        coordinator = IdempotencyCoordinator(
            CompletionFailingStore(sqlite_store), idempotency_config, clock
        )
        callback = CountingCallback()

        with caplog.at_level(logging.ERROR, logger="idemco.idempotency.coordinator"):
            result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 1
        assert result.value == {"id": "pay_1", "amount": "10.00"}
        assert result.recorded is False
        assert isinstance(result.completion_error, CompletionNotRecordedError)
        assert isinstance(result.completion_error.__cause__, IdempotencyStoreError)
        assert "confirmation not recorded" in caplog.text

    def test_unrecorded_completion_blocks_duplicate(
        self,
        sqlite_store: SqliteIdempotencyStore,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """The record stays PROCESSING, so a retry conflicts instead of re-running."""
        failing = IdempotencyCoordinator(
            CompletionFailingStore(sqlite_store), idempotency_config, clock
        )
        failing.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        healthy = IdempotencyCoordinator(sqlite_store, idempotency_config, clock)
        callback = CountingCallback()

        with pytest.raises(IdempotencyConflictError):
            healthy.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.PROCESSING

    def test_completed_record_without_response_fails_closed(
        self,
        sqlite_store: SqliteIdempotencyStore,
        coordinator: IdempotencyCoordinator,
        idempotency_config: IdempotencyConfig,
        clock: FakeClock,
    ) -> None:
        """A COMPLETED record missing its response raises instead of re-running."""
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback())
        broken = IdempotencyCoordinator(
            ResponselessReplayStore(sqlite_store), idempotency_config, clock
        )
        callback = CountingCallback()

        with pytest.raises(IdempotencyStoreError, match="without a response"):
            broken.execute("key-1", TENANT_A, PAYMENT, callback)

        assert callback.calls == 0

    def test_unserializable_result_not_recorded(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A result that cannot be serialized is returned with a completion error."""
        value = object()

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, lambda: value)

        assert result.value is value
        assert result.response is None
        assert result.recorded is False
        assert isinstance(result.completion_error.__cause__, TypeError)


class TestLinkage:
    """Tests for entity linkage on completed records."""

    def test_linkage_recorded_on_completion(
        self, coordinator: IdempotencyCoordinator, sqlite_store: SqliteIdempotencyStore
    ) -> None:
        """Linkage stores the entity type and stringified id on the record."""
        result = coordinator.execute(
            "key-1",
            TENANT_A,
            PAYMENT,
            CountingCallback(result={"id": 42, "amount": "1.00"}),
            linkage=Linkage.attribute("ClientPayment"),
        )

        assert result.entity == EntityLink("ClientPayment", "42")
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.entity_type == "ClientPayment"
        assert record.entity_id == "42"

    def test_linkage_returned_on_replay(self, coordinator: IdempotencyCoordinator) -> None:
        """Replays carry the linkage recorded by the first execution."""
        linkage = Linkage.attribute("ClientPayment")
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback({"id": 7}), linkage)

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback(), linkage)

        assert result.replayed is True
        assert result.entity == EntityLink("ClientPayment", "7")

    def test_linkage_reads_attributes(self, coordinator: IdempotencyCoordinator) -> None:
        """Attribute linkage works on model results as well as mappings."""
        result = coordinator.execute(
            "key-1",
            TENANT_A,
            PAYMENT,
            CountingCallback(result=PaymentReceipt(id="pay_3", amount="2.00")),
            linkage=Linkage.attribute("ClientPayment"),
        )

        assert result.entity == EntityLink("ClientPayment", "pay_3")

    def test_linkage_without_id_records_nothing(
        self, coordinator: IdempotencyCoordinator
    ) -> None:
        """A result without the id attribute produces no link."""
        result = coordinator.execute(
            "key-1",
            TENANT_A,
            PAYMENT,
            CountingCallback(result={"amount": "1.00"}),
            linkage=Linkage.attribute("ClientPayment"),
        )

        assert result.entity is None
        assert result.recorded is True

    def test_failing_linkage_getter_still_completes(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A getter that raises drops the link but never the applied effect."""
        linkage = Linkage("ClientPayment", lambda result: result["paymentId"])
        callback = CountingCallback(result={"amount": 100})

        with caplog.at_level(logging.ERROR, logger="idemco.idempotency.coordinator"):
            result = coordinator.execute("key-1", TENANT_A, PAYMENT, callback, linkage)

        assert callback.calls == 1
        assert result.value == {"amount": 100}
        assert result.entity is None
        assert result.recorded is True
        assert "Entity linkage failed" in caplog.text
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.COMPLETED
        assert record.entity_type is None

    def test_failing_linkage_getter_replays(self, coordinator: IdempotencyCoordinator) -> None:
        """The completion recorded without a link still replays."""
        linkage = Linkage("ClientPayment", lambda result: result.payment_id)
        coordinator.execute("key-1", TENANT_A, PAYMENT, CountingCallback({"amount": 100}), linkage)
        retry = CountingCallback()

        result = coordinator.execute("key-1", TENANT_A, PAYMENT, retry, linkage)

        assert retry.calls == 0
        assert result.replayed is True
        assert result.value == {"amount": 100}


class TestTransactionalCompletion:
    """Tests for recording the completion on the caller's connection."""

    @pytest.fixture
    def business_conn(self, sqlite_store: SqliteIdempotencyStore) -> Iterator[sqlite3.Connection]:
        """Caller connection to the store's database with a payments table."""
        sqlite_store.get(ScopeKey(TENANT_A, "warm-up"))
        conn = sqlite3.connect(sqlite_store.db_path, isolation_level=None, timeout=5)
        conn.execute("CREATE TABLE payments (id TEXT PRIMARY KEY, amount TEXT)")
        yield conn
        conn.close()

    def _create_payment(self, conn: sqlite3.Connection) -> dict[str, str]:
        conn.execute("INSERT INTO payments VALUES ('pay_1', '10.00')")
        return {"id": "pay_1"}

    def test_completion_commits_with_effect(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        business_conn: sqlite3.Connection,
    ) -> None:
        """Committing the business transaction records the completion."""
        business_conn.execute("BEGIN")
        result = coordinator.execute(
            "key-1",
            TENANT_A,
            PAYMENT,
            lambda: self._create_payment(business_conn),
            conn=business_conn,
        )
        business_conn.execute("COMMIT")

        assert result.recorded is True
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.COMPLETED

    def test_completion_rolls_back_with_effect(
        self,
        coordinator: IdempotencyCoordinator,
        sqlite_store: SqliteIdempotencyStore,
        business_conn: sqlite3.Connection,
    ) -> None:
        """Rolling back the effect also discards the completion."""
        business_conn.execute("BEGIN")
        coordinator.execute(
            "key-1",
            TENANT_A,
            PAYMENT,
            lambda: self._create_payment(business_conn),
            conn=business_conn,
        )
        business_conn.execute("ROLLBACK")

        assert business_conn.execute("SELECT COUNT(*) FROM payments").fetchone()[0] == 0
        record = sqlite_store.get(ScopeKey(TENANT_A, "key-1"))
        assert record is not None
        assert record.status == IdempotencyStatus.PROCESSING


class TestCheckReplay:
    """Tests for the replay decision function."""

    def _record(self, clock: FakeClock, status: IdempotencyStatus) -> IdempotencyRecord:
        now = clock()
        return IdempotencyRecord(
            tenant_id=TENANT_A,
            idempotency_key="key-1",
            operation=PAYMENT,
            status=status,
            response=b"{}" if status == IdempotencyStatus.COMPLETED else None,
            entity_type=None,
            entity_id=None,
            request_fingerprint="sha256:a",
            claim_token="token",
            attempts=1,
            expires_at=now.replace(hour=13),
            created_at=now,
            updated_at=now,
        )

    def test_absent_record(self, clock: FakeClock) -> None:
        assert check_replay(None, PAYMENT, None, clock()).outcome == ReplayOutcome.ABSENT

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (IdempotencyStatus.PROCESSING, ReplayOutcome.IN_FLIGHT),
            (IdempotencyStatus.COMPLETED, ReplayOutcome.REPLAY),
            (IdempotencyStatus.FAILED, ReplayOutcome.ABSENT),
        ],
    )
    def test_live_record_by_status(
        self, clock: FakeClock, status: IdempotencyStatus, expected: ReplayOutcome
    ) -> None:
        record = self._record(clock, status)

        assert check_replay(record, PAYMENT, "sha256:a", clock()).outcome == expected

    def test_expired_record_is_absent(self, clock: FakeClock) -> None:
        record = self._record(clock, IdempotencyStatus.COMPLETED)

        decision = check_replay(record, PAYMENT, None, clock.advance(hours=1))

        assert decision.outcome == ReplayOutcome.ABSENT
