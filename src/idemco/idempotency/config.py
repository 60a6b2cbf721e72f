"""Idempotency policy configuration.

TTL is configurable per operation: long enough that a slow but alive execution is
not duplicated, short enough that a crashed claimant does not block retries for
long.

Environment variables:
    IDEMCO_IDEMPOTENCY_TTL_SECONDS: Default record TTL (default: 86400)
    IDEMCO_IDEMPOTENCY_TTL_OVERRIDES: JSON object mapping operation to TTL seconds
    IDEMCO_IDEMPOTENCY_REQUIRED_OPERATIONS: Comma-separated operations that
        mandate a key (default: CREATE_PAYMENT,CONFIRM_LOAD_ORDER)
    IDEMCO_IDEMPOTENCY_KEY_MAX_LENGTH: Max accepted key length (default: 255)
    IDEMCO_IDEMPOTENCY_KEY_BUCKET_SECONDS: Time bucket for generated keys (default: 300)
    IDEMCO_IDEMPOTENCY_CONFLICT_RETRY_AFTER_SECONDS: Retry-After hint (default: 2)
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Final

from idemco.idempotency.models import IdempotencyOperation, coerce_operation

ENV_TTL_SECONDS: Final[str] = "IDEMCO_IDEMPOTENCY_TTL_SECONDS"
ENV_TTL_OVERRIDES: Final[str] = "IDEMCO_IDEMPOTENCY_TTL_OVERRIDES"
ENV_REQUIRED_OPERATIONS: Final[str] = "IDEMCO_IDEMPOTENCY_REQUIRED_OPERATIONS"
ENV_KEY_MAX_LENGTH: Final[str] = "IDEMCO_IDEMPOTENCY_KEY_MAX_LENGTH"
ENV_KEY_BUCKET_SECONDS: Final[str] = "IDEMCO_IDEMPOTENCY_KEY_BUCKET_SECONDS"
ENV_CONFLICT_RETRY_AFTER: Final[str] = "IDEMCO_IDEMPOTENCY_CONFLICT_RETRY_AFTER_SECONDS"

DEFAULT_TTL_SECONDS: Final[int] = 24 * 60 * 60
DEFAULT_KEY_MAX_LENGTH: Final[int] = 255
DEFAULT_KEY_BUCKET_SECONDS: Final[int] = 300
DEFAULT_CONFLICT_RETRY_AFTER_SECONDS: Final[int] = 2
DEFAULT_REQUIRED_OPERATIONS: Final[frozenset[IdempotencyOperation]] = frozenset(
    {IdempotencyOperation.CREATE_PAYMENT, IdempotencyOperation.CONFIRM_LOAD_ORDER}
)


class IdempotencyConfigError(Exception):
    """Raised when idempotency configuration is invalid."""


@dataclass(frozen=True)
class IdempotencyConfig:
    """Idempotency policy (immutable).

    Attributes:
        default_ttl_seconds: TTL applied when an operation has no override.
        ttl_overrides: Per-operation TTL in seconds.
        required_operations: Operations that reject calls without a key.
        key_max_length: Longest accepted idempotency key.
        key_bucket_seconds: Width of the time bucket used for generated keys.
        conflict_retry_after_seconds: Back-off hint returned with conflicts.
    """

    default_ttl_seconds: int = DEFAULT_TTL_SECONDS
    ttl_overrides: dict[IdempotencyOperation, int] = field(default_factory=dict)
    required_operations: frozenset[IdempotencyOperation] = DEFAULT_REQUIRED_OPERATIONS
    key_max_length: int = DEFAULT_KEY_MAX_LENGTH
    key_bucket_seconds: int = DEFAULT_KEY_BUCKET_SECONDS
    conflict_retry_after_seconds: int = DEFAULT_CONFLICT_RETRY_AFTER_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.default_ttl_seconds <= 0:
            raise IdempotencyConfigError(
                f"{ENV_TTL_SECONDS} must be a positive integer, got {self.default_ttl_seconds}"
            )
        for operation, seconds in self.ttl_overrides.items():
            if seconds <= 0:
                raise IdempotencyConfigError(
                    f"TTL override for {operation.value} must be positive, got {seconds}"
                )
        if self.key_max_length <= 0:
            raise IdempotencyConfigError(
                f"{ENV_KEY_MAX_LENGTH} must be a positive integer, got {self.key_max_length}"
            )
        if self.key_bucket_seconds <= 0:
            raise IdempotencyConfigError(
                f"{ENV_KEY_BUCKET_SECONDS} must be a positive integer, "
                f"got {self.key_bucket_seconds}"
            )
        if self.conflict_retry_after_seconds < 0:
            raise IdempotencyConfigError(
                f"{ENV_CONFLICT_RETRY_AFTER} must not be negative, "
                f"got {self.conflict_retry_after_seconds}"
            )

    def ttl_for(self, operation: IdempotencyOperation) -> timedelta:
        """Get the record TTL for an operation."""
        return timedelta(seconds=self.ttl_overrides.get(operation, self.default_ttl_seconds))

    def requires_key(self, operation: IdempotencyOperation) -> bool:
        return operation in self.required_operations


def _parse_int(env_var: str, default: int) -> int:
    """Parse an integer from an environment variable.

    Raises:
        IdempotencyConfigError: If the value is set but not an integer.
    """
    raw = os.environ.get(env_var)
    if raw is None:
        return default

    raw = raw.strip()
    if not raw:
        return default

    try:
        return int(raw)
    except ValueError as e:
        raise IdempotencyConfigError(f"{env_var} must be an integer, got '{raw}'") from e


def _parse_ttl_overrides() -> dict[IdempotencyOperation, int]:
    raw = os.environ.get(ENV_TTL_OVERRIDES, "").strip()
    if not raw:
        return {}

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise IdempotencyConfigError(f"{ENV_TTL_OVERRIDES} is not valid JSON: {e}") from e

    if not isinstance(parsed, dict):
        raise IdempotencyConfigError(f"{ENV_TTL_OVERRIDES} must be a JSON object")

    overrides: dict[IdempotencyOperation, int] = {}
    for name, seconds in parsed.items():
        try:
            operation = coerce_operation(name)
        except ValueError as e:
            raise IdempotencyConfigError(f"{ENV_TTL_OVERRIDES}: {e}") from e
        if not isinstance(seconds, int) or isinstance(seconds, bool):
            raise IdempotencyConfigError(
                f"{ENV_TTL_OVERRIDES}: TTL for {name} must be an integer, got {seconds!r}"
            )
        overrides[operation] = seconds
    return overrides


def _parse_required_operations() -> frozenset[IdempotencyOperation]:
    raw = os.environ.get(ENV_REQUIRED_OPERATIONS)
    if raw is None:
        return DEFAULT_REQUIRED_OPERATIONS

    operations: set[IdempotencyOperation] = set()
    for name in raw.split(","):
        name = name.strip()
        if not name:
            continue
        try:
            operations.add(coerce_operation(name))
        except ValueError as e:
            raise IdempotencyConfigError(f"{ENV_REQUIRED_OPERATIONS}: {e}") from e
    return frozenset(operations)


def load_idempotency_config() -> IdempotencyConfig:
    """Load idempotency configuration from environment variables.

    Returns:
        IdempotencyConfig with validated values.

    Raises:
        IdempotencyConfigError: If any value is invalid.
    """
    return IdempotencyConfig(
        default_ttl_seconds=_parse_int(ENV_TTL_SECONDS, DEFAULT_TTL_SECONDS),
        ttl_overrides=_parse_ttl_overrides(),
        required_operations=_parse_required_operations(),
        key_max_length=_parse_int(ENV_KEY_MAX_LENGTH, DEFAULT_KEY_MAX_LENGTH),
        key_bucket_seconds=_parse_int(ENV_KEY_BUCKET_SECONDS, DEFAULT_KEY_BUCKET_SECONDS),
        conflict_retry_after_seconds=_parse_int(
            ENV_CONFLICT_RETRY_AFTER, DEFAULT_CONFLICT_RETRY_AFTER_SECONDS
        ),
    )
