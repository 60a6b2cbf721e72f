"""Idempotency key extraction, validation and generation.

Idempotency is opt-in per caller: an absent key disables deduplication unless
the operation mandates one. For callers that cannot supply a key, one can be
derived from a stable hash of the normalized request content plus a coarse time
bucket.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from idemco.idempotency.config import IdempotencyConfig
from idemco.idempotency.errors import IdempotencyKeyInvalidError, IdempotencyKeyRequiredError
from idemco.idempotency.models import IdempotencyOperation
from idemco.idempotency.serialization import canonical_json

IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
GENERATED_KEY_PREFIX = "gen_"

EMPTY_SHA256 = "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

_KEY_PATTERN = re.compile(r"^[\x21-\x7e]+$")


def normalize_idempotency_key(raw: str | None, max_length: int) -> str | None:
    """Strip and validate a raw key.

    Args:
        raw: Header or body value, possibly None.
        max_length: Longest accepted key.

    Returns:
        The stripped key, or None when absent or blank.

    Raises:
        IdempotencyKeyInvalidError: If the key is too long or not printable ASCII.
    """
    if raw is None:
        return None

    key = raw.strip()
    if not key:
        return None

    if len(key) > max_length:
        raise IdempotencyKeyInvalidError(
            f"Idempotency key exceeds {max_length} characters",
            details={"max_length": max_length},
        )
    if not _KEY_PATTERN.match(key):
        raise IdempotencyKeyInvalidError(
            "Idempotency key must contain printable ASCII characters only"
        )
    return key


def extract_idempotency_key(
    headers: Mapping[str, str],
    config: IdempotencyConfig,
    header_name: str = IDEMPOTENCY_KEY_HEADER,
) -> str | None:
    """Read the idempotency key from request headers.

    Header lookup is delegated to the mapping, so case-insensitive header
    containers (Starlette's Headers) behave as expected.
    """
    return normalize_idempotency_key(headers.get(header_name), config.key_max_length)


def require_idempotency_key(
    key: str | None,
    operation: IdempotencyOperation,
    config: IdempotencyConfig,
) -> None:
    """Reject a missing key for operations that mandate idempotency.

    Raises:
        IdempotencyKeyRequiredError: If the key is absent and required.
    """
    if key is None and config.requires_key(operation):
        raise IdempotencyKeyRequiredError(
            f"{IDEMPOTENCY_KEY_HEADER} header is required for {operation.value}",
            details={"operation": operation.value},
        )


def compute_payload_fingerprint(payload: Any) -> str:
    """Compute a SHA-256 digest of a request payload.

    Raw bytes are hashed as-is; anything else is hashed over its canonical JSON.

    Returns:
        Digest string in format "sha256:<hex>"
    """
    if isinstance(payload, bytes | bytearray):
        data = bytes(payload)
    else:
        data = canonical_json(payload).encode("utf-8")

    if not data:
        return EMPTY_SHA256
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


def generate_idempotency_key(
    tenant_id: str,
    operation: IdempotencyOperation,
    payload: Any,
    now: datetime,
    bucket_seconds: int,
) -> str:
    """Derive a key from request content and a coarse time bucket.

    Identical content from the same tenant for the same operation within one
    bucket maps to the same key; a double-submit straddling a bucket boundary
    does not.
    """
    bucket = int(now.timestamp()) // bucket_seconds
    material = canonical_json(
        {
            "bucket": bucket,
            "operation": operation.value,
            "payload": payload,
            "tenant_id": tenant_id,
        }
    )
    return GENERATED_KEY_PREFIX + hashlib.sha256(material.encode("utf-8")).hexdigest()
