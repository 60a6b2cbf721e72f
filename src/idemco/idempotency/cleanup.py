"""Physical deletion of expired idempotency records.

Storage reclamation only: lookups already ignore expired records, so running
this late or not at all never affects correctness. Scheduling is left to the
deployment (cron, a periodic job, or the operator route).
"""

from __future__ import annotations

import logging
from datetime import datetime

from idemco.idempotency.store import IdempotencyStore, utc_now

logger = logging.getLogger(__name__)

DEFAULT_PURGE_BATCH_SIZE = 1000


def purge_expired_records(
    store: IdempotencyStore,
    now: datetime | None = None,
    batch_size: int = DEFAULT_PURGE_BATCH_SIZE,
) -> int:
    """Delete every record whose expires_at is at or before ``now``.

    Deletes in batches of ``batch_size`` until a batch comes back short.

    Returns:
        Total number of records deleted.

    Raises:
        ValueError: If batch_size is not positive.
        IdempotencyStoreError: If a delete fails; already-deleted batches stay deleted.
    """
    if batch_size <= 0:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    cutoff = now if now is not None else utc_now()
    total = 0
    while True:
        deleted = store.delete_expired(cutoff, batch_size)
        total += deleted
        if deleted < batch_size:
            break

    logger.info("Purged %d expired idempotency records (cutoff=%s)", total, cutoff.isoformat())
    return total
