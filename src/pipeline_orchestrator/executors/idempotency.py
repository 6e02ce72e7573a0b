"""In-batch idempotency filter."""

from __future__ import annotations

import logging

from ..models import Record

logger = logging.getLogger(__name__)


def apply_idempotency(records: list[Record], key_field: str | None) -> list[Record]:
    """Drop records whose key repeats an earlier record's key.

    Keys compare by their string form, so ``1`` and ``"1"`` collide. The
    first occurrence wins and order is preserved. Records without the key
    field are always kept. The scope is this list only; nothing is
    remembered between runs.

    Args:
        records: Working record set.
        key_field: Field holding the idempotency key. No-op when falsy.

    Returns:
        The filtered list (a new list, records are not copied).
    """
    if not key_field:
        return records

    seen: set[str] = set()
    kept: list[Record] = []
    for record in records:
        if key_field not in record:
            kept.append(record)
            continue
        key = str(record[key_field])
        if key in seen:
            continue
        seen.add(key)
        kept.append(record)

    dropped = len(records) - len(kept)
    if dropped:
        logger.debug("Idempotency filter on %r dropped %d duplicate records", key_field, dropped)
    return kept
