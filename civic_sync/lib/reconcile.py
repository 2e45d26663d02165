"""
Idempotent write strategies.

Repeated runs over the same upstream data must converge to the same stored
state. Three write shapes cover every table the sync jobs touch:

- upsert(): rows with a natural composite key ("insert or update on key")
- replace_partition(): record sets fetched wholesale per (entity, period);
  the stored partition is deleted and the fresh set inserted
- insert_deduped(): rows with no natural key; a stable id is derived from
  their content so re-inserting the same upstream record is a no-op

Usage:
    reconciler = IdempotentReconciler(store)
    reconciler.upsert("funding_metrics", [row], "member_id,cycle")
    reconciler.replace_partition(
        "member_contributions", {"member_id": mid, "cycle": 2024}, rows
    )
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from civic_sync.lib.stores import DataStore

logger = logging.getLogger(__name__)

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_-]")
DEDUPE_NAME_LENGTH = 20


class ReconcileError(Exception):
    """Raised when a partition could not be replaced.

    The previous contents have been restored when this is raised.
    """


def _sanitize_id_part(value: Any) -> str:
    if value is None:
        return ""
    return _UNSAFE_ID_CHARS.sub("_", str(value).strip())


def derive_dedupe_id(
    owner_id: Any,
    source_record_id: Any,
    date: Any,
    amount: Any,
    name: Optional[str],
    postal_code: Optional[str],
) -> str:
    """
    Build a stable id for a record that has no natural key.

    Fields are joined in this fixed order: owning entity, source record id,
    date, amount (two decimals), name (first 20 characters, upper-cased),
    postal code (first 5 digits). Characters outside [A-Za-z0-9_-] become "_".

    Returns:
        The same string for the same upstream record on every fetch
    """
    try:
        amount_part = f"{float(amount):.2f}" if amount is not None else ""
    except (TypeError, ValueError):
        amount_part = str(amount)
    name_part = (name or "").strip().upper()[:DEDUPE_NAME_LENGTH]
    postal_part = re.sub(r"\D", "", postal_code or "")[:5]

    parts = [owner_id, source_record_id, date, amount_part, name_part, postal_part]
    return "-".join(_sanitize_id_part(p) for p in parts)


def _comparable(rows: Iterable[Dict[str, Any]], ignore: Iterable[str]) -> List[str]:
    skip = set(ignore)
    return sorted(
        repr(sorted((k, repr(v)) for k, v in row.items() if k not in skip))
        for row in rows
    )


class IdempotentReconciler:
    """Write-path helper implementing the three idempotent strategies."""

    def __init__(self, store: DataStore):
        self.store = store

    def upsert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        conflict_key: str,
        ignore_duplicates: bool = False,
    ) -> List[Dict[str, Any]]:
        """Insert or update on the composite conflict key.

        Args:
            table: Destination table
            rows: Rows to write
            conflict_key: Comma-separated key columns, e.g. "member_id,cycle"
            ignore_duplicates: Keep existing rows untouched on collision

        Returns:
            Rows as written by the store
        """
        if not rows:
            return []
        return self.store.upsert(
            table, rows, on_conflict=conflict_key, ignore_duplicates=ignore_duplicates
        )

    def replace_partition(
        self,
        table: str,
        partition: Dict[str, Any],
        rows: List[Dict[str, Any]],
    ) -> int:
        """
        Replace every row of one partition with a freshly fetched set.

        The existing partition is read first. If it already equals the
        incoming set (ignoring generated ids) nothing is written. Otherwise
        it is deleted and the new rows inserted; if the insert fails the
        snapshot is put back and ReconcileError raised, so the partition is
        never left half-replaced.

        Readers can briefly see zero rows for the partition between the
        delete and the insert.

        Args:
            table: Destination table
            partition: Column filter identifying the partition
            rows: Complete new contents; partition columns are filled in

        Returns:
            Number of rows written; 0 when the partition was already current

        Raises:
            ReconcileError: If the insert failed (previous rows restored)
        """
        if not partition:
            raise ValueError("partition filter must not be empty")

        incoming = [{**row, **partition} for row in rows]
        existing = self.store.select(table, match=partition)

        if _comparable(existing, ["id"]) == _comparable(incoming, ["id"]):
            logger.debug(f"{table} {partition}: unchanged ({len(existing)} rows)")
            return 0

        self.store.delete(table, partition)
        try:
            self.store.insert(table, incoming)
        except Exception as e:
            logger.error(f"{table} {partition}: insert failed, restoring {len(existing)} rows: {e}")
            if existing:
                self.store.insert(table, existing)
            raise ReconcileError(f"Failed to replace {table} partition {partition}: {e}") from e

        logger.info(
            f"{table} {partition}: replaced {len(existing)} rows with {len(incoming)}"
        )
        return len(incoming)

    def insert_deduped(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        id_field: str = "dedupe_id",
    ) -> int:
        """Insert rows keyed by a derived id, ignoring ones already stored.

        Returns:
            Number of rows newly inserted
        """
        if not rows:
            return 0
        missing = [r for r in rows if not r.get(id_field)]
        if missing:
            raise ValueError(f"{len(missing)} rows lack a {id_field}")

        # Collapse duplicates within the batch itself
        unique = {row[id_field]: row for row in rows}
        written = self.store.upsert(
            table, list(unique.values()), on_conflict=id_field, ignore_duplicates=True
        )
        return len(written)
