"""Point-in-time inventory state resolution.

"State of a product as of D" is the snapshot with the greatest date <= D.
Resolution is always per product: products are observed on different
cadences, so a single global cutoff applied after a multi-product join
would pick stale or missing rows for some of them.

The index keeps, per product, snapshots sorted by (date, id) and answers
as-of lookups with a binary search.

Same-date duplicates are malformed upstream data. They are kept, and the
row with the highest internal id wins, which is what an ORDER BY date DESC,
id DESC reader would observe. They are never averaged.
"""

from __future__ import annotations

import logging
from bisect import bisect_right
from collections import defaultdict
from collections.abc import Collection, Iterable
from datetime import date

from .data_source import DataSource
from .models import InventorySnapshot

logger = logging.getLogger("pharma_analytics.snapshots")


class SnapshotIndex:
    """Ordered per-product index of inventory snapshots.

    Usage:
        index = SnapshotIndex.from_snapshots(snapshots)
        snap = index.latest("prod-1", as_of=date(2024, 1, 15))
        if snap is None:
            ...  # no data at or before that date
    """

    def __init__(self) -> None:
        self._rows: dict[str, list[InventorySnapshot]] = {}
        self._keys: dict[str, list[tuple[date, int]]] = {}

    @classmethod
    def from_snapshots(cls, snapshots: Iterable[InventorySnapshot]) -> SnapshotIndex:
        index = cls()
        grouped: dict[str, list[InventorySnapshot]] = defaultdict(list)
        for snap in snapshots:
            grouped[snap.product_id].append(snap)

        for product_id, rows in grouped.items():
            rows.sort(key=lambda s: (s.date, s.id))
            index._rows[product_id] = rows
            index._keys[product_id] = [(s.date, s.id) for s in rows]
            dates = [s.date for s in rows]
            if len(set(dates)) != len(dates):
                logger.debug(
                    "Product %s has several snapshots on the same date; "
                    "highest id wins",
                    product_id,
                )
        return index

    def __len__(self) -> int:
        return sum(len(rows) for rows in self._rows.values())

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._rows

    @property
    def product_ids(self) -> list[str]:
        return list(self._rows)

    def latest(
        self,
        product_id: str,
        as_of: date | None = None,
    ) -> InventorySnapshot | None:
        """Most recent snapshot with date <= as_of (today if omitted)."""
        keys = self._keys.get(product_id)
        if not keys:
            return None
        cutoff = as_of or date.today()
        # Every (cutoff, id) with the same date sorts before this sentinel
        pos = bisect_right(keys, (cutoff, float("inf")))
        if pos == 0:
            return None
        return self._rows[product_id][pos - 1]

    def latest_many(
        self,
        product_ids: Iterable[str],
        as_of: date | None = None,
    ) -> dict[str, InventorySnapshot]:
        """Resolve each product independently; products without data are absent."""
        resolved: dict[str, InventorySnapshot] = {}
        for product_id in product_ids:
            snap = self.latest(product_id, as_of)
            if snap is not None:
                resolved[product_id] = snap
        return resolved

    def within(
        self,
        product_id: str,
        start: date,
        end: date,
    ) -> list[InventorySnapshot]:
        """Snapshots of one product dated within [start, end], ascending."""
        return [s for s in self._rows.get(product_id, []) if start <= s.date <= end]


async def load_index(
    source: DataSource,
    product_ids: Collection[str] | None = None,
    *,
    start: date | None = None,
    end: date | None = None,
) -> SnapshotIndex:
    """Pull snapshots through ``source`` and index them."""
    snapshots = await source.fetch_snapshots(product_ids, start=start, end=end)
    return SnapshotIndex.from_snapshots(snapshots)


async def resolve_snapshot(
    source: DataSource,
    product_id: str,
    as_of: date | None = None,
) -> InventorySnapshot | None:
    """Latest snapshot of one product at or before ``as_of``; None = no data."""
    cutoff = as_of or date.today()
    index = await load_index(source, [product_id], end=cutoff)
    return index.latest(product_id, cutoff)


async def resolve_snapshots(
    source: DataSource,
    product_ids: Collection[str],
    as_of: date | None = None,
) -> dict[str, InventorySnapshot]:
    """Latest snapshot per product at or before ``as_of``.

    Products with no snapshot at or before the date are left out of the
    result rather than reported as errors.
    """
    if not product_ids:
        return {}
    cutoff = as_of or date.today()
    index = await load_index(source, product_ids, end=cutoff)
    resolved = index.latest_many(product_ids, cutoff)
    logger.debug(
        "Resolved %d/%d products as of %s",
        len(resolved),
        len(product_ids),
        cutoff,
    )
    return resolved
