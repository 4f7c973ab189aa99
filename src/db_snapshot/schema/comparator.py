"""Source vs. target inventory comparison using set operations.

``compare_inventories`` is pure logic: no I/O, no database connections.
``compare`` builds both inventories with ``SchemaIntrospector`` and feeds
them to it.  Neither side is ever modified.

Usage:
    from db_snapshot.schema.comparator import compare

    diff = await compare(source_url, target_url)
    if diff.has_differences:
        logger.warning(diff.format_report())
"""

import logging

from db_snapshot.schema.introspector import SchemaIntrospector
from db_snapshot.schema.models import InventoryEntry, RowCountDiff, VerificationDiff

logger = logging.getLogger(__name__)


def compare_inventories(
    source: dict[str, InventoryEntry],
    target: dict[str, InventoryEntry],
) -> VerificationDiff:
    """Compare two inventories.

    Presence spans tables and views; row counts are compared only for names
    that are base tables on both sides.

    Args:
        source: Inventory of the source database.
        target: Inventory of the restored target.

    Returns:
        ``VerificationDiff`` with sorted ``missing_in_target``,
        ``extra_in_target`` and ``row_count_diffs``.

    Examples:
        >>> src = {
        ...     "a": InventoryEntry(kind="base-table", row_count=10),
        ...     "v": InventoryEntry(kind="view"),
        ... }
        >>> tgt = {"a": InventoryEntry(kind="base-table", row_count=10)}
        >>> compare_inventories(src, tgt).missing_in_target
        ['v']
    """
    source_names: set[str] = set(source)
    target_names: set[str] = set(target)

    missing_in_target = sorted(source_names - target_names)
    extra_in_target = sorted(target_names - source_names)

    row_count_diffs: list[RowCountDiff] = []
    for name in sorted(source_names & target_names):
        src, tgt = source[name], target[name]
        if src.kind != "base-table" or tgt.kind != "base-table":
            continue
        src_rows, tgt_rows = src.row_count or 0, tgt.row_count or 0
        if src_rows != tgt_rows:
            row_count_diffs.append(RowCountDiff(table=name, src=src_rows, tgt=tgt_rows))

    return VerificationDiff(
        missing_in_target=missing_in_target,
        extra_in_target=extra_in_target,
        row_count_diffs=row_count_diffs,
    )


async def compare(
    source_url: str,
    target_url: str,
    excluded_tables: set[str] | None = None,
) -> VerificationDiff:
    """Introspect both databases and compare their inventories."""
    async with SchemaIntrospector(source_url, excluded_tables) as introspector:
        source = await introspector.inventory()
    async with SchemaIntrospector(target_url, excluded_tables) as introspector:
        target = await introspector.inventory()

    diff = compare_inventories(source, target)
    logger.debug(
        f"Verification: {len(source)} source / {len(target)} target relations, "
        f"{len(diff.row_count_diffs)} row-count diffs"
    )
    return diff
