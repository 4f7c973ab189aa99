"""Table/view inventories and post-restore verification.

Usage:
    from db_snapshot.schema import compare, compare_inventories, SchemaIntrospector
"""

from db_snapshot.schema.comparator import compare, compare_inventories
from db_snapshot.schema.introspector import SchemaIntrospector, qualified_name
from db_snapshot.schema.models import InventoryEntry, RowCountDiff, VerificationDiff

__all__ = [
    "compare",
    "compare_inventories",
    "SchemaIntrospector",
    "qualified_name",
    "InventoryEntry",
    "RowCountDiff",
    "VerificationDiff",
]
