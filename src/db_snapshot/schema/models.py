"""Pydantic models for inventories and post-restore verification.

- ``InventoryEntry``: one table or view in a database inventory
- ``RowCountDiff``: a base table whose approximate row counts differ
- ``VerificationDiff``: structured, non-fatal comparison result
"""

from typing import Literal

from pydantic import BaseModel, Field


class InventoryEntry(BaseModel):
    """A relation in a table/view inventory.

    ``row_count`` is approximate (catalog statistics) and only set for
    base tables.
    """

    kind: Literal["base-table", "view"]
    row_count: int | None = None


class RowCountDiff(BaseModel):
    """Row-count drift for a base table present on both sides."""

    table: str
    src: int
    tgt: int


class VerificationDiff(BaseModel):
    """Result of comparing source and target inventories.

    Example:
        >>> diff = VerificationDiff()
        >>> diff.has_differences
        False
        >>> diff.format_report()
        'Verification passed: target matches source'
    """

    missing_in_target: list[str] = Field(default_factory=list)
    extra_in_target: list[str] = Field(default_factory=list)
    row_count_diffs: list[RowCountDiff] = Field(default_factory=list)

    @property
    def has_differences(self) -> bool:
        return bool(self.missing_in_target or self.extra_in_target or self.row_count_diffs)

    def format_report(self) -> str:
        """Format the comparison as a human-readable report."""
        if not self.has_differences:
            return "Verification passed: target matches source"

        lines = ["Verification found differences:"]

        if self.missing_in_target:
            lines.append(f"\n  Missing in target ({len(self.missing_in_target)}):")
            for name in self.missing_in_target:
                lines.append(f"    - {name}")

        if self.extra_in_target:
            lines.append(f"\n  Extra in target ({len(self.extra_in_target)}):")
            for name in self.extra_in_target:
                lines.append(f"    - {name}")

        if self.row_count_diffs:
            lines.append(f"\n  Row count drift ({len(self.row_count_diffs)}):")
            for diff in self.row_count_diffs:
                lines.append(f"    - {diff.table}: source {diff.src}, target {diff.tgt}")

        return "\n".join(lines)
