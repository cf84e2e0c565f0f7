"""
Minimal before/after diffs for audit entries.

The writer stores only the fields that changed, as
``{field: {"old": <before>, "new": <after>}}``.  A field present on one side
only appears with ``None`` on the other.  Values are reduced to their JSON
form first, so a Decimal or datetime compares by its serialized value.
"""

from typing import Any, Mapping

from inventory_kernel.utils.hashing import to_json_safe


def compute_diff(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> dict[str, dict[str, Any]]:
    old = to_json_safe(dict(before or {}))
    new = to_json_safe(dict(after or {}))
    diff: dict[str, dict[str, Any]] = {}
    for key in sorted(set(old) | set(new)):
        old_value = old.get(key)
        new_value = new.get(key)
        if old_value != new_value:
            diff[key] = {"old": old_value, "new": new_value}
    return diff


def old_values(diff: Mapping[str, Any]) -> dict[str, Any]:
    """Extract the ``old`` side of a diff, skipping non-diff keys."""
    return {
        key: change["old"]
        for key, change in diff.items()
        if isinstance(change, Mapping) and "old" in change
    }
