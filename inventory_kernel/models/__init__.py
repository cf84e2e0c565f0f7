"""ORM models owned by the inventory kernel."""

from inventory_kernel.models.audit_entry import AuditEntry
from inventory_kernel.models.inventory import (
    Destination,
    InventoryItem,
    SystemSetting,
    User,
)

__all__ = [
    "AuditEntry",
    "Destination",
    "InventoryItem",
    "SystemSetting",
    "User",
]
