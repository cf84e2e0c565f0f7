"""Read-only query selectors."""

from inventory_kernel.selectors.audit_selector import AuditSelector

__all__ = ["AuditSelector"]
