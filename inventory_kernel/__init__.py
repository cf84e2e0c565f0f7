"""
Inventory Kernel - integrity core for the medical inventory system.

Provides:
- Tamper-evident, HMAC-chained audit trail
- Append-only audit persistence with monotonic sequencing
- Chain verification and role-gated audit queries
- Shared persistence, logging, and typed error infrastructure
"""

__version__ = "0.1.0"
