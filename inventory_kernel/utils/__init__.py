"""Utility modules for the inventory kernel."""

from inventory_kernel.utils.hashing import canonicalize_json, sha256_hex
from inventory_kernel.utils.signing import GENESIS_SIGNATURE, AuditSigner

__all__ = [
    "canonicalize_json",
    "sha256_hex",
    "AuditSigner",
    "GENESIS_SIGNATURE",
]
