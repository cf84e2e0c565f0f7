"""
Keyed signatures for the audit chain.

Responsibility:
    Computes and verifies HMAC-SHA256 signatures over an ordered tuple of
    audit fields.  Each field is length-prefixed before concatenation so
    that no two distinct field tuples share a byte encoding (moving a
    character from one field to its neighbour changes the signature).

Architecture position:
    Kernel > Utils -- pure, no I/O.  The signer is built once at startup
    from the configured secret and injected into the writer and verifier.

Failure modes:
    - MissingSecretError at construction if the key is absent or empty.
      Audit integrity is never optional in a live deployment.
"""

import hashlib
import hmac
from typing import Sequence

from inventory_kernel.exceptions import MissingSecretError

# Previous-signature value for the first entry in the chain.
GENESIS_SIGNATURE = "0" * 64


def encode_fields(fields: Sequence[str | None]) -> bytes:
    """Length-prefixed encoding: ``<len>:<utf8 bytes>`` per field, ``-`` for None."""
    parts: list[bytes] = []
    for field in fields:
        if field is None:
            parts.append(b"-;")
            continue
        raw = field.encode("utf-8")
        parts.append(str(len(raw)).encode("ascii") + b":" + raw + b";")
    return b"".join(parts)


class AuditSigner:
    """
    HMAC-SHA256 signer for audit entries.

    Contract:
        ``sign(fields)`` is deterministic for a given key and field tuple.
        ``verify`` compares in constant time.
    """

    def __init__(self, key: str | bytes | None, secret_name: str = "AUDIT_SIGNING_SECRET"):
        if not key:
            raise MissingSecretError(secret_name)
        self._key = key.encode("utf-8") if isinstance(key, str) else bytes(key)

    def sign(self, fields: Sequence[str | None]) -> str:
        return hmac.new(self._key, encode_fields(fields), hashlib.sha256).hexdigest()

    def verify(self, fields: Sequence[str | None], digest: str | None) -> bool:
        if not digest:
            return False
        return hmac.compare_digest(self.sign(fields), digest)

    def __repr__(self) -> str:
        return "<AuditSigner key=***>"


def sign(fields: Sequence[str | None], key: str | bytes | None) -> str:
    """One-shot signature; raises MissingSecretError for an empty key."""
    return AuditSigner(key).sign(fields)


def verify(fields: Sequence[str | None], key: str | bytes | None, digest: str | None) -> bool:
    """One-shot constant-time verification."""
    return AuditSigner(key).verify(fields, digest)
