"""
Roles and role-gated permissions.

Responsibility:
    Maps each user role to the integrity-core permissions it holds, and
    provides the single ``require_permission`` gate used by services and
    selectors before any role-restricted read or mutation.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  Actor identity and role come from
    the session/auth layer; this module only decides.
"""

from dataclasses import dataclass
from enum import Enum

from inventory_kernel.exceptions import PermissionDeniedError


class UserRole(str, Enum):
    ADMIN = "ADMIN"
    DATA_ENTRY = "DATA_ENTRY"
    SUPERVISOR = "SUPERVISOR"
    MANAGER = "MANAGER"
    AUDITOR = "AUDITOR"


class Permission(str, Enum):
    AUDIT_READ = "audit:read"
    AUDIT_EXPORT = "audit:export"
    AUDIT_REVERT = "audit:revert"
    AUDIT_VERIFY = "audit:verify"
    BACKUP_MANAGE = "backup:manage"
    BACKUP_CONFIG_READ = "backup:config:read"
    BACKUP_CONFIG_WRITE = "backup:config:write"


ROLE_PERMISSIONS: dict[UserRole, frozenset[Permission]] = {
    UserRole.ADMIN: frozenset(Permission),
    UserRole.AUDITOR: frozenset({
        Permission.AUDIT_READ,
        Permission.AUDIT_EXPORT,
        Permission.AUDIT_VERIFY,
    }),
    UserRole.MANAGER: frozenset({
        Permission.AUDIT_READ,
        Permission.BACKUP_CONFIG_READ,
    }),
    UserRole.SUPERVISOR: frozenset(),
    UserRole.DATA_ENTRY: frozenset(),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, as supplied by the auth layer."""

    actor_id: str
    role: UserRole
    ip_address: str | None = None
    user_agent: str | None = None

    def has(self, permission: Permission) -> bool:
        return permission in ROLE_PERMISSIONS.get(UserRole(self.role), frozenset())


# Actor used by the retention scheduler for automatic work.
SYSTEM_ACTOR = Actor(actor_id="system", role=UserRole.ADMIN)


def require_permission(actor: Actor, permission: Permission) -> None:
    """
    Raise PermissionDeniedError unless ``actor`` holds ``permission``.
    """
    if not actor.has(permission):
        raise PermissionDeniedError(
            actor_id=actor.actor_id,
            role=UserRole(actor.role).value,
            permission=permission.value,
        )
