"""
inventory_services -- Package init and public API.

Responsibility:
    Wiring and the public facade.  ``build_runtime()`` constructs every
    singleton once; ``IntegrityService`` is the canonical import surface
    for API routes, scripts, and the scheduler process.

Architecture position:
    Dependency direction:
        inventory_services/ -> inventory_backup/  (allowed)
        inventory_services/ -> inventory_kernel/  (allowed)
        inventory_kernel/   -> inventory_services/ (FORBIDDEN)
        inventory_backup/   -> inventory_services/ (FORBIDDEN)
"""

from inventory_services.bootstrap import IntegrityRuntime, build_runtime
from inventory_services.integrity_service import IntegrityService

__all__ = [
    "IntegrityRuntime",
    "IntegrityService",
    "build_runtime",
]
