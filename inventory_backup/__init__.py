"""
Inventory Backup - encrypted, checksum-validated backup and restore.

Provides:
- Artifact builder (CSV / JSON / SQL, optional AES-256-GCM encryption)
- Integrity validator over stored artifacts
- Lifecycle manager (create / validate / restore / delete) under a global lock
- Pure retention planning and the periodic retention scheduler
"""
