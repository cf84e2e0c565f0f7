"""
Pytest fixtures for the inventory integrity test suite.

Provides:
- A file-backed SQLite database per test (tables, sequences, and the ORM
  immutability listeners in place)
- The process-wide singletons (signer, cipher, locks, storage) built the
  way bootstrap builds them, with test secrets
- Actors for each role and inventory seed helpers

Environment Variables:
- None.  Every test gets its own database and backup directory under
  pytest's tmp_path, so tests can run in parallel and leave nothing behind.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from io import StringIO
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import sessionmaker

from inventory_backup.services.encryption import ArtifactCipher
from inventory_backup.services.lifecycle import BackupLifecycleManager
from inventory_backup.services.locks import BackupLock
from inventory_backup.services.storage import LocalArtifactStorage
from inventory_config import IntegritySettings
from inventory_kernel.db.engine import build_engine, create_tables, session_scope
from inventory_kernel.db.immutability import register_immutability_listeners
from inventory_kernel.domain.audit import AuditAction, AuditEntityType
from inventory_kernel.domain.clock import DeterministicClock
from inventory_kernel.domain.roles import Actor, UserRole
from inventory_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from inventory_kernel.models.inventory import InventoryItem, SystemSetting, User
from inventory_kernel.services.audit_writer import (
    AuditChainLock,
    AuditChainWriter,
    AuditFailureCounter,
    audit_unit_of_work,
)
from inventory_kernel.services.sequence_service import SequenceService
from inventory_kernel.utils.signing import AuditSigner
from inventory_services import build_runtime

TEST_SIGNING_SECRET = "test-signing-secret"
TEST_ENCRYPTION_SECRET = "test-encryption-secret"
TEST_NOW = datetime(2024, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture inventory_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, lifecycle, admin):
            lifecycle.create(admin, BackupOptions())
            logs = captured_logs()
            assert any(r["message"] == "backup_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("inventory_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'inventory.db'}"


@pytest.fixture
def engine(database_url):
    engine = build_engine(database_url)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    register_immutability_listeners()
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    with session_scope(factory) as session:
        SequenceService(session).initialize_sequences()
    return factory


@pytest.fixture
def session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# =============================================================================
# Clock and singletons
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(TEST_NOW)


@pytest.fixture
def signer():
    return AuditSigner(TEST_SIGNING_SECRET)


@pytest.fixture
def cipher():
    # Low iteration count keeps key derivation fast; the format is unchanged
    return ArtifactCipher(TEST_ENCRYPTION_SECRET, iterations=1000)


@pytest.fixture
def chain_lock():
    return AuditChainLock(timeout_seconds=10.0)


@pytest.fixture
def backup_lock():
    return BackupLock()


@pytest.fixture
def failure_counter():
    return AuditFailureCounter()


@pytest.fixture
def storage(tmp_path):
    return LocalArtifactStorage(tmp_path / "backups")


@pytest.fixture
def make_lifecycle(
    session_factory,
    storage,
    cipher,
    signer,
    chain_lock,
    backup_lock,
    deterministic_clock,
    failure_counter,
):
    """Factory for lifecycle managers with overridable limits."""

    def _make(**overrides) -> BackupLifecycleManager:
        kwargs = dict(
            session_factory=session_factory,
            storage=storage,
            cipher=cipher,
            signer=signer,
            chain_lock=chain_lock,
            backup_lock=backup_lock,
            clock=deterministic_clock,
            restore_timeout_seconds=60.0,
            failure_counter=failure_counter,
        )
        kwargs.update(overrides)
        return BackupLifecycleManager(**kwargs)

    return _make


@pytest.fixture
def lifecycle(make_lifecycle):
    return make_lifecycle()


@pytest.fixture
def settings(tmp_path, database_url) -> IntegritySettings:
    return IntegritySettings(
        audit_signing_secret=TEST_SIGNING_SECRET,
        backup_encryption_secret=TEST_ENCRYPTION_SECRET,
        database_url=database_url,
        backup_storage_path=str(tmp_path / "backups"),
        restore_timeout_seconds=60.0,
        pbkdf2_iterations=1000,
        log_level="DEBUG",
    )


@pytest.fixture
def runtime(settings, deterministic_clock, session_factory):
    return build_runtime(settings, deterministic_clock, session_factory)


@pytest.fixture
def service(runtime):
    return runtime.service


# =============================================================================
# Actors
# =============================================================================


@pytest.fixture
def admin():
    return Actor("admin-1", UserRole.ADMIN, ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def auditor():
    return Actor("auditor-1", UserRole.AUDITOR)


@pytest.fixture
def manager():
    return Actor("manager-1", UserRole.MANAGER)


@pytest.fixture
def data_entry():
    return Actor("clerk-1", UserRole.DATA_ENTRY)


# =============================================================================
# Data helpers
# =============================================================================


@pytest.fixture
def seed_inventory(session_factory, deterministic_clock):
    """Factory fixture: insert ``count`` inventory items, return their ids."""

    def _seed(count: int = 10, created_at: datetime | None = None, **overrides) -> list[UUID]:
        created_at = created_at or deterministic_clock.now()
        ids = []
        with session_scope(session_factory) as session:
            for i in range(count):
                values = dict(
                    item_name=f"Saline 0.9% #{i}",
                    batch=f"B-{1000 + i}",
                    quantity=10 * (i + 1),
                    reject=i % 3,
                    destination="MAIS" if i % 2 == 0 else "FOZAN",
                    category="fluids",
                    notes=None,
                    created_at=created_at + timedelta(seconds=i),
                    updated_at=created_at + timedelta(seconds=i),
                )
                values.update(overrides)
                item = InventoryItem(**values)
                session.add(item)
                session.flush()
                ids.append(item.id)
        return ids

    return _seed


@pytest.fixture
def seed_user(session_factory, deterministic_clock):
    def _seed(email: str = "nurse@example.org", password_hash: str = "$2b$12$secret-hash") -> UUID:
        with session_scope(session_factory) as session:
            user = User(
                email=email,
                name="Nurse Example",
                password_hash=password_hash,
                role=UserRole.DATA_ENTRY.value,
                is_active=True,
                preferences={"theme": "dark"},
                created_at=deterministic_clock.now(),
                updated_at=deterministic_clock.now(),
            )
            session.add(user)
            session.flush()
            return user.id

    return _seed


@pytest.fixture
def seed_setting(session_factory, deterministic_clock):
    def _seed(key: str = "low_stock_threshold", value=25, category: str = "inventory") -> UUID:
        with session_scope(session_factory) as session:
            setting = SystemSetting(
                key=key,
                value=value,
                category=category,
                updated_at=deterministic_clock.now(),
            )
            session.add(setting)
            session.flush()
            return setting.id

    return _seed


@pytest.fixture
def record_entry(session_factory, signer, chain_lock, deterministic_clock, failure_counter):
    """Append one audit entry in its own unit of work and return it."""

    def _record(
        actor_id: str = "clerk-1",
        action: AuditAction = AuditAction.CREATE,
        entity_type: AuditEntityType = AuditEntityType.INVENTORY_ITEM,
        entity_id=None,
        **kwargs,
    ):
        with audit_unit_of_work(session_factory, chain_lock) as session:
            writer = AuditChainWriter(
                session, signer, deterministic_clock, chain_lock, failure_counter
            )
            return writer.record(
                actor_id, action, entity_type, entity_id or uuid4(), **kwargs
            )

    return _record
