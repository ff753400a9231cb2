"""
Persistence layer of the Client Verification Portal

Models for contact records, administrators and the append-only audit log,
the repositories that own every write, and session plumbing for FastAPI
and the import worker.
"""

from database.models import (
    Base,
    ContactRecord,
    AdminAccount,
    AdminSecurity,
    AuditLog,
    RecordStatus,
    AuditAction,
    AuditSource,
    EDITABLE_FIELDS,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    get_db,
    get_db_provider,
    init_db,
    close_db,
    create_test_provider,
)
from database.repositories import (
    ContactRecordRepository,
    AdminRepository,
    AuditRepository,
    Requester,
    RepositoryError,
    RecordNotFoundError,
)
from database.monitoring import (
    check_health,
    get_db_metrics,
    timed_query,
    HealthStatus,
)

__all__ = [
    'Base',
    'ContactRecord',
    'AdminAccount',
    'AdminSecurity',
    'AuditLog',
    'RecordStatus',
    'AuditAction',
    'AuditSource',
    'EDITABLE_FIELDS',
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'get_db',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_test_provider',
    'ContactRecordRepository',
    'AdminRepository',
    'AuditRepository',
    'Requester',
    'RepositoryError',
    'RecordNotFoundError',
    'check_health',
    'get_db_metrics',
    'timed_query',
    'HealthStatus',
]
