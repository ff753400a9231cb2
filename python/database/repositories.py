"""
Repository Pattern for Client Verification Portal Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories flush but never commit; transaction boundaries belong to the
caller (request handler, import loop or UnitOfWork).
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Dict, Any, Tuple

from sqlalchemy import select, func, and_, or_, update
from sqlalchemy.orm import Session

from database.models import (
    ContactRecord,
    AdminAccount,
    AdminSecurity,
    AuditLog,
    RecordStatus,
    AuditAction,
    AuditSource,
    EDITABLE_FIELDS,
    utc_now,
)
from database.monitoring import timed_query
from errors import NotFoundError, ValidationError
from text_utils import normalize_email

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class RecordNotFoundError(RepositoryError, NotFoundError):
    """Raised when a contact record is not found."""
    pass


@dataclass(frozen=True)
class Requester:
    """Origin of a change, recorded on audit entries."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


# Search/filter values accepted for the status query parameter
STATUS_FILTER_ALL = ("", "all")


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ============================================
# CONTACT RECORD REPOSITORY
# ============================================

class ContactRecordRepository:
    """Repository for contact record operations."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, record_id: int) -> Optional[ContactRecord]:
        """
        Get record by ID.

        Args:
            record_id: Primary key

        Returns:
            ContactRecord or None
        """
        return self.session.get(ContactRecord, record_id)

    def get_or_raise(self, record_id: int) -> ContactRecord:
        """
        Get record by ID or fail.

        Raises:
            RecordNotFoundError: If no record has this ID
        """
        record = self.get_by_id(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record not found: {record_id}", field="id")
        return record

    def get_by_client_number(self, client_number: str) -> Optional[ContactRecord]:
        """Oldest record carrying this client number."""
        query = select(ContactRecord).where(
            ContactRecord.client_number == client_number
        ).order_by(ContactRecord.id).limit(1)
        return self.session.execute(query).scalar_one_or_none()

    def get_by_email(self, email: str) -> Optional[ContactRecord]:
        """Oldest record carrying this email, compared case-insensitively."""
        normalized = normalize_email(email)
        if not normalized:
            return None
        query = select(ContactRecord).where(
            func.lower(ContactRecord.email) == normalized
        ).order_by(ContactRecord.id).limit(1)
        return self.session.execute(query).scalar_one_or_none()

    def get_by_token(self, token: str) -> Optional[ContactRecord]:
        """Record currently holding this verification token."""
        if not token:
            return None
        query = select(ContactRecord).where(ContactRecord.verification_token == token)
        return self.session.execute(query).scalar_one_or_none()

    def find_match(self, client_number: str, email: str) -> Optional[ContactRecord]:
        """
        Locate the existing record an imported row refers to.

        Looks up by client number first, then by email. When the two keys
        point at two different records the row is ambiguous.

        Args:
            client_number: Business key from the row
            email: Email from the row

        Returns:
            Matching ContactRecord or None when the row is new

        Raises:
            ValidationError: If client number and email match different records
        """
        by_number = self.get_by_client_number(client_number) if client_number else None
        by_email = self.get_by_email(email)

        if by_number is not None and by_email is not None and by_number.id != by_email.id:
            raise ValidationError(
                "client_number and email match different records",
                field="email",
                code="AMBIGUOUS_MATCH",
                suggestion="Correct the client number or email so both refer to one client"
            )
        return by_number or by_email

    def create(
        self,
        fields: Dict[str, Any],
        group_template: Optional[str] = None
    ) -> ContactRecord:
        """
        Create a new pending contact record.

        Args:
            fields: Validated editable fields
            group_template: Optional mail template label

        Returns:
            Created ContactRecord
        """
        record = ContactRecord(
            **{name: fields.get(name) for name in EDITABLE_FIELDS},
            group_template=group_template,
            status=RecordStatus.PENDING,
            has_changes=False
        )
        self.session.add(record)
        self.session.flush()

        logger.debug(f"Created record: {record.id} (client {record.client_number})")
        return record

    def update_fields(
        self,
        record: ContactRecord,
        fields: Dict[str, Any],
        **attributes: Any
    ) -> ContactRecord:
        """
        Overwrite editable fields and any extra attributes.

        Args:
            record: Record to update
            fields: Validated editable fields
            **attributes: Non-editable columns to set (status, has_changes, ...)

        Returns:
            Updated record
        """
        for name in EDITABLE_FIELDS:
            if name in fields:
                setattr(record, name, fields[name])
        for key, value in attributes.items():
            if not hasattr(record, key):
                raise RepositoryError(f"Unknown record attribute: {key}")
            setattr(record, key, value)
        record.last_updated = utc_now()

        self.session.flush()
        return record

    def set_token(
        self,
        record: ContactRecord,
        token: Optional[str],
        expiry: Optional[datetime]
    ) -> None:
        """Store (or clear) the record's verification token."""
        record.verification_token = token
        record.token_expiry = expiry
        self.session.flush()

    def consume_token(
        self,
        record_id: int,
        token: str,
        values: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> int:
        """
        Write values and clear the token, only if the token is still live.

        A single conditional UPDATE, so two concurrent submissions of the
        same token cannot both succeed.

        Args:
            record_id: Record to update
            token: Token the client presented
            values: Column values to write
            now: Reference time for the expiry check

        Returns:
            Number of rows updated (0 or 1)
        """
        now = (now or utc_now()).astimezone(timezone.utc)
        stmt = (
            update(ContactRecord)
            .where(
                and_(
                    ContactRecord.id == record_id,
                    ContactRecord.verification_token == token,
                    ContactRecord.token_expiry > now
                )
            )
            .values(
                **values,
                verification_token=None,
                token_expiry=None,
                last_updated=now
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount

    @timed_query("search_records")
    def search(
        self,
        query: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10
    ) -> Tuple[List[ContactRecord], int]:
        """
        Search records for the admin roster.

        Args:
            query: Case-insensitive substring over names, email, client number, phone
            status: Status value, or "all"/empty for no filter
            page: 1-based page number
            limit: Page size

        Returns:
            Tuple of (records list, total count)

        Raises:
            ValidationError: If status is not a known value
        """
        conditions = []

        if query and query.strip():
            pattern = f"%{_escape_like(query.strip().lower())}%"
            conditions.append(or_(
                func.lower(ContactRecord.first_name).like(pattern, escape="\\"),
                func.lower(ContactRecord.last_name).like(pattern, escape="\\"),
                func.lower(ContactRecord.email).like(pattern, escape="\\"),
                func.lower(ContactRecord.client_number).like(pattern, escape="\\"),
                func.lower(ContactRecord.phone_number).like(pattern, escape="\\"),
            ))

        status_value = (status or "").strip().lower()
        if status_value not in STATUS_FILTER_ALL:
            try:
                conditions.append(ContactRecord.status == RecordStatus(status_value))
            except ValueError:
                raise ValidationError(
                    f"Unknown status filter: {status_value}",
                    field="status",
                    suggestion="Use one of: all, pending, confirmed, updated"
                )

        count_query = select(func.count()).select_from(ContactRecord)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        data_query = select(ContactRecord)
        if conditions:
            data_query = data_query.where(and_(*conditions))
        data_query = data_query.order_by(
            ContactRecord.last_updated.desc(), ContactRecord.id.desc()
        ).offset((page - 1) * limit).limit(limit)

        records = list(self.session.execute(data_query).scalars().all())
        return records, total

    @timed_query("list_records")
    def list_all(self) -> List[ContactRecord]:
        """All records in id order (export)."""
        query = select(ContactRecord).order_by(ContactRecord.id)
        return list(self.session.execute(query).scalars().all())

    def count(self) -> int:
        return self.session.execute(
            select(func.count()).select_from(ContactRecord)
        ).scalar_one()

    @timed_query("record_stats")
    def stats(
        self,
        recent_window_days: int = 7,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Dashboard counters.

        Args:
            recent_window_days: Window for the recent-activity count
            now: Reference time (defaults to current UTC time)

        Returns:
            Dictionary with totals, rate and activity counts
        """
        now = (now or utc_now()).astimezone(timezone.utc)
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        window_start = now - timedelta(days=recent_window_days)

        status_query = select(
            ContactRecord.status,
            func.count()
        ).group_by(ContactRecord.status)
        status_counts = {
            row[0].value: row[1] for row in self.session.execute(status_query)
        }

        confirmed = status_counts.get(RecordStatus.CONFIRMED.value, 0)
        updated = status_counts.get(RecordStatus.UPDATED.value, 0)
        pending = status_counts.get(RecordStatus.PENDING.value, 0)
        total = confirmed + updated + pending

        today_updates = self.session.execute(
            select(func.count()).select_from(ContactRecord).where(
                and_(
                    ContactRecord.status == RecordStatus.UPDATED,
                    ContactRecord.last_updated >= midnight
                )
            )
        ).scalar_one()

        recent = self.session.execute(
            select(func.count()).select_from(ContactRecord).where(
                and_(
                    ContactRecord.status != RecordStatus.PENDING,
                    ContactRecord.last_updated >= window_start
                )
            )
        ).scalar_one()

        confirmation_rate = round(confirmed / total * 100, 1) if total > 0 else 0.0

        return {
            'total_users': total,
            'confirmed': confirmed,
            'updated': updated,
            'pending': pending,
            'confirmation_rate': confirmation_rate,
            'today_updates': today_updates,
            'recent_update_count': recent,
        }


# ============================================
# ADMIN REPOSITORY
# ============================================

class AdminRepository:
    """Repository for administrator accounts and their second factor."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, admin_id: int) -> Optional[AdminAccount]:
        return self.session.get(AdminAccount, admin_id)

    def get_by_email(self, email: str) -> Optional[AdminAccount]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        query = select(AdminAccount).where(AdminAccount.email == normalized)
        return self.session.execute(query).scalar_one_or_none()

    def create(self, email: str, password_hash: str) -> AdminAccount:
        """
        Create an administrator.

        Raises:
            ValidationError: If the email is already registered
        """
        normalized = normalize_email(email)
        if self.get_by_email(normalized) is not None:
            raise ValidationError(
                f"Admin already exists: {normalized}",
                field="email",
                code="DUPLICATE_ADMIN"
            )
        admin = AdminAccount(email=normalized, password_hash=password_hash)
        self.session.add(admin)
        self.session.flush()
        return admin

    def get_security(self, admin_id: int) -> Optional[AdminSecurity]:
        query = select(AdminSecurity).where(AdminSecurity.admin_id == admin_id)
        return self.session.execute(query).scalar_one_or_none()

    def set_two_factor(
        self,
        admin: AdminAccount,
        secret: Optional[str],
        enabled: bool
    ) -> AdminSecurity:
        """Create or update the admin's TOTP settings."""
        security = self.get_security(admin.id)
        if security is None:
            security = AdminSecurity(admin_id=admin.id)
            self.session.add(security)
        security.two_factor_secret = secret
        security.two_factor_enabled = enabled
        self.session.flush()
        return security


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for the append-only audit ledger."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        record_id: int,
        action: AuditAction,
        old: Optional[Dict[str, Any]],
        new: Optional[Dict[str, Any]],
        requester: Optional[Requester] = None,
        source: AuditSource = AuditSource.VERIFICATION
    ) -> AuditLog:
        """
        Append an audit entry inside the caller's transaction.

        Args:
            record_id: Record the change applies to
            action: created, confirmed or updated
            old: Snapshot before the change (None on creation)
            new: Snapshot after the change
            requester: IP address and user agent of the caller
            source: Component that made the change

        Returns:
            Created AuditLog
        """
        requester = requester or Requester()
        entry = AuditLog(
            record_id=record_id,
            action=action,
            source=source,
            old_data=dict(old) if old is not None else None,
            new_data=dict(new) if new is not None else None,
            ip_address=requester.ip_address,
            user_agent=requester.user_agent[:500] if requester.user_agent else None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_record(self, record_id: int) -> List[AuditLog]:
        """Entries for one record, oldest first."""
        query = select(AuditLog).where(
            AuditLog.record_id == record_id
        ).order_by(AuditLog.id)
        return list(self.session.execute(query).scalars().all())

    def count(
        self,
        record_id: Optional[int] = None,
        action: Optional[AuditAction] = None
    ) -> int:
        conditions = []
        if record_id is not None:
            conditions.append(AuditLog.record_id == record_id)
        if action is not None:
            conditions.append(AuditLog.action == action)

        query = select(func.count()).select_from(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        return self.session.execute(query).scalar_one()
