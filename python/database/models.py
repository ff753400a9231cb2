"""
SQLAlchemy ORM Models for the Client Verification Portal

Tables:
1. contact_records - Imported client contact records awaiting verification
2. admin_accounts - Administrators allowed to import, edit and export
3. admin_security - Second-factor settings per administrator
4. audit_logs - Append-only history of record changes

Types are kept dialect-neutral (integer keys, generic JSON) so the same
schema runs on PostgreSQL in production and SQLite in tests.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text,
    ForeignKey, Index, Enum, JSON, event
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


def utc_now() -> datetime:
    """Timezone-aware current UTC time"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ============================================
# ENUMS
# ============================================

class RecordStatus(str, PyEnum):
    """Verification status of a contact record"""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    UPDATED = "updated"


class AuditAction(str, PyEnum):
    """Type of audited change"""
    CREATED = "created"
    CONFIRMED = "confirmed"
    UPDATED = "updated"


class AuditSource(str, PyEnum):
    """Which component produced an audited change"""
    IMPORT = "import"
    VERIFICATION = "verification"
    ADMIN = "admin"


# Fields a client or administrator may edit
EDITABLE_FIELDS = (
    "client_number",
    "first_name",
    "last_name",
    "phone_number",
    "alt_number",
    "address",
    "email",
)


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False
    )


# ============================================
# CONTACT RECORDS
# ============================================

class ContactRecord(Base):
    """
    One client's contact details, plus the state of its verification cycle.

    A record holds at most one active token. Issuing a new token overwrites
    the previous one; consuming it clears both token and expiry.
    """
    __tablename__ = "contact_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Business key from the source spreadsheet (not unique, see find_match)
    client_number: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    first_name: Mapped[str] = mapped_column(String(200), nullable=False)
    last_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(50), nullable=False)
    alt_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    address: Mapped[str] = mapped_column(Text, nullable=False)

    # Stored as given, matched case-insensitively
    email: Mapped[str] = mapped_column(String(254), nullable=False, index=True)

    status: Mapped[RecordStatus] = mapped_column(
        Enum(RecordStatus, values_callable=lambda e: [m.value for m in e],
             name="record_status"),
        nullable=False,
        default=RecordStatus.PENDING,
        index=True
    )

    verification_token: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        unique=True
    )
    token_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True
    )

    has_changes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    group_template: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
        index=True
    )

    audit_entries: Mapped[List["AuditLog"]] = relationship(
        "AuditLog",
        back_populates="record",
        order_by="AuditLog.id",
        passive_deletes=True
    )

    __table_args__ = (
        Index('ix_contact_status_updated', 'status', 'last_updated'),
    )

    def editable_values(self) -> Dict[str, Optional[str]]:
        """Current values of the editable fields"""
        return {name: getattr(self, name) for name in EDITABLE_FIELDS}

    def snapshot(self) -> Dict[str, Any]:
        """JSON-serializable state used for audit old/new data"""
        data: Dict[str, Any] = self.editable_values()
        data["group_template"] = self.group_template
        data["status"] = self.status.value if self.status else None
        return data

    def to_dict(self) -> Dict[str, Any]:
        """Full representation without the token value"""
        expiry = as_utc(self.token_expiry)
        last_updated = as_utc(self.last_updated)
        created_at = as_utc(self.created_at)
        return {
            "id": self.id,
            **self.editable_values(),
            "group_template": self.group_template,
            "status": self.status.value if self.status else None,
            "has_changes": bool(self.has_changes),
            "token_expiry": expiry.isoformat() if expiry else None,
            "last_updated": last_updated.isoformat() if last_updated else None,
            "created_at": created_at.isoformat() if created_at else None,
        }

    def __repr__(self) -> str:
        return f"<ContactRecord(id={self.id}, client_number='{self.client_number}', status={self.status})>"


# ============================================
# ADMINISTRATORS
# ============================================

class AdminAccount(Base):
    """
    Administrator login.

    Accounts are created out of band (see create_admin.py); there is no
    self-registration.
    """
    __tablename__ = "admin_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(254), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False
    )

    security: Mapped[Optional["AdminSecurity"]] = relationship(
        "AdminSecurity",
        back_populates="admin",
        uselist=False,
        cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<AdminAccount(id={self.id}, email='{self.email}')>"


class AdminSecurity(Base, TimestampMixin):
    """TOTP settings for an administrator"""
    __tablename__ = "admin_security"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    admin_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("admin_accounts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    two_factor_secret: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    two_factor_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    admin: Mapped["AdminAccount"] = relationship("AdminAccount", back_populates="security")

    def __repr__(self) -> str:
        return f"<AdminSecurity(admin_id={self.admin_id}, enabled={self.two_factor_enabled})>"


# ============================================
# AUDIT
# ============================================

class AuditLog(Base):
    """
    Append-only history of contact record changes.

    Immutable - updates and deletes are rejected at flush time.
    """
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    record_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("contact_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, values_callable=lambda e: [m.value for m in e],
             name="audit_action"),
        nullable=False,
        index=True
    )
    source: Mapped[AuditSource] = mapped_column(
        Enum(AuditSource, values_callable=lambda e: [m.value for m in e],
             name="audit_source"),
        nullable=False
    )

    # Before/after snapshots
    old_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    new_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Requester
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    # Timestamp (no updated_at - audit logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        server_default=func.now(),
        nullable=False,
        index=True
    )

    record: Mapped["ContactRecord"] = relationship("ContactRecord", back_populates="audit_entries")

    __table_args__ = (
        Index('ix_audit_record_timestamp', 'record_id', 'timestamp'),
    )

    def to_dict(self) -> Dict[str, Any]:
        ts = as_utc(self.timestamp)
        return {
            "id": self.id,
            "record_id": self.record_id,
            "action": self.action.value,
            "source": self.source.value,
            "old_data": self.old_data,
            "new_data": self.new_data,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": ts.isoformat() if ts else None,
        }

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, record_id={self.record_id}, action={self.action})>"


class ImmutableAuditError(Exception):
    """Raised when code attempts to modify or delete an audit row"""
    pass


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise ImmutableAuditError(f"audit_logs row {target.id} is append-only")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise ImmutableAuditError(f"audit_logs row {target.id} is append-only")
