"""
Public Verification Handler

Resolves a verification token to its contact record and applies the
client's confirm-or-update submission. Every token problem is reported to
the caller in one generic form so the endpoint never reveals whether a
token existed, expired or was already used.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config_manager import ValidationConfig
from database.models import (
    AuditAction,
    AuditSource,
    ContactRecord,
    EDITABLE_FIELDS,
    RecordStatus,
)
from database.repositories import AuditRepository, Requester
from errors import (
    ConflictError,
    ExpiredTokenError,
    GENERIC_TOKEN_MESSAGE,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from importer import validate_contact_fields
from security_logger import SecurityLogger
from text_utils import clean_cell, mask_token
from tokens import TokenIssuer

logger = logging.getLogger(__name__)

ACTION_CONFIRM = "confirm"
ACTION_UPDATE = "update"
ACTIONS = (ACTION_CONFIRM, ACTION_UPDATE)


def changed_fields(record: ContactRecord, fields: Dict[str, Any]) -> List[str]:
    """Editable fields whose submitted value differs from the stored one.

    Fields absent from the submission count as unchanged.
    """
    changed = []
    for name in EDITABLE_FIELDS:
        if name not in fields:
            continue
        submitted = clean_cell(fields[name])
        stored = clean_cell(getattr(record, name))
        if submitted != stored:
            changed.append(name)
    return changed


class VerificationHandler:
    """Fetch and submit operations keyed by a verification token."""

    def __init__(
        self,
        session: Session,
        issuer: TokenIssuer,
        validation: Optional[ValidationConfig] = None,
        security: Optional[SecurityLogger] = None
    ):
        self.session = session
        self.issuer = issuer
        self.validation = validation or ValidationConfig()
        self.security = security
        self.audit = AuditRepository(session)

    def _reject(self, token: str, reason: str, requester: Optional[Requester]) -> None:
        logger.info(f"Rejected verification token {mask_token(token)}: {reason}")
        if self.security is not None:
            self.security.log_token_rejected(
                token,
                reason,
                source_ip=(requester.ip_address if requester else "") or ""
            )

    def _resolve(self, token: str, requester: Optional[Requester]) -> ContactRecord:
        try:
            return self.issuer.resolve(token)
        except (NotFoundError, ExpiredTokenError) as e:
            self._reject(token, e.code, requester)
            raise InvalidTokenError()

    def fetch(
        self,
        token: str,
        requester: Optional[Requester] = None
    ) -> Tuple[ContactRecord, bool]:
        """
        Look up the record behind a token.

        Args:
            token: Token from the verification link
            requester: Caller's IP address and user agent

        Returns:
            Tuple of (record, has_changes)

        Raises:
            InvalidTokenError: If the token is unknown or expired
        """
        record = self._resolve(token, requester)
        return record, bool(record.has_changes)

    def submit(
        self,
        token: str,
        action: str,
        fields: Dict[str, Any],
        requester: Optional[Requester] = None
    ) -> ContactRecord:
        """
        Apply a confirm or update submission and consume the token.

        The field write, token invalidation and audit entry are committed
        together or not at all.

        Args:
            token: Token from the verification link
            action: "confirm" or "update"
            fields: Submitted editable fields
            requester: Caller's IP address and user agent

        Returns:
            The updated record

        Raises:
            ValidationError: Unknown action, changed fields on confirm, or bad field values
            InvalidTokenError: If the token is unknown or expired
            ConflictError: If another submission consumed the token first
        """
        action = (action or "").strip().lower()
        if action not in ACTIONS:
            raise ValidationError(
                f"Unknown action: {action or '<empty>'}",
                field="action",
                suggestion="Use 'confirm' or 'update'"
            )

        record = self._resolve(token, requester)
        old = record.snapshot()

        if action == ACTION_CONFIRM:
            changed = changed_fields(record, fields or {})
            if changed:
                raise ValidationError(
                    f"Confirm cannot change fields: {', '.join(changed)}",
                    field=changed[0],
                    code="FIELDS_CHANGED",
                    suggestion="Submit with action 'update' to change your details"
                )
            values: Dict[str, Any] = {
                "status": RecordStatus.CONFIRMED,
                "has_changes": False,
            }
            audit_action = AuditAction.CONFIRMED
        else:
            merged = record.editable_values()
            merged.update(fields or {})
            cleaned = validate_contact_fields(merged, self.validation)
            values = dict(cleaned)
            values["status"] = RecordStatus.UPDATED
            values["has_changes"] = True
            audit_action = AuditAction.UPDATED

        try:
            self.issuer.consume(record, token, values)
            self.audit.append(
                record.id, audit_action, old, record.snapshot(),
                requester=requester, source=AuditSource.VERIFICATION
            )
            self.session.commit()
        except ConflictError:
            self.session.rollback()
            self._reject(token, "CONFLICT", requester)
            raise ConflictError(GENERIC_TOKEN_MESSAGE, field="token")
        except Exception:
            self.session.rollback()
            raise

        logger.info(f"Record {record.id} {audit_action.value} via verification link")
        return record
