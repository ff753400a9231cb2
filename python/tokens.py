"""
Verification Token Issuer

Issues, resolves, invalidates and atomically consumes the single-use,
time-bounded tokens that authorize a client to view and edit one contact
record.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from database.models import ContactRecord, as_utc, utc_now
from database.repositories import ContactRecordRepository
from errors import ConflictError, ExpiredTokenError, NotFoundError
from text_utils import mask_token

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_HOURS = 72
DEFAULT_TOKEN_BYTES = 32


class TokenIssuer:
    """
    Owns the verification_token / token_expiry pair of contact records.

    Methods flush but never commit; the caller decides the transaction.
    """

    def __init__(
        self,
        session: Session,
        validity_hours: int = DEFAULT_VALIDITY_HOURS,
        token_bytes: int = DEFAULT_TOKEN_BYTES
    ):
        self.session = session
        self.validity = timedelta(hours=validity_hours)
        self.token_bytes = token_bytes
        self._records = ContactRecordRepository(session)

    def issue(self, record: ContactRecord, now: Optional[datetime] = None) -> str:
        """
        Generate a fresh token for a record, replacing any previous one.

        Args:
            record: Record to issue for
            now: Reference time (defaults to current UTC time)

        Returns:
            The new URL-safe token
        """
        now = now or utc_now()
        token = secrets.token_urlsafe(self.token_bytes)
        self._records.set_token(record, token, now + self.validity)
        logger.debug(f"Issued token {mask_token(token)} for record {record.id}")
        return token

    def resolve(self, token: str, now: Optional[datetime] = None) -> ContactRecord:
        """
        Find the record a token belongs to.

        Args:
            token: Token from the verification link
            now: Reference time (defaults to current UTC time)

        Returns:
            The record holding the token

        Raises:
            NotFoundError: If no record holds the token
            ExpiredTokenError: If the token's validity window has passed
        """
        record = self._records.get_by_token(token) if token else None
        if record is None:
            raise NotFoundError("Unknown verification token", field="token")

        expiry = as_utc(record.token_expiry)
        if expiry is None or (now or utc_now()) > expiry:
            raise ExpiredTokenError("Verification token has expired", field="token")

        return record

    def invalidate(self, record: ContactRecord) -> None:
        """Clear the record's token so it can no longer be used."""
        self._records.set_token(record, None, None)

    def consume(
        self,
        record: ContactRecord,
        token: str,
        values: Dict[str, Any],
        now: Optional[datetime] = None
    ) -> None:
        """
        Write values and clear the token in one conditional UPDATE.

        Args:
            record: Record previously returned by resolve()
            token: Token the client presented
            values: Column values to write alongside the invalidation
            now: Reference time for the expiry check

        Raises:
            ConflictError: If the token was already consumed or has expired
        """
        updated = self._records.consume_token(record.id, token, values, now=now)
        if updated != 1:
            logger.info(f"Token {mask_token(token)} for record {record.id} was no longer live")
            raise ConflictError(
                "This verification link has already been used",
                field="token"
            )
        self.session.refresh(record)
