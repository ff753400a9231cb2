"""
Admin roster operations: paged search, admin edits and dashboard counters.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from config_manager import ApiConfig, StatsConfig, ValidationConfig
from database.models import AuditAction, AuditSource, ContactRecord
from database.repositories import AuditRepository, ContactRecordRepository, Requester
from errors import ValidationError
from importer import validate_contact_fields

logger = logging.getLogger(__name__)


def clamp_paging(
    page: Optional[int],
    limit: Optional[int],
    config: Optional[ApiConfig] = None
) -> Tuple[int, int]:
    """
    Normalize page/limit query values.

    Raises:
        ValidationError: If page < 1 or limit is outside 1..max_page_size
    """
    config = config or ApiConfig()
    page = 1 if page is None else page
    limit = config.default_page_size if limit is None else limit
    if page < 1:
        raise ValidationError("page must be at least 1", field="page")
    if limit < 1 or limit > config.max_page_size:
        raise ValidationError(
            f"limit must be between 1 and {config.max_page_size}",
            field="limit"
        )
    return page, limit


def search_records(
    session: Session,
    query: Optional[str] = None,
    status: Optional[str] = None,
    page: Optional[int] = None,
    limit: Optional[int] = None,
    config: Optional[ApiConfig] = None
) -> Tuple[List[ContactRecord], int, int, int]:
    """
    One page of the roster.

    Returns:
        Tuple of (records, total, page, limit)
    """
    page, limit = clamp_paging(page, limit, config)
    records, total = ContactRecordRepository(session).search(
        query=query, status=status, page=page, limit=limit
    )
    return records, total, page, limit


def edit_record(
    session: Session,
    record_id: int,
    fields: Dict[str, Any],
    validation: Optional[ValidationConfig] = None,
    requester: Optional[Requester] = None
) -> ContactRecord:
    """
    Apply an administrator's edit to a record.

    Fields not submitted keep their stored values. The status is left as it
    is and the client-change flag is cleared, since the admin has now seen
    the current values.

    Raises:
        RecordNotFoundError: If the record does not exist
        ValidationError: If the merged fields are invalid
    """
    records = ContactRecordRepository(session)
    record = records.get_or_raise(record_id)
    old = record.snapshot()

    merged = record.editable_values()
    merged.update(fields or {})
    cleaned = validate_contact_fields(merged, validation)

    try:
        records.update_fields(record, cleaned, has_changes=False)
        AuditRepository(session).append(
            record.id, AuditAction.UPDATED, old, record.snapshot(),
            requester=requester, source=AuditSource.ADMIN
        )
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"Record {record.id} edited by admin")
    return record


def dashboard_stats(
    session: Session,
    config: Optional[StatsConfig] = None,
    now: Optional[datetime] = None
) -> Dict[str, Any]:
    config = config or StatsConfig()
    return ContactRecordRepository(session).stats(
        recent_window_days=config.recent_window_days, now=now
    )
