"""
Security Event Logging

Writes one JSON document per security-relevant event to a dedicated
``security`` logger (and ``security.log`` when file output is enabled):

- AUTH_FAILED: bad admin password or second-factor code
- TOKEN_REJECTED: unknown, expired or already-used verification token

Caller-supplied values are sanitized and truncated. Verification tokens are
only ever logged in masked form.
"""

import logging
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from text_utils import mask_token, sanitize_for_logging

SECURITY_LOG_FORMAT = '%(asctime)s - SECURITY - %(levelname)s - %(message)s'
SECURITY_LOG_FILENAME = "security.log"

MAX_SUBJECT_LENGTH = 80


@dataclass
class SecurityEvent:
    """One security event as written to the log"""
    event_type: str
    reason: str
    subject: str = ""  # email tried or masked token
    source: str = ""
    source_ip: str = ""
    severity: str = "WARNING"
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'reason': self.reason,
            'subject': self.subject,
            'source': self.source,
            'source_ip': self.source_ip,
            'context': self.context
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _clean(value: Any, max_length: int = MAX_SUBJECT_LENGTH) -> str:
    text = sanitize_for_logging(str(value)) if value else ""
    if len(text) > max_length:
        return text[:max_length] + "...(truncated)"
    return text


class SecurityLogger:
    """Structured security events on the ``security`` logger"""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.WARNING,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Attach handlers to the ``security`` logger

        Existing handlers are replaced so repeated construction (tests,
        reloads) never duplicates output.

        Args:
            log_dir: Directory for security.log
            log_level: Minimum level recorded
            enable_console: Also write to stderr
            enable_file: Write to security.log
        """
        self.log_dir = Path(log_dir)
        self.logger = logging.getLogger('security')
        self.logger.setLevel(log_level)
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        handlers = []
        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(self.log_dir / SECURITY_LOG_FILENAME, encoding='utf-8'))
        if enable_console:
            handlers.append(logging.StreamHandler())

        formatter = logging.Formatter(SECURITY_LOG_FORMAT)
        for handler in handlers:
            handler.setLevel(log_level)
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def emit(self, event: SecurityEvent) -> None:
        level = logging.getLevelName(event.severity)
        if not isinstance(level, int):
            level = logging.WARNING
        self.logger.log(level, event.to_json())

    def log_auth_failure(
        self,
        email: str,
        reason: str,
        source_ip: str = "",
        stage: str = "password"
    ) -> None:
        """Log a failed admin login or second-factor check

        Args:
            email: Email the caller tried
            reason: Error code of the failure
            source_ip: Caller address
            stage: "password" or "2fa"
        """
        self.emit(SecurityEvent(
            event_type="AUTH_FAILED",
            reason=reason,
            subject=_clean(email),
            source=f"auth.{stage}",
            source_ip=_clean(source_ip)
        ))

    def log_token_rejected(
        self,
        token: str,
        reason: str,
        source_ip: str = "",
        source: str = "verification"
    ) -> None:
        """Log a verification token that could not be used

        Args:
            token: The presented token (only a masked fragment is logged)
            reason: NOT_FOUND, TOKEN_EXPIRED, CONFLICT, ...
            source_ip: Caller address
            source: Component that rejected the token
        """
        self.emit(SecurityEvent(
            event_type="TOKEN_REJECTED",
            reason=reason,
            subject=mask_token(token),
            source=source,
            source_ip=_clean(source_ip)
        ))


# Global security logger instance
_security_logger: Optional[SecurityLogger] = None


def get_security_logger(
    log_dir: str = "logs",
    enable_console: bool = False,
    enable_file: bool = True
) -> SecurityLogger:
    """Get or create the global security logger instance"""
    global _security_logger
    if _security_logger is None:
        _security_logger = SecurityLogger(
            log_dir=log_dir,
            enable_console=enable_console,
            enable_file=enable_file
        )
    return _security_logger


def reset_security_logger() -> None:
    """Reset the global security logger (for testing)"""
    global _security_logger
    _security_logger = None
