"""
Shared fixtures for the Client Verification Portal tests.

Everything runs against an in-memory SQLite database shared through a
StaticPool, and a recording mail transport instead of SMTP.
"""

import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import ConfigManager
from database.connection import create_test_provider
from database.models import Base
from database.repositories import ContactRecordRepository
from notifier import MailTransport, NotificationDispatcher
from security_logger import reset_security_logger
from tokens import TokenIssuer


class RecordingTransport(MailTransport):
    """Keeps sent messages in memory; can be told to fail for some addresses."""

    def __init__(self, fail_for: Optional[Dict[str, Exception]] = None):
        self.sent: List = []
        self.attempts: Dict[str, int] = {}
        self.fail_for = fail_for or {}
        self._lock = threading.Lock()

    def send(self, message) -> None:
        to = message["To"]
        with self._lock:
            self.attempts[to] = self.attempts.get(to, 0) + 1
        if to in self.fail_for:
            raise self.fail_for[to]
        with self._lock:
            self.sent.append(message)

    @property
    def recipients(self) -> List[str]:
        return [m["To"] for m in self.sent]


CONTACT = {
    "client_number": "C-1001",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "phone_number": "555-0100",
    "alt_number": None,
    "address": "12 Analytical St, London",
    "email": "ada@example.com",
}


def contact(**overrides) -> Dict[str, Optional[str]]:
    """Valid editable fields with selected overrides."""
    fields = dict(CONTACT)
    fields.update(overrides)
    return fields


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def provider(engine):
    provider = create_test_provider(engine)
    provider.init()
    return provider


@pytest.fixture
def session(provider):
    session = provider.session_factory()
    yield session
    session.close()


@pytest.fixture
def config(tmp_path):
    """Defaults only (no config file), security log to a temp dir."""
    config = ConfigManager(config_path=str(tmp_path / "missing.yaml"))
    config.logging.security_log_dir = str(tmp_path / "logs")
    config.logging.security_log_file = False
    return config


@pytest.fixture(autouse=True)
def _fresh_security_logger():
    reset_security_logger()
    yield
    reset_security_logger()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def dispatcher(transport, config):
    config.mail.verification_base_url = "https://portal.example.com"
    return NotificationDispatcher(transport, config=config.mail, retry_wait_multiplier=0)


@pytest.fixture
def issuer(session):
    return TokenIssuer(session)


@pytest.fixture
def make_record(session):
    """Create and commit a pending record."""
    repo = ContactRecordRepository(session)

    def _make(**overrides):
        record = repo.create(contact(**overrides), group_template=overrides.get("group_template"))
        session.commit()
        return record

    return _make
