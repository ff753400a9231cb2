"""
Notification Dispatcher

Composes verification emails carrying a client's token link and hands them
to a mail transport. Single sends raise DispatchError on failure; batch
sends capture each failure per record so one bad address never stops the
rest of the batch.
"""

import logging
import smtplib
import ssl
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from email.message import EmailMessage
from typing import List, Optional, Sequence, TextIO, Tuple

from jinja2 import Template
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config_manager import MailConfig
from database.models import ContactRecord
from errors import DispatchError
from text_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# SMTP errors that will not go away by retrying
PERMANENT_SMTP_ERRORS = (
    smtplib.SMTPRecipientsRefused,
    smtplib.SMTPSenderRefused,
    smtplib.SMTPAuthenticationError,
    smtplib.SMTPNotSupportedError,
)


def _is_transient(exc: BaseException) -> bool:
    # smtplib.SMTPException is an OSError subclass, as are socket timeouts
    return isinstance(exc, OSError) and not isinstance(exc, PERMANENT_SMTP_ERRORS)


@dataclass
class DispatchResult:
    """Outcome of one verification email"""
    record_id: int
    email: str
    ok: bool
    error: Optional[str] = None


# ============================================
# TRANSPORTS
# ============================================

class MailTransport:
    """Delivers a composed message"""

    def send(self, message: EmailMessage) -> None:
        raise NotImplementedError


class SMTPTransport(MailTransport):
    """Sends through an SMTP relay, one connection per message"""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        use_tls: bool = True,
        timeout: float = 10.0
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def send(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls(context=ssl.create_default_context())
            if self.username:
                smtp.login(self.username, self.password)
            smtp.send_message(message)


class ConsoleTransport(MailTransport):
    """Writes messages to a stream instead of sending them (development)"""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout
        self._lock = threading.Lock()

    def send(self, message: EmailMessage) -> None:
        with self._lock:
            self.stream.write(message.as_string())
            self.stream.write("\n" + "-" * 79 + "\n")
            self.stream.flush()
        logger.info(f"Console mail to {sanitize_for_logging(message['To'])}")


def build_transport(config: MailConfig) -> MailTransport:
    """Pick the transport named in the mail config."""
    if config.transport == "smtp":
        return SMTPTransport(
            host=config.host,
            port=config.port,
            username=config.username,
            password=config.password,
            use_tls=config.use_tls,
            timeout=config.timeout_seconds
        )
    return ConsoleTransport()


# ============================================
# DISPATCHER
# ============================================

TEXT_TEMPLATE = """Hello {name},

Please review the contact details we hold for you (client number {client_number})
and confirm them or send us corrections using the link below:

{link}

The link can be used once and expires in {hours} hours.
"""

HTML_TEMPLATE = Template("""<html>
  <body>
    <p>Hello {{ name }},</p>
    <p>Please review the contact details we hold for you (client number {{ client_number }})
    and confirm them or send us corrections.</p>
    <p><a href="{{ link }}">Verify my details</a></p>
    <p>The link can be used once and expires in {{ hours }} hours.</p>
  </body>
</html>
""", autoescape=True)


class NotificationDispatcher:
    """Builds and sends verification emails"""

    def __init__(
        self,
        transport: MailTransport,
        config: Optional[MailConfig] = None,
        validity_hours: int = 72,
        retry_wait_multiplier: float = 0.5
    ):
        self.transport = transport
        self.config = config or MailConfig()
        self.validity_hours = validity_hours
        self.retry_wait_multiplier = retry_wait_multiplier

    def build_link(self, token: str) -> str:
        base = self.config.verification_base_url.rstrip("/")
        return f"{base}/verify/{token}"

    def compose(self, record: ContactRecord, token: str) -> EmailMessage:
        """
        Build the verification message for one record.

        Args:
            record: Recipient record
            token: Token to embed in the link

        Returns:
            EmailMessage with plain text and HTML parts
        """
        link = self.build_link(token)
        name = f"{record.first_name} {record.last_name}".strip()

        message = EmailMessage()
        message["Subject"] = self.config.subject
        message["From"] = self.config.from_address
        message["To"] = record.email
        message.set_content(TEXT_TEMPLATE.format(
            name=name,
            client_number=record.client_number,
            link=link,
            hours=self.validity_hours
        ))
        message.add_alternative(HTML_TEMPLATE.render(
            name=name,
            client_number=record.client_number or "",
            link=link,
            hours=self.validity_hours
        ), subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=10),
            retry=retry_if_exception(_is_transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        try:
            retrying(self.transport.send, message)
        except Exception as e:
            raise DispatchError(
                f"Failed to send verification email to {message['To']}: {e}",
                field="email"
            ) from e

    def send(self, record: ContactRecord, token: str) -> None:
        """
        Send one verification email.

        Raises:
            DispatchError: If the transport still fails after retries
        """
        self._deliver(self.compose(record, token))
        logger.info(f"Verification email sent for record {record.id}")

    def send_many(
        self,
        items: Sequence[Tuple[ContactRecord, str]]
    ) -> List[DispatchResult]:
        """
        Send a batch of verification emails concurrently.

        Messages are composed on the calling thread; worker threads only
        talk to the transport.

        Args:
            items: (record, token) pairs

        Returns:
            One DispatchResult per item, in input order
        """
        jobs = [(record.id, record.email, self.compose(record, token)) for record, token in items]
        if not jobs:
            return []

        def _run(job) -> DispatchResult:
            record_id, email, message = job
            try:
                self._deliver(message)
                return DispatchResult(record_id=record_id, email=email, ok=True)
            except DispatchError as e:
                logger.warning(f"Verification email for record {record_id} failed: {e}")
                return DispatchResult(record_id=record_id, email=email, ok=False, error=str(e))

        workers = min(self.config.max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(_run, jobs))

        sent = sum(1 for r in results if r.ok)
        logger.info(f"Dispatched {sent}/{len(results)} verification emails")
        return results

    def resend(self, record: ContactRecord, issuer) -> str:
        """
        Reissue a token for a record and send it.

        The new token is committed before sending, so a failed send leaves a
        valid token that a later resend will replace.

        Args:
            record: Record to notify
            issuer: TokenIssuer bound to the record's session

        Returns:
            The new token

        Raises:
            DispatchError: If sending fails
        """
        token = issuer.issue(record)
        issuer.session.commit()
        self.send(record, token)
        return token
