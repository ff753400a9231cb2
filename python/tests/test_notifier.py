"""
Tests for verification email composition and dispatch.
"""

import io
import smtplib
import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import MailConfig
from errors import DispatchError, NotFoundError
from notifier import (
    ConsoleTransport,
    NotificationDispatcher,
    SMTPTransport,
    build_transport,
)

from conftest import RecordingTransport


class TestCompose:

    def test_link_embeds_token(self, dispatcher):
        assert dispatcher.build_link("tok123") == "https://portal.example.com/verify/tok123"

    def test_trailing_slash_in_base_url(self, config, transport):
        config.mail.verification_base_url = "https://portal.example.com/"
        d = NotificationDispatcher(transport, config=config.mail)
        assert d.build_link("abc") == "https://portal.example.com/verify/abc"

    def test_message_parts(self, dispatcher, make_record):
        record = make_record(first_name="<Ada>")
        message = dispatcher.compose(record, "tok123")

        assert message["To"] == "ada@example.com"
        assert message["Subject"] == dispatcher.config.subject
        text = message.get_body(preferencelist=("plain",)).get_content()
        html_part = message.get_body(preferencelist=("html",)).get_content()
        assert "https://portal.example.com/verify/tok123" in text
        assert "C-1001" in text
        assert "&lt;Ada&gt;" in html_part
        assert "<Ada>" not in html_part


class TestSend:

    def test_send(self, dispatcher, transport, make_record):
        dispatcher.send(make_record(), "tok123")
        assert transport.recipients == ["ada@example.com"]

    def test_transient_errors_are_retried(self, config, make_record):
        transport = RecordingTransport(fail_for={"ada@example.com": smtplib.SMTPServerDisconnected("gone")})
        d = NotificationDispatcher(transport, config=config.mail, retry_wait_multiplier=0)

        with pytest.raises(DispatchError):
            d.send(make_record(), "tok")
        assert transport.attempts["ada@example.com"] == config.mail.retry_attempts

    def test_permanent_errors_are_not_retried(self, config, make_record):
        refused = smtplib.SMTPRecipientsRefused({"ada@example.com": (550, b"unknown user")})
        transport = RecordingTransport(fail_for={"ada@example.com": refused})
        d = NotificationDispatcher(transport, config=config.mail, retry_wait_multiplier=0)

        with pytest.raises(DispatchError) as exc:
            d.send(make_record(), "tok")
        assert transport.attempts["ada@example.com"] == 1
        assert exc.value.status_code == 502

    def test_send_many_reports_each_failure(self, config, make_record):
        transport = RecordingTransport(fail_for={"bad@example.com": ConnectionRefusedError("down")})
        d = NotificationDispatcher(transport, config=config.mail, retry_wait_multiplier=0)
        good = make_record()
        bad = make_record(client_number="C-2", email="bad@example.com")
        other = make_record(client_number="C-3", email="other@example.com")

        results = d.send_many([(good, "t1"), (bad, "t2"), (other, "t3")])

        assert [r.record_id for r in results] == [good.id, bad.id, other.id]
        assert [r.ok for r in results] == [True, False, True]
        assert "bad@example.com" in results[1].error
        assert sorted(transport.recipients) == ["ada@example.com", "other@example.com"]

    def test_send_many_empty(self, dispatcher):
        assert dispatcher.send_many([]) == []


class TestResend:

    def test_resend_issues_new_token(self, session, dispatcher, transport, make_record, issuer):
        record = make_record()
        old = issuer.issue(record)
        session.commit()

        token = dispatcher.resend(record, issuer)

        assert token != old
        assert issuer.resolve(token).id == record.id
        with pytest.raises(NotFoundError):
            issuer.resolve(old)
        assert token in transport.sent[0].get_body(preferencelist=("plain",)).get_content()

    def test_failed_resend_keeps_new_token(self, session, config, make_record, issuer):
        transport = RecordingTransport(fail_for={"ada@example.com": ConnectionRefusedError("down")})
        d = NotificationDispatcher(transport, config=config.mail, retry_wait_multiplier=0)
        record = make_record()

        with pytest.raises(DispatchError):
            d.resend(record, issuer)
        session.refresh(record)
        assert record.verification_token is not None


class TestTransports:

    def test_console_transport_writes_message(self, dispatcher, make_record):
        stream = io.StringIO()
        ConsoleTransport(stream).send(dispatcher.compose(make_record(), "tok123"))
        assert "To: ada@example.com" in stream.getvalue()

    def test_build_transport(self):
        assert isinstance(build_transport(MailConfig(transport="console")), ConsoleTransport)
        smtp = build_transport(MailConfig(transport="smtp", host="mail.example.com", timeout_seconds=3))
        assert isinstance(smtp, SMTPTransport)
        assert smtp.host == "mail.example.com"
        assert smtp.timeout == 3
